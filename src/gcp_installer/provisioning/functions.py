"""Function source collaborators.

The installer deploys two functions but does not own their source code.
A ``FunctionSourceProvider`` maps a function kind to the files uploaded as
its inline source.
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Protocol, runtime_checkable

from ..errors import InstallerError

DEVICE_AUTH = 'device-auth'
TVM = 'tvm'


class FunctionSourceMissing(InstallerError):
    """No source files are available for a function kind."""


@runtime_checkable
class FunctionSourceProvider(Protocol):
    def files(self, kind: str) -> dict[str, str]: ...


class InMemoryFunctionSources:
    def __init__(self, sources: Mapping[str, Mapping[str, str]]) -> None:
        self._sources = {kind: dict(files) for kind, files in sources.items()}

    def files(self, kind: str) -> dict[str, str]:
        try:
            return dict(self._sources[kind])
        except KeyError:
            raise FunctionSourceMissing(f'no source files for function {kind!r}') from None


class DirectoryFunctionSources:
    """Reads ``<root>/<kind>/*`` (top-level regular files only)."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def files(self, kind: str) -> dict[str, str]:
        directory = self._root / kind
        if not directory.is_dir():
            raise FunctionSourceMissing(f'function source directory not found: {directory}')
        files = {
            path.name: path.read_text(encoding='utf-8')
            for path in sorted(directory.iterdir())
            if path.is_file() and not path.name.startswith('.')
        }
        if not files:
            raise FunctionSourceMissing(f'function source directory is empty: {directory}')
        return files
