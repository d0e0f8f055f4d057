"""Storage backends for installation records.

One record per project id. ``InMemoryStateBackend`` is used by tests and
one-shot runs; the file backends keep one document per project under a
directory and replace it atomically on every write.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from cryptography.fernet import Fernet, InvalidToken

from ..errors import InstallerError
from ..settings import InstallerSettings

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r'[^A-Za-z0-9._-]')


class CorruptStateError(InstallerError):
    """A stored record could not be read back."""


@runtime_checkable
class StateBackend(Protocol):
    """Keyed storage for serialized installation records."""

    def read(self, project_id: str) -> dict[str, Any] | None: ...
    def write(self, project_id: str, data: dict[str, Any]) -> None: ...
    def delete(self, project_id: str) -> None: ...


class InMemoryStateBackend:
    def __init__(self) -> None:
        self._records: dict[str, str] = {}

    def read(self, project_id: str) -> dict[str, Any] | None:
        raw = self._records.get(project_id)
        if raw is None:
            return None
        return json.loads(raw)

    def write(self, project_id: str, data: dict[str, Any]) -> None:
        # Stored serialized so callers cannot mutate a record in place.
        self._records[project_id] = json.dumps(data)

    def delete(self, project_id: str) -> None:
        self._records.pop(project_id, None)


class FileStateBackend:
    """One JSON document per project under ``directory``."""

    suffix = '.json'

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    def path_for(self, project_id: str) -> Path:
        return self._directory / f'{_UNSAFE_CHARS.sub("_", project_id)}{self.suffix}'

    def _encode(self, data: dict[str, Any]) -> bytes:
        return json.dumps(data, indent=2, sort_keys=True).encode('utf-8')

    def _decode(self, raw: bytes) -> dict[str, Any]:
        try:
            return json.loads(raw.decode('utf-8'))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise CorruptStateError(f'state record is not valid JSON: {exc}') from exc

    def read(self, project_id: str) -> dict[str, Any] | None:
        path = self.path_for(project_id)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        return self._decode(raw)

    def write(self, project_id: str, data: dict[str, Any]) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        path = self.path_for(project_id)
        fd, tmp_name = tempfile.mkstemp(dir=self._directory, prefix=f'.{path.name}.')
        try:
            with os.fdopen(fd, 'wb') as handle:
                handle.write(self._encode(data))
            os.chmod(tmp_name, 0o600)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def delete(self, project_id: str) -> None:
        self.path_for(project_id).unlink(missing_ok=True)


class EncryptedFileStateBackend(FileStateBackend):
    """File backend whose documents are Fernet-encrypted at rest.

    Records hold generated key material, so they are never written in clear.
    """

    suffix = '.state'

    def __init__(self, directory: str | Path, key: str | bytes) -> None:
        super().__init__(directory)
        self._fernet = Fernet(key.encode('ascii') if isinstance(key, str) else key)

    @staticmethod
    def generate_key() -> str:
        return Fernet.generate_key().decode('ascii')

    def _encode(self, data: dict[str, Any]) -> bytes:
        return self._fernet.encrypt(super()._encode(data))

    def _decode(self, raw: bytes) -> dict[str, Any]:
        try:
            plaintext = self._fernet.decrypt(raw)
        except InvalidToken as exc:
            raise CorruptStateError('state record could not be decrypted') from exc
        return super()._decode(plaintext)


def backend_from_settings(settings: InstallerSettings) -> StateBackend:
    if not settings.state_dir:
        return InMemoryStateBackend()
    if settings.state_encryption_key:
        return EncryptedFileStateBackend(settings.state_dir, settings.state_encryption_key)
    logger.warning(
        'Installation state in %s is stored unencrypted; set INSTALLER_STATE_KEY to encrypt it',
        settings.state_dir,
    )
    return FileStateBackend(settings.state_dir)


# ── Command-line defaults ────────────────────────────────────────


def default_state_dir(env: dict[str, str] | None = None) -> Path:
    """``$XDG_CONFIG_HOME/gcp-installer/state``, falling back to ``~/.config``."""
    env = dict(os.environ) if env is None else env
    base = env.get('XDG_CONFIG_HOME', '').strip()
    root = Path(base) if base else Path.home() / '.config'
    return root / 'gcp-installer' / 'state'


def load_or_create_key(path: str | Path) -> str:
    """Return the Fernet key stored at ``path``, generating it (mode 0600) on first use."""
    path = Path(path)
    try:
        return path.read_text(encoding='ascii').strip()
    except FileNotFoundError:
        pass
    path.parent.mkdir(parents=True, exist_ok=True)
    key = EncryptedFileStateBackend.generate_key()
    try:
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
    except FileExistsError:
        # Another process created it first.
        return path.read_text(encoding='ascii').strip()
    with os.fdopen(fd, 'w', encoding='ascii') as handle:
        handle.write(key)
    logger.info('Generated state encryption key at %s', path)
    return key
