"""Installer error taxonomy.

Every error raised by the installer carries an ``ErrorKind`` so callers can
decide between retrying, rendering remediation, re-triggering login, or
reporting a hard failure without inspecting message text.

Propagation:
  - ``TRANSIENT`` and ``PERMISSION_NOT_YET_PROPAGATED`` are absorbed by
    bounded retries and only surface once those are exhausted (as ``FATAL``).
  - ``ALREADY_SATISFIED`` is folded into success by creation steps.
  - ``DEGRADED_SUCCESS`` never raises; it annotates a step result.
  - ``FATAL`` and ``MISSING_PREREQUISITE`` end the attempt.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    TRANSIENT = 'transient'
    ALREADY_SATISFIED = 'already_satisfied'
    MISSING_PREREQUISITE = 'missing_prerequisite'
    PERMISSION_NOT_YET_PROPAGATED = 'permission_not_yet_propagated'
    DEGRADED_SUCCESS = 'degraded_success'
    FATAL = 'fatal'


class InstallerError(Exception):
    """Base error for all installer operations."""

    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, *, kind: ErrorKind | None = None) -> None:
        if kind is not None:
            self.kind = kind
        self.message = message
        super().__init__(message)


class InstallationAborted(InstallerError):
    """The caller's abort signal fired while the run was in progress."""

    def __init__(self, message: str = 'installation aborted by caller') -> None:
        super().__init__(message)


class OperationFailedError(InstallerError):
    """A long-running operation finished with an embedded error."""

    def __init__(self, operation_name: str, error: object) -> None:
        self.operation_name = operation_name
        self.error = error
        super().__init__(f'operation {operation_name!r} failed: {error}')


class OperationTimeoutError(InstallerError):
    """A long-running operation did not finish within its check budget."""

    def __init__(self, operation_name: str, checks: int, elapsed_seconds: float) -> None:
        self.operation_name = operation_name
        self.checks = checks
        self.elapsed_seconds = elapsed_seconds
        super().__init__(
            f'operation {operation_name!r} not done after {checks} checks '
            f'({int(elapsed_seconds)}s)'
        )


class StepFailedError(InstallerError):
    """Attempt-ending failure of a named orchestrator step.

    ``kind`` mirrors the underlying cause so the caller can tell a missing
    prerequisite (render remediation) from a fatal failure.
    """

    def __init__(self, step_name: str, cause: BaseException) -> None:
        self.step_name = step_name
        self.cause = cause
        kind = getattr(cause, 'kind', ErrorKind.FATAL)
        if kind is not ErrorKind.MISSING_PREREQUISITE:
            kind = ErrorKind.FATAL
        super().__init__(f'Failed at step "{step_name}": {cause}', kind=kind)

    @property
    def credential_expired(self) -> bool:
        from .client.errors import GcpAuthError

        return isinstance(self.cause, GcpAuthError)
