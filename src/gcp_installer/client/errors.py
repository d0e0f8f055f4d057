"""GCP control-plane error hierarchy.

Errors are typed by status code at the single point where responses are
read (``GcpClient``), so callers match on exception classes rather than
formatted message text. They never hold ``httpx.Response`` objects or
request headers, so the bearer token cannot leak through them.
"""

from __future__ import annotations

from enum import Enum

from ..errors import ErrorKind, InstallerError


class CallOutcome(str, Enum):
    """Classification of a single HTTP attempt."""

    SUCCESS = 'success'
    RETRYABLE = 'retryable'
    TERMINAL = 'terminal'
    ALREADY_EXISTS = 'already_exists'
    NOT_FOUND = 'not_found'


# Status codes eligible for automatic retry besides the 5xx range.
RETRYABLE_STATUS_CODES = frozenset({429})


def classify_status(status_code: int) -> CallOutcome:
    """Map an HTTP status code onto a ``CallOutcome``."""
    if status_code < 400:
        return CallOutcome.SUCCESS
    if status_code >= 500 or status_code in RETRYABLE_STATUS_CODES:
        return CallOutcome.RETRYABLE
    if status_code == 404:
        return CallOutcome.NOT_FOUND
    if status_code == 409:
        return CallOutcome.ALREADY_EXISTS
    return CallOutcome.TERMINAL


class GcpApiError(InstallerError):
    """Structured error for a failed GCP REST call."""

    def __init__(
        self,
        status_code: int,
        message: str = '',
        *,
        response_body: str = '',
        method: str = '',
        url: str = '',
        kind: ErrorKind | None = None,
    ) -> None:
        self.status_code = status_code
        self.response_body = response_body
        self.method = method
        self.url = url
        self.outcome = classify_status(status_code) if status_code else CallOutcome.RETRYABLE
        super().__init__(f'GCP API error {status_code}: {message}', kind=kind)
        self.message = message


class GcpNotFoundError(GcpApiError):
    """Resource does not exist (404)."""

    def __init__(self, message: str = 'Not found', **kwargs) -> None:
        super().__init__(404, message, **kwargs)


class GcpConflictError(GcpApiError):
    """Resource already exists or a concurrent write won (409)."""

    kind = ErrorKind.ALREADY_SATISFIED

    def __init__(self, message: str = 'Already exists', **kwargs) -> None:
        super().__init__(409, message, **kwargs)


class GcpAuthError(GcpApiError):
    """Bearer credential expired or invalid (401); the caller should log in again."""

    def __init__(self, message: str = 'Unauthenticated', **kwargs) -> None:
        super().__init__(401, message, **kwargs)


class GcpPermissionDeniedError(GcpApiError):
    """Permission denied (403).

    Freshly granted permissions and freshly enabled services answer 403 for a
    while; ``not_yet_propagated`` tells those apart from real denials.
    """

    _PROPAGATION_MARKERS = (
        'location global is not found',
        'has not been used in project',
        'it is disabled',
        'service agent',
        'not yet propagated',
    )

    def __init__(self, message: str = 'Permission denied', **kwargs) -> None:
        super().__init__(403, message, **kwargs)

    @property
    def not_yet_propagated(self) -> bool:
        text = f'{self.message} {self.response_body}'.lower()
        return any(marker in text for marker in self._PROPAGATION_MARKERS)


class GcpTimeoutError(GcpApiError):
    """All attempts exceeded their deadline."""

    def __init__(self, message: str = 'Request timed out', **kwargs) -> None:
        super().__init__(0, message, **kwargs)


_ERRORS_BY_STATUS: dict[int, type[GcpApiError]] = {
    401: GcpAuthError,
    403: GcpPermissionDeniedError,
    404: GcpNotFoundError,
    409: GcpConflictError,
}


def error_for_status(
    status_code: int,
    message: str,
    *,
    response_body: str = '',
    method: str = '',
    url: str = '',
) -> GcpApiError:
    """Build the typed error for a non-success status code."""
    error_cls = _ERRORS_BY_STATUS.get(status_code)
    if error_cls is not None:
        return error_cls(message, response_body=response_body, method=method, url=url)
    return GcpApiError(
        status_code,
        message,
        response_body=response_body,
        method=method,
        url=url,
    )
