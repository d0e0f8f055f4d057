"""Caller-owned bearer credential handle.

The OAuth login flow lives outside the installer; it hands over an opaque
access token. The handle is passed explicitly into the client and installer
so token lifetime is visible to (and testable by) the caller.

Security invariants:
  - The token is never included in ``str()`` or ``repr()`` output.
  - ``revoke()`` drops the token; later use raises ``CredentialUnavailable``.
"""

from __future__ import annotations

from .errors import InstallerError


class CredentialUnavailable(InstallerError):
    """Raised when a revoked or empty credential is used."""


class BearerCredential:
    """Opaque bearer token attached to every control-plane request."""

    __slots__ = ('_token',)

    def __init__(self, token: str) -> None:
        if not token or not token.strip():
            raise ValueError('token is required')
        self._token: str | None = token.strip()

    @property
    def is_valid(self) -> bool:
        return self._token is not None

    def authorization_header(self) -> dict[str, str]:
        if self._token is None:
            raise CredentialUnavailable('bearer credential has been revoked')
        return {'Authorization': f'Bearer {self._token}'}

    def replace(self, token: str) -> None:
        """Swap in a refreshed token after the caller re-authenticates."""
        if not token or not token.strip():
            raise ValueError('token is required')
        self._token = token.strip()

    def revoke(self) -> None:
        self._token = None

    def __repr__(self) -> str:
        state = 'active' if self._token is not None else 'revoked'
        return f'BearerCredential(<redacted>, {state})'

    def __str__(self) -> str:
        return self.__repr__()
