"""Async HTTP client for the Google Cloud control-plane REST APIs.

Every outbound call of the installer goes through ``GcpClient.call``. Auth
uses a caller-owned bearer credential handle. Transient failures (5xx, 429,
transport errors, per-attempt deadline expiry) are retried with linear
backoff; each expired deadline grows by half for the next attempt, capped
at ten minutes. Any other 4xx is surfaced immediately as a typed error.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from ..cancellation import AbortSignal, interruptible_sleep
from ..credentials import BearerCredential
from ..errors import ErrorKind
from ..settings import InstallerSettings
from .errors import (
    CallOutcome,
    GcpApiError,
    GcpNotFoundError,
    GcpTimeoutError,
    error_for_status,
)

logger = logging.getLogger(__name__)

# Default retry configuration.
_DEFAULT_MAX_ATTEMPTS = 3
_DEFAULT_TIMEOUT = 300.0  # seconds
_DEFAULT_MAX_TIMEOUT = 600.0  # seconds
_DEFAULT_BACKOFF_STEP = 2.0  # seconds
_DEFAULT_MAX_BACKOFF = 10.0  # seconds
_TIMEOUT_GROWTH = 1.5


# ── Client ───────────────────────────────────────────────────────


class GcpClient:
    """Retrying JSON client for ``*.googleapis.com`` endpoints.

    Stateless apart from configuration; one instance is shared by every
    step of an installation. The caller owns ``http_client`` and closes it.
    """

    def __init__(
        self,
        credential: BearerCredential,
        *,
        http_client: httpx.AsyncClient,
        max_attempts: int = _DEFAULT_MAX_ATTEMPTS,
        timeout_seconds: float = _DEFAULT_TIMEOUT,
        max_timeout_seconds: float = _DEFAULT_MAX_TIMEOUT,
        backoff_step_seconds: float = _DEFAULT_BACKOFF_STEP,
        max_backoff_seconds: float = _DEFAULT_MAX_BACKOFF,
        abort: AbortSignal | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

        self._credential = credential
        self._client = http_client
        self._max_attempts = max_attempts
        self._timeout = float(timeout_seconds)
        self._max_timeout = float(max_timeout_seconds)
        self._backoff_step = backoff_step_seconds
        self._max_backoff = max_backoff_seconds
        self._abort = abort

    @classmethod
    def from_settings(
        cls,
        credential: BearerCredential,
        settings: InstallerSettings,
        *,
        http_client: httpx.AsyncClient,
        abort: AbortSignal | None = None,
    ) -> GcpClient:
        return cls(
            credential,
            http_client=http_client,
            max_attempts=settings.max_attempts,
            timeout_seconds=settings.request_timeout_seconds,
            max_timeout_seconds=settings.max_request_timeout_seconds,
            backoff_step_seconds=settings.backoff_step_seconds,
            max_backoff_seconds=settings.max_backoff_seconds,
            abort=abort,
        )

    def _headers(self) -> dict[str, str]:
        return {
            **self._credential.authorization_header(),
            "Content-Type": "application/json",
        }

    def _backoff_delay(self, attempt: int) -> float:
        """Linear backoff: ``attempt * step`` seconds, capped."""
        return min(attempt * self._backoff_step, self._max_backoff)

    def _error_from_response(self, resp: httpx.Response, method: str, url: str) -> GcpApiError:
        body = resp.text
        message = body[:200] if body else f"HTTP {resp.status_code}"

        try:
            payload = resp.json()
            if isinstance(payload, dict):
                error = payload.get("error", payload)
                if isinstance(error, dict):
                    message = error.get("message", message)
                elif isinstance(error, str):
                    message = error
        except ValueError:
            pass

        return error_for_status(
            resp.status_code,
            message,
            response_body=body,
            method=method,
            url=url,
        )

    @staticmethod
    def _decode(resp: httpx.Response, method: str, url: str) -> dict[str, Any]:
        if not resp.content or not resp.content.strip():
            return {}
        try:
            payload = resp.json()
        except ValueError as exc:
            raise GcpApiError(
                resp.status_code,
                "response body is not valid JSON",
                response_body=resp.text[:200],
                method=method,
                url=url,
            ) from exc
        if not isinstance(payload, dict):
            return {"items": payload}
        return payload

    async def call(
        self,
        endpoint: str,
        method: str = "GET",
        body: Any | None = None,
        *,
        max_attempts: int | None = None,
        timeout: float | None = None,
        params: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Execute one authenticated JSON request with bounded retries.

        Returns the decoded JSON object (``{}`` for an empty body).

        Raises:
            GcpNotFoundError, GcpConflictError, GcpAuthError,
            GcpPermissionDeniedError: non-retryable 4xx, immediately.
            GcpApiError: retryable status still failing after the last attempt.
            GcpTimeoutError: every attempt exceeded its deadline.
            InstallationAborted: the abort signal fired.
        """
        attempts = max_attempts or self._max_attempts
        deadline = float(timeout) if timeout is not None else self._timeout
        method = method.upper()

        for attempt in range(1, attempts + 1):
            if self._abort is not None:
                self._abort.raise_if_aborted()
            logger.debug(
                "GCP %s %s (attempt %d/%d)",
                method,
                endpoint,
                attempt,
                attempts,
                extra={"method": method, "url": endpoint},
            )

            try:
                resp = await asyncio.wait_for(
                    self._client.request(
                        method,
                        endpoint,
                        headers=self._headers(),
                        json=body,
                        params=params,
                        timeout=deadline,
                    ),
                    timeout=deadline,
                )
            except (asyncio.TimeoutError, httpx.TimeoutException) as e:
                error: GcpApiError = GcpTimeoutError(
                    f"{method} {endpoint} exceeded {deadline:.0f}s",
                    method=method,
                    url=endpoint,
                )
                if attempt >= attempts:
                    raise error from e
                extended = min(deadline * _TIMEOUT_GROWTH, self._max_timeout)
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "GCP %s %s timed out after %.0fs (attempt %d/%d), "
                    "retrying in %.1fs with %.0fs deadline",
                    method,
                    endpoint,
                    deadline,
                    attempt,
                    attempts,
                    delay,
                    extended,
                )
                deadline = extended
                await interruptible_sleep(delay, self._abort)
                continue
            except httpx.TransportError as e:
                error = GcpApiError(
                    0,
                    f"transport error: {e}",
                    method=method,
                    url=endpoint,
                )
                if attempt >= attempts:
                    raise error from e
                delay = self._backoff_delay(attempt)
                logger.warning(
                    "GCP %s %s transport error (attempt %d/%d), retrying in %.1fs: %s",
                    method,
                    endpoint,
                    attempt,
                    attempts,
                    delay,
                    e,
                )
                await interruptible_sleep(delay, self._abort)
                continue

            if resp.status_code < 400:
                return self._decode(resp, method, endpoint)

            error = self._error_from_response(resp, method, endpoint)
            if error.outcome is not CallOutcome.RETRYABLE:
                raise error

            if attempt >= attempts:
                error.kind = ErrorKind.FATAL
                raise error

            delay = self._backoff_delay(attempt)
            logger.warning(
                "GCP %s %s returned %d (attempt %d/%d), retrying in %.1fs",
                method,
                endpoint,
                resp.status_code,
                attempt,
                attempts,
                delay,
            )
            await interruptible_sleep(delay, self._abort)

        # Should not reach here, but guard against it.
        raise GcpApiError(0, "exhausted retries with no response", method=method, url=endpoint)

    # ── Convenience wrappers ─────────────────────────────────────

    async def get(self, endpoint: str, **kwargs: Any) -> dict[str, Any]:
        return await self.call(endpoint, "GET", **kwargs)

    async def post(self, endpoint: str, body: Any | None = None, **kwargs: Any) -> dict[str, Any]:
        return await self.call(endpoint, "POST", body if body is not None else {}, **kwargs)

    async def patch(self, endpoint: str, body: Any, **kwargs: Any) -> dict[str, Any]:
        return await self.call(endpoint, "PATCH", body, **kwargs)

    async def get_or_none(self, endpoint: str, **kwargs: Any) -> dict[str, Any] | None:
        """GET that maps 404 to ``None``."""
        try:
            return await self.call(endpoint, "GET", **kwargs)
        except GcpNotFoundError:
            return None
