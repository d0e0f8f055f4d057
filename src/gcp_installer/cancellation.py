"""Run-wide abort signal.

A single ``AbortSignal`` is threaded through the client, the poller and the
step actions. Every wait in the installer goes through ``AbortSignal.sleep``
so that a user-initiated abort interrupts an in-progress poll or backoff
immediately instead of waiting out its budget.
"""

from __future__ import annotations

import asyncio

from .errors import InstallationAborted


class AbortSignal:
    """Cooperative cancellation flag backed by an ``asyncio.Event``."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = 'installation aborted by caller') -> None:
        self.reason = reason
        self._event.set()

    def raise_if_aborted(self) -> None:
        if self._event.is_set():
            raise InstallationAborted(self.reason or 'installation aborted by caller')

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless aborted first."""
        self.raise_if_aborted()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_aborted()


async def interruptible_sleep(seconds: float, abort: AbortSignal | None) -> None:
    """``asyncio.sleep`` that honours an optional abort signal."""
    if abort is None:
        await asyncio.sleep(seconds)
    else:
        await abort.sleep(seconds)
