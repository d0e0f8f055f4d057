"""Bounded polling of long-running control-plane operations.

Resources are checked for one of two terminal shapes:

  (a) an operation object with a ``done`` flag and an optional ``error``;
  (b) a resource with an enumerated ``state`` field (``ACTIVE``, ``FAILED``)
      and possibly required fields such as ``defaultHostname``.

Budget exhaustion is reported through ``PollResult.timed_out`` rather than
an exception, because several callers treat it as a degraded success.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from ..cancellation import AbortSignal, interruptible_sleep
from ..credentials import CredentialUnavailable
from ..errors import InstallationAborted, OperationFailedError, OperationTimeoutError
from ..settings import PollPolicy
from .errors import GcpAuthError

logger = logging.getLogger(__name__)

Fetch = Callable[[], Awaitable[dict[str, Any]]]
TerminalPredicate = Callable[[dict[str, Any]], bool]


@dataclass(frozen=True, slots=True)
class PollProgress:
    """Snapshot emitted once per check."""

    check: int
    max_checks: int
    elapsed_seconds: float
    last_state: str | None = None

    @property
    def label(self) -> str:
        state = f', state {self.last_state}' if self.last_state else ''
        return (
            f'check {self.check}/{self.max_checks}, '
            f'{describe_elapsed(self.elapsed_seconds)} elapsed{state}'
        )


@dataclass(frozen=True, slots=True)
class PollResult:
    """Outcome of one polling loop."""

    timed_out: bool
    payload: dict[str, Any] | None
    checks: int
    elapsed_seconds: float

    @property
    def succeeded(self) -> bool:
        return not self.timed_out


def describe_elapsed(seconds: float) -> str:
    """Format ``90`` as ``'1m 30s'`` and ``42`` as ``'42s'``."""
    total = max(int(seconds), 0)
    minutes, secs = divmod(total, 60)
    if minutes:
        return f'{minutes}m {secs}s'
    return f'{secs}s'


# ── Terminal predicates ──────────────────────────────────────────


def operation_done(payload: dict[str, Any]) -> bool:
    """Terminal check for operation objects.

    Raises:
        OperationFailedError: the operation finished with an embedded error.
    """
    if not payload.get('done'):
        return False
    error = payload.get('error')
    if error:
        message = error.get('message', error) if isinstance(error, dict) else error
        raise OperationFailedError(payload.get('name', '<unnamed>'), message)
    return True


def state_in(*states: str, require: tuple[str, ...] = ()) -> TerminalPredicate:
    """Terminal check for resources with an enumerated ``state`` field.

    ``FAILED`` is always terminal and raises ``OperationFailedError``.
    """
    wanted = frozenset(states)

    def _is_terminal(payload: dict[str, Any]) -> bool:
        state = payload.get('state')
        if state == 'FAILED':
            raise OperationFailedError(
                payload.get('name', '<unnamed>'), f'resource entered state {state}'
            )
        if state not in wanted:
            return False
        return all(payload.get(field) for field in require)

    return _is_terminal


# ── Poll loop ────────────────────────────────────────────────────


async def poll_until_terminal(
    fetch: Fetch,
    is_terminal: TerminalPredicate,
    *,
    policy: PollPolicy,
    progress: Callable[[PollProgress], None] | None = None,
    abort: AbortSignal | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """Check ``fetch()`` until ``is_terminal`` holds or the budget runs out.

    A failed read counts as "not yet terminal": newly created resources are
    often not readable immediately. Failures that no further check can fix
    (embedded operation errors, expired credentials, abort) propagate.
    """
    started = clock()
    if policy.initial_delay_seconds > 0:
        await interruptible_sleep(policy.initial_delay_seconds, abort)

    interval = policy.interval_seconds
    payload: dict[str, Any] | None = None
    for check in range(1, policy.max_checks + 1):
        if abort is not None:
            abort.raise_if_aborted()

        try:
            payload = await fetch()
        except (OperationFailedError, GcpAuthError, CredentialUnavailable, InstallationAborted):
            raise
        except Exception as exc:
            logger.debug('Poll check %d/%d failed: %s', check, policy.max_checks, exc)
            payload = None

        if payload is not None and is_terminal(payload):
            return PollResult(
                timed_out=False,
                payload=payload,
                checks=check,
                elapsed_seconds=clock() - started,
            )

        if progress is not None:
            last_state = payload.get('state') if isinstance(payload, dict) else None
            progress(PollProgress(check, policy.max_checks, clock() - started, last_state))

        if check < policy.max_checks:
            await interruptible_sleep(interval, abort)
            interval = policy.next_interval(interval)

    elapsed = clock() - started
    logger.warning(
        'Polling gave up after %d checks (%s)',
        policy.max_checks,
        describe_elapsed(elapsed),
        extra={'checks': policy.max_checks, 'elapsed_seconds': elapsed},
    )
    return PollResult(
        timed_out=True,
        payload=payload,
        checks=policy.max_checks,
        elapsed_seconds=elapsed,
    )


async def wait_for_operation(
    client: Any,
    operation_url: str,
    policy: PollPolicy,
    *,
    progress: Callable[[PollProgress], None] | None = None,
    abort: AbortSignal | None = None,
) -> dict[str, Any]:
    """Poll an operation URL until done and return its final payload.

    Raises:
        OperationFailedError: the operation reported an error.
        OperationTimeoutError: the operation was still running at the end
            of the budget.
    """
    result = await poll_until_terminal(
        lambda: client.get(operation_url),
        operation_done,
        policy=policy,
        progress=progress,
        abort=abort,
    )
    if result.timed_out:
        raise OperationTimeoutError(operation_url, result.checks, result.elapsed_seconds)
    return result.payload or {}
