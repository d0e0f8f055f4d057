"""Installation attempt state machine.

Implements the lifecycle of one orchestrator run:
  not_started -> running -> completed
                         -> failed

``running`` re-enters itself once per step. A failed run is never retried
in place; the caller starts a new run, which resumes from persisted state.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from types import MappingProxyType

NOT_STARTED = 'not_started'
RUNNING = 'running'
COMPLETED = 'completed'
FAILED = 'failed'

TERMINAL_STATES = frozenset({COMPLETED, FAILED})

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        NOT_STARTED: frozenset({RUNNING}),
        RUNNING: frozenset({RUNNING, COMPLETED, FAILED}),
        COMPLETED: frozenset(),
        FAILED: frozenset(),
    }
)


@dataclass(frozen=True, slots=True)
class OrchestratorRun:
    """State snapshot for one installation attempt."""

    project_id: str
    status: str = NOT_STARTED
    step_index: int = -1
    current_step: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    failed_step: str | None = None
    failure_cause: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATES


class InvalidRunTransition(ValueError):
    """Raised for invalid run state transitions."""

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid run transition: {from_state!r} -> {to_state!r}'
        )


def create_run(project_id: str) -> OrchestratorRun:
    if not project_id:
        raise ValueError('project_id is required')
    return OrchestratorRun(project_id=project_id)


def start_run(run: OrchestratorRun, *, now: datetime) -> OrchestratorRun:
    _require_aware_datetime(now)
    if run.status != NOT_STARTED:
        raise InvalidRunTransition(run.status, RUNNING)
    return _transition(run, to_state=RUNNING, now=now, started_at=now)


def advance_run(
    run: OrchestratorRun,
    *,
    step_index: int,
    step_name: str,
    now: datetime,
) -> OrchestratorRun:
    """Move a running attempt onto the step at ``step_index``."""
    _require_aware_datetime(now)
    if run.status != RUNNING:
        raise InvalidRunTransition(run.status, RUNNING)
    if step_index <= run.step_index:
        raise ValueError(
            f'step index must increase: {run.step_index} -> {step_index}'
        )
    return _transition(
        run,
        to_state=RUNNING,
        now=now,
        step_index=step_index,
        current_step=step_name,
    )


def complete_run(run: OrchestratorRun, *, now: datetime) -> OrchestratorRun:
    _require_aware_datetime(now)
    return _transition(run, to_state=COMPLETED, now=now, current_step=None)


def fail_run(
    run: OrchestratorRun,
    *,
    step_name: str,
    cause: str,
    now: datetime,
) -> OrchestratorRun:
    """Move a running attempt to terminal ``failed``."""
    _require_aware_datetime(now)
    return _transition(
        run,
        to_state=FAILED,
        now=now,
        failed_step=step_name,
        failure_cause=cause,
    )


def _transition(
    run: OrchestratorRun,
    *,
    to_state: str,
    now: datetime,
    **changes,
) -> OrchestratorRun:
    allowed = ALLOWED_TRANSITIONS.get(run.status, frozenset())
    if to_state not in allowed:
        raise InvalidRunTransition(run.status, to_state)

    return replace(
        run,
        status=to_state,
        finished_at=now if to_state in TERMINAL_STATES else None,
        **changes,
    )


def _require_aware_datetime(value: datetime) -> None:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError('now must be timezone-aware')
