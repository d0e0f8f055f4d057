"""Step orchestrator: drives an ordered step list against resumable state.

For each step in order the orchestrator:
  1. Skips it when already completed (unless version-critical under a
     changed schema version), folding its persisted resources back in.
  2. Otherwise runs its action and merges the partial result.
  3. Persists the step's resources and marks it completed, except for
     degraded results which are persisted but left incomplete.
  4. On failure, records the failed step and raises ``StepFailedError``;
     earlier steps stay persisted so the next attempt resumes past them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Sequence

from ..cancellation import AbortSignal
from ..errors import InstallationAborted, StepFailedError
from ..state import InstallationStateStore
from ..state.model import utc_now
from .state_machine import (
    OrchestratorRun,
    advance_run,
    complete_run,
    create_run,
    fail_run,
    start_run,
)
from .steps import Step, StepContext, StepResult, validate_steps

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]

SKIP_ALREADY_COMPLETED = 'already completed'


@dataclass(frozen=True, slots=True)
class SkippedStep:
    name: str
    reason: str


@dataclass(slots=True)
class OrchestrationOutcome:
    """What one successful run did and produced."""

    project_id: str
    values: dict[str, Any]
    run: OrchestratorRun
    skipped_steps: list[SkippedStep] = field(default_factory=list)
    executed_steps: list[str] = field(default_factory=list)
    forced_steps: list[str] = field(default_factory=list)
    degraded_steps: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    should_retry_later: bool = False
    resumed: bool = False


class _ProgressTracker:
    """Weighted, monotonically non-decreasing progress reporting."""

    def __init__(self, callback: ProgressCallback | None) -> None:
        self._callback = callback
        self._last = 0

    def emit(self, label: str, percent: float) -> None:
        value = max(self._last, min(100, int(percent)))
        self._last = value
        if self._callback is not None:
            self._callback(label, value)


class StepOrchestrator:
    def __init__(
        self,
        store: InstallationStateStore,
        *,
        schema_version: str | None = None,
        version_critical_steps: Sequence[str] = (),
        progress: ProgressCallback | None = None,
        abort: AbortSignal | None = None,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._schema_version = schema_version or store.schema_version
        self._version_critical = frozenset(version_critical_steps)
        self._progress = progress
        self._abort = abort
        self._now = now
        self.last_run: OrchestratorRun | None = None

    def _is_version_critical(self, step: Step) -> bool:
        return step.version_critical or step.name in self._version_critical

    async def run(
        self,
        project_id: str,
        steps: Sequence[Step],
        *,
        display_name: str = '',
    ) -> OrchestrationOutcome:
        """Run every pending step in order.

        Raises:
            StepFailedError: a step failed; ``step_name`` names it.
            InstallationAborted: the abort signal fired.
        """
        validate_steps(steps)
        run = start_run(create_run(project_id), now=self._now())
        tracker = _ProgressTracker(self._progress)

        state = self._store.start(project_id, display_name)
        resumed = bool(state.completed_steps)

        forced: list[str] = []
        if state.schema_version != self._schema_version:
            forced = [
                s.name for s in steps
                if self._is_version_critical(s) and state.has_completed(s.name)
            ]
            if forced:
                logger.info(
                    'Schema version changed (%s -> %s), re-running %s',
                    state.schema_version,
                    self._schema_version,
                    ', '.join(forced),
                    extra={'project_id': project_id, 'forced_steps': forced},
                )
                state = self._store.invalidate_steps(project_id, forced) or state

        outcome = OrchestrationOutcome(
            project_id=project_id,
            values={},
            run=run,
            forced_steps=forced,
            resumed=resumed,
        )
        base = 0

        for index, step in enumerate(steps):
            run = advance_run(run, step_index=index, step_name=step.name, now=self._now())

            if state.has_completed(step.name) and step.name not in forced:
                outcome.values.update(step.restore_values(state.resources))
                outcome.skipped_steps.append(SkippedStep(step.name, SKIP_ALREADY_COMPLETED))
                base += step.weight
                tracker.emit(f'✓ {step.name} ({SKIP_ALREADY_COMPLETED})', base)
                logger.info(
                    'Skipping step %s (%s)',
                    step.name,
                    SKIP_ALREADY_COMPLETED,
                    extra={'project_id': project_id, 'step': step.name},
                )
                continue

            tracker.emit(step.name, base)
            logger.info('Starting step %s', step.name, extra={'project_id': project_id, 'step': step.name})

            step_base, step_weight = base, step.weight

            def _report(label: str, fraction: float, _base=step_base, _weight=step_weight) -> None:
                fraction = min(max(fraction, 0.0), 1.0)
                tracker.emit(label, _base + _weight * fraction)

            context = StepContext(
                project_id=project_id,
                values=dict(outcome.values),
                resources={k: dict(v) for k, v in state.resources.items()},
                abort=self._abort,
                reporter=_report,
            )

            try:
                context.raise_if_aborted()
                result = await step.action(context) or StepResult()
            except InstallationAborted as exc:
                run = fail_run(run, step_name=step.name, cause=str(exc), now=self._now())
                self.last_run = run
                logger.warning('Installation aborted during step %s', step.name)
                raise
            except Exception as exc:
                run = fail_run(run, step_name=step.name, cause=str(exc), now=self._now())
                self.last_run = run
                logger.error(
                    'Step %s failed: %s',
                    step.name,
                    exc,
                    extra={'project_id': project_id, 'step': step.name},
                )
                raise StepFailedError(step.name, exc) from exc

            outcome.values.update(result.values)
            resources = result.resources or {step.name: dict(result.values)}
            if result.is_degraded:
                state = self._store.record_resources(project_id, resources)
                outcome.degraded_steps.append(step.name)
                logger.warning(
                    'Step %s finished degraded: %s',
                    step.name,
                    '; '.join(result.warnings),
                    extra={'project_id': project_id, 'step': step.name},
                )
            else:
                state = self._store.update_step(project_id, step.name, resources)
                logger.info('Completed step %s', step.name, extra={'project_id': project_id, 'step': step.name})

            outcome.executed_steps.append(step.name)
            outcome.warnings.extend(result.warnings)
            outcome.should_retry_later = outcome.should_retry_later or result.should_retry_later
            base += step.weight
            tracker.emit(step.name, base)

        outcome.run = self.last_run = complete_run(run, now=self._now())
        return outcome
