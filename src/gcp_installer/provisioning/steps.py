"""Step definitions shared by the orchestrator and the step catalogue."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

from ..cancellation import AbortSignal, interruptible_sleep

Resources = dict[str, dict[str, Any]]


@dataclass(slots=True)
class StepResult:
    """Partial result of one step.

    ``values`` are folded into the running result, ``resources`` are
    persisted. A degraded result is persisted but leaves the step
    incomplete, so the next run executes it again.
    """

    values: dict[str, Any] = field(default_factory=dict)
    resources: Resources = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    should_retry_later: bool = False
    is_degraded: bool = False

    @classmethod
    def degraded(
        cls,
        warning: str,
        *,
        values: dict[str, Any] | None = None,
        resources: Resources | None = None,
    ) -> StepResult:
        return cls(
            values=dict(values or {}),
            resources=dict(resources or {}),
            warnings=[warning],
            should_retry_later=True,
            is_degraded=True,
        )


@dataclass(slots=True)
class StepContext:
    """Handed to every step action."""

    project_id: str
    values: dict[str, Any]
    resources: Resources
    abort: AbortSignal | None = None
    reporter: Callable[[str, float], None] | None = None

    def report(self, label: str, fraction: float = 0.0) -> None:
        """Report intermediate progress, ``fraction`` of this step's weight."""
        if self.reporter is not None:
            self.reporter(label, fraction)

    async def sleep(self, seconds: float, label: str | None = None) -> None:
        """Propagation wait that honours the abort signal."""
        if label:
            self.report(label)
        if seconds > 0:
            await interruptible_sleep(seconds, self.abort)

    def raise_if_aborted(self) -> None:
        if self.abort is not None:
            self.abort.raise_if_aborted()


StepAction = Callable[[StepContext], Awaitable[StepResult | None]]
RestoreFn = Callable[[Resources], dict[str, Any]]


@dataclass(frozen=True, slots=True)
class Step:
    """A named, weighted, idempotent unit of provisioning work.

    ``name`` is the persisted state key and must stay stable across
    releases. ``restore`` rebuilds the step's values from persisted
    resources when the step is skipped.
    """

    name: str
    weight: int
    action: StepAction
    restore: RestoreFn | None = None
    version_critical: bool = False

    def restore_values(self, resources: Resources) -> dict[str, Any]:
        if self.restore is not None:
            return self.restore(resources)
        return dict(resources.get(self.name, {}))


def validate_steps(steps: Sequence[Step]) -> None:
    """Raise ``ValueError`` unless names are unique and weights sum to 100."""
    if not steps:
        raise ValueError('at least one step is required')
    names = [s.name for s in steps]
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise ValueError(f'duplicate step names: {duplicates}')
    if any(s.weight < 0 for s in steps):
        raise ValueError('step weights must be >= 0')
    total = sum(s.weight for s in steps)
    if total != 100:
        raise ValueError(f'step weights must sum to 100, got {total}')
