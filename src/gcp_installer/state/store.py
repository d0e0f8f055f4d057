"""Resumable installation state store.

Records are keyed by project id. A record is treated as absent when it
belongs to another project, cannot be read back, or was last updated more
than ``ttl`` ago; stale and unreadable records are deleted on load.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from .backends import CorruptStateError, StateBackend
from .model import InstallationState, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(hours=24)


class InstallationStateStore:
    """Load/save/update/clear contract over a ``StateBackend``."""

    def __init__(
        self,
        backend: StateBackend,
        *,
        schema_version: str,
        ttl: timedelta = DEFAULT_TTL,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        if not schema_version:
            raise ValueError('schema_version is required')
        self._backend = backend
        self._schema_version = schema_version
        self._ttl = ttl
        self._now = now

    @property
    def schema_version(self) -> str:
        return self._schema_version

    def load(self, project_id: str) -> InstallationState | None:
        try:
            data = self._backend.read(project_id)
        except CorruptStateError as exc:
            logger.warning(
                'Discarding unreadable installation state for %s: %s',
                project_id,
                exc,
                extra={'project_id': project_id},
            )
            self._backend.delete(project_id)
            return None
        if data is None:
            return None

        try:
            state = InstallationState.from_dict(data)
        except (TypeError, ValueError) as exc:
            logger.warning(
                'Discarding malformed installation state for %s: %s',
                project_id,
                exc,
                extra={'project_id': project_id},
            )
            self._backend.delete(project_id)
            return None

        if state.project_id != project_id:
            logger.info(
                'Ignoring installation state recorded for project %s',
                state.project_id,
                extra={'project_id': project_id},
            )
            return None

        age = self._now() - state.last_updated_at
        if age > self._ttl:
            logger.info(
                'Installation state for %s expired (%s old), starting fresh',
                project_id,
                age,
                extra={'project_id': project_id},
            )
            self._backend.delete(project_id)
            return None

        return state

    def start(self, project_id: str, display_name: str = '') -> InstallationState:
        """Return the resumable record for ``project_id``, creating one if absent.

        The returned record still carries the schema version that last wrote it.
        """
        state = self.load(project_id)
        if state is not None:
            if display_name and not state.project_display_name:
                state.project_display_name = display_name
            return state

        now = self._now()
        state = InstallationState(
            project_id=project_id,
            project_display_name=display_name,
            started_at=now,
            last_updated_at=now,
            schema_version=self._schema_version,
        )
        self.save(state)
        return state

    def save(self, state: InstallationState) -> InstallationState:
        """Stamp ``last_updated_at`` and the current schema version, then persist."""
        state.last_updated_at = self._now()
        state.schema_version = self._schema_version
        self._backend.write(state.project_id, state.to_dict())
        return state

    def _load_or_new(self, project_id: str) -> InstallationState:
        state = self.load(project_id)
        if state is None:
            now = self._now()
            state = InstallationState(project_id=project_id, started_at=now, last_updated_at=now)
        return state

    def update_step(
        self,
        project_id: str,
        step: str,
        resources: dict[str, dict[str, Any]] | None = None,
    ) -> InstallationState:
        """Mark ``step`` completed and merge its resources additively."""
        state = self._load_or_new(project_id)
        state.mark_completed(step)
        state.merge_resources(resources)
        return self.save(state)

    def record_resources(
        self,
        project_id: str,
        resources: dict[str, dict[str, Any]],
    ) -> InstallationState:
        """Merge resources without marking any step completed."""
        state = self._load_or_new(project_id)
        state.merge_resources(resources)
        return self.save(state)

    def invalidate_steps(self, project_id: str, steps: Iterable[str]) -> InstallationState | None:
        """Drop ``steps`` from the completed list; resources are kept."""
        state = self.load(project_id)
        if state is None:
            return None
        drop = set(steps)
        state.completed_steps = [s for s in state.completed_steps if s not in drop]
        return self.save(state)

    def complete(
        self,
        project_id: str,
        final_result: dict[str, Any],
        completed_steps: Iterable[str] | None = None,
    ) -> InstallationState:
        state = self._load_or_new(project_id)
        for step in completed_steps or ():
            state.mark_completed(step)
        state.final_result = final_result
        return self.save(state)

    def clear(self, project_id: str) -> None:
        self._backend.delete(project_id)
        logger.info('Cleared installation state for %s', project_id, extra={'project_id': project_id})

    def has_completed_step(self, project_id: str, step: str) -> bool:
        state = self.load(project_id)
        return state is not None and state.has_completed(step)

    def get_resources(self, project_id: str) -> dict[str, dict[str, Any]] | None:
        state = self.load(project_id)
        return state.resources if state is not None else None
