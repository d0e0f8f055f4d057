"""Persisted installation record."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    else:
        raise ValueError(f'invalid timestamp: {value!r}')
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(slots=True)
class InstallationState:
    """Which steps of one project's installation completed, and what they produced.

    ``completed_steps`` never holds duplicates and ``resources`` only grows;
    both are maintained by ``InstallationStateStore``.
    """

    project_id: str
    project_display_name: str = ''
    started_at: datetime = field(default_factory=utc_now)
    last_updated_at: datetime = field(default_factory=utc_now)
    schema_version: str = ''
    completed_steps: list[str] = field(default_factory=list)
    resources: dict[str, dict[str, Any]] = field(default_factory=dict)
    final_result: dict[str, Any] | None = None

    def has_completed(self, step: str) -> bool:
        return step in self.completed_steps

    def mark_completed(self, step: str) -> None:
        if step not in self.completed_steps:
            self.completed_steps.append(step)

    def merge_resources(self, resources: dict[str, dict[str, Any]] | None) -> None:
        for kind, record in (resources or {}).items():
            self.resources[kind] = {**self.resources.get(kind, {}), **(record or {})}

    def to_dict(self) -> dict[str, Any]:
        return {
            'project_id': self.project_id,
            'project_display_name': self.project_display_name,
            'started_at': self.started_at.isoformat(),
            'last_updated_at': self.last_updated_at.isoformat(),
            'schema_version': self.schema_version,
            'completed_steps': list(self.completed_steps),
            'resources': {kind: dict(record) for kind, record in self.resources.items()},
            'final_result': self.final_result,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> InstallationState:
        """Rebuild a record from its JSON form.

        Raises:
            ValueError: required fields are missing or malformed.
        """
        if not isinstance(data, dict):
            raise ValueError('state record must be an object')
        project_id = data.get('project_id')
        if not isinstance(project_id, str) or not project_id:
            raise ValueError('state record has no project_id')

        steps: list[str] = []
        for step in data.get('completed_steps') or []:
            if isinstance(step, str) and step not in steps:
                steps.append(step)

        resources = data.get('resources') or {}
        if not isinstance(resources, dict):
            raise ValueError('state record resources must be an object')

        return cls(
            project_id=project_id,
            project_display_name=data.get('project_display_name') or '',
            started_at=_parse_timestamp(data.get('started_at')),
            last_updated_at=_parse_timestamp(data.get('last_updated_at')),
            schema_version=data.get('schema_version') or '',
            completed_steps=steps,
            resources={
                str(kind): dict(record)
                for kind, record in resources.items()
                if isinstance(record, dict)
            },
            final_result=data.get('final_result'),
        )
