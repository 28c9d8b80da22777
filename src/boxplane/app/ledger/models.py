"""Deploy step ledger rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from ..boxes.models import parse_timestamp, utcnow

STEP_STATUSES = ('pending', 'running', 'completed', 'failed')


@dataclass(frozen=True, slots=True)
class PlannedStep:
    """A step the orchestrator intends to run in one deployment attempt."""

    step_key: str
    name: str
    order: int


@dataclass(frozen=True, slots=True)
class DeployStep:
    """Outcome record for one step of one deployment attempt.

    ``(box_id, deployment_attempt, step_key)`` is unique. Rows belonging to
    earlier attempts are never rewritten.
    """

    id: str
    box_id: str
    deployment_attempt: int
    step_key: str
    name: str
    order: int
    status: str = 'pending'
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)

    @property
    def duration_ms(self) -> int | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'box_id': self.box_id,
            'deployment_attempt': self.deployment_attempt,
            'step_key': self.step_key,
            'name': self.name,
            'order': self.order,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_ms': self.duration_ms,
            'error_message': self.error_message,
            'metadata': dict(self.metadata),
        }


def step_to_row(step: DeployStep) -> dict[str, Any]:
    return {
        'id': step.id,
        'box_id': step.box_id,
        'deployment_attempt': step.deployment_attempt,
        'step_key': step.step_key,
        'name': step.name,
        'sort_order': step.order,
        'status': step.status,
        'started_at': step.started_at.isoformat() if step.started_at else None,
        'completed_at': step.completed_at.isoformat() if step.completed_at else None,
        'error_message': step.error_message,
        'metadata': dict(step.metadata),
        'created_at': step.created_at.isoformat(),
    }


def step_from_row(row: Mapping[str, Any]) -> DeployStep:
    return DeployStep(
        id=row['id'],
        box_id=row['box_id'],
        deployment_attempt=int(row['deployment_attempt']),
        step_key=row['step_key'],
        name=row.get('name') or row['step_key'],
        order=int(row.get('sort_order') or 0),
        status=row.get('status') or 'pending',
        started_at=parse_timestamp(row.get('started_at')),
        completed_at=parse_timestamp(row.get('completed_at')),
        error_message=row.get('error_message'),
        metadata=dict(row.get('metadata') or {}),
        created_at=parse_timestamp(row.get('created_at')) or utcnow(),
    )
