"""Cronjob and cronjob-execution records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping

from ..boxes.models import parse_timestamp, utcnow

EXECUTION_STATUSES = ('pending', 'running', 'completed', 'failed')


def repeat_key_for(cronjob_id: str) -> str:
    return f'cronjob-{cronjob_id}'


@dataclass(frozen=True, slots=True)
class Cronjob:
    """A recurring prompt delivered to one box's agent."""

    id: str
    box_id: str
    name: str
    schedule: str
    prompt: str
    timezone: str = 'UTC'
    enabled: bool = True
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def repeat_key(self) -> str:
        return repeat_key_for(self.id)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'box_id': self.box_id,
            'name': self.name,
            'schedule': self.schedule,
            'prompt': self.prompt,
            'timezone': self.timezone,
            'enabled': self.enabled,
            'repeat_key': self.repeat_key,
            'last_run_at': self.last_run_at.isoformat() if self.last_run_at else None,
            'next_run_at': self.next_run_at.isoformat() if self.next_run_at else None,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class CronjobExecution:
    """One firing of a cronjob: pending -> running -> completed | failed."""

    id: str
    cronjob_id: str
    status: str = 'pending'
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    duration_ms: int | None = None
    error_message: str | None = None
    result: str | None = None

    def to_public_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'cronjob_id': self.cronjob_id,
            'status': self.status,
            'started_at': self.started_at.isoformat(),
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_ms': self.duration_ms,
            'error_message': self.error_message,
            'result': self.result,
        }


def cronjob_to_row(job: Cronjob) -> dict[str, Any]:
    return {
        'id': job.id,
        'box_id': job.box_id,
        'name': job.name,
        'schedule': job.schedule,
        'prompt': job.prompt,
        'timezone': job.timezone,
        'enabled': job.enabled,
        'last_run_at': job.last_run_at.isoformat() if job.last_run_at else None,
        'next_run_at': job.next_run_at.isoformat() if job.next_run_at else None,
        'created_at': job.created_at.isoformat(),
        'updated_at': job.updated_at.isoformat(),
    }


def cronjob_from_row(row: Mapping[str, Any]) -> Cronjob:
    return Cronjob(
        id=row['id'],
        box_id=row['box_id'],
        name=row['name'],
        schedule=row['schedule'],
        prompt=row.get('prompt') or '',
        timezone=row.get('timezone') or 'UTC',
        enabled=bool(row.get('enabled', True)),
        last_run_at=parse_timestamp(row.get('last_run_at')),
        next_run_at=parse_timestamp(row.get('next_run_at')),
        created_at=parse_timestamp(row.get('created_at')) or utcnow(),
        updated_at=parse_timestamp(row.get('updated_at')) or utcnow(),
    )


def execution_to_row(execution: CronjobExecution) -> dict[str, Any]:
    return {
        'id': execution.id,
        'cronjob_id': execution.cronjob_id,
        'status': execution.status,
        'started_at': execution.started_at.isoformat(),
        'completed_at': (
            execution.completed_at.isoformat() if execution.completed_at else None
        ),
        'duration_ms': execution.duration_ms,
        'error_message': execution.error_message,
        'result': execution.result,
    }


def execution_from_row(row: Mapping[str, Any]) -> CronjobExecution:
    return CronjobExecution(
        id=row['id'],
        cronjob_id=row['cronjob_id'],
        status=row.get('status') or 'pending',
        started_at=parse_timestamp(row.get('started_at')) or utcnow(),
        completed_at=parse_timestamp(row.get('completed_at')),
        duration_ms=row.get('duration_ms'),
        error_message=row.get('error_message'),
        result=row.get('result'),
    )
