"""Step ledger service: per-attempt audit trail of deploy step outcomes.

Rows are keyed by ``(box_id, deployment_attempt, step_key)``. A new deployment
attempt always gets fresh rows; rows of earlier attempts are left untouched so
the progress UI can explain every past failure.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Iterable, Mapping

from ..boxes.models import utcnow
from ..errors import NotFoundError, ValidationFailedError
from ..protocols import DeployStepRepository
from .models import STEP_STATUSES, DeployStep, PlannedStep

logger = logging.getLogger(__name__)


class DeployStepService:
    """Create, update, and list step-ledger rows."""

    def __init__(self, repo: DeployStepRepository) -> None:
        self._repo = repo

    async def create_step(
        self,
        box_id: str,
        deployment_attempt: int,
        *,
        step_key: str,
        name: str,
        order: int,
        metadata: Mapping[str, Any] | None = None,
    ) -> DeployStep:
        """Insert one ``pending`` row; AlreadyExistsError on duplicate key."""
        if deployment_attempt < 1:
            raise ValidationFailedError('deployment_attempt must be >= 1')
        step = DeployStep(
            id=f'step_{uuid.uuid4().hex[:16]}',
            box_id=box_id,
            deployment_attempt=deployment_attempt,
            step_key=step_key,
            name=name,
            order=order,
            status='pending',
            metadata=dict(metadata or {}),
        )
        return await self._repo.insert(step)

    async def initialize_steps(
        self,
        box_id: str,
        deployment_attempt: int,
        planned: Iterable[PlannedStep],
    ) -> list[DeployStep]:
        """Create every planned row for an attempt.

        Rows that already exist (a re-delivered orchestration) are kept as
        they are; only missing ones are inserted.
        """
        created: list[DeployStep] = []
        for plan in planned:
            existing = await self._repo.get(box_id, deployment_attempt, plan.step_key)
            if existing is not None:
                created.append(existing)
                continue
            created.append(
                await self.create_step(
                    box_id,
                    deployment_attempt,
                    step_key=plan.step_key,
                    name=plan.name,
                    order=plan.order,
                )
            )
        logger.info(
            'Initialized %d deploy steps for box %s attempt %d',
            len(created), box_id, deployment_attempt,
            extra={'box_id': box_id, 'attempt': deployment_attempt},
        )
        return created

    async def get_step(
        self, box_id: str, deployment_attempt: int, step_key: str,
    ) -> DeployStep | None:
        return await self._repo.get(box_id, deployment_attempt, step_key)

    async def update_step(
        self,
        box_id: str,
        deployment_attempt: int,
        step_key: str,
        status: str,
        *,
        error_message: str | None = None,
        metadata: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> DeployStep:
        """Move a row to ``status``; stamps started/completed times.

        ``metadata`` is merged into the stored metadata.
        """
        if status not in STEP_STATUSES:
            raise ValidationFailedError(f'invalid step status: {status!r}')
        step = await self._repo.get(box_id, deployment_attempt, step_key)
        if step is None:
            raise NotFoundError(
                f'step {step_key!r} not found for box {box_id!r} '
                f'attempt {deployment_attempt}',
                details={
                    'box_id': box_id,
                    'deployment_attempt': deployment_attempt,
                    'step_key': step_key,
                },
            )
        now = now or utcnow()
        changes: dict[str, Any] = {'status': status}
        if status == 'running':
            changes['started_at'] = now
            changes['completed_at'] = None
            changes['error_message'] = None
        elif status in ('completed', 'failed'):
            changes['completed_at'] = now
            if step.started_at is None:
                changes['started_at'] = now
            changes['error_message'] = error_message if status == 'failed' else None
        if metadata:
            changes['metadata'] = {**step.metadata, **metadata}

        updated = await self._repo.update(step.id, changes)
        if updated is None:
            raise NotFoundError(f'step {step.id!r} disappeared during update')
        logger.debug(
            'Step %s -> %s', step_key, status,
            extra={
                'box_id': box_id,
                'attempt': deployment_attempt,
                'step_key': step_key,
            },
        )
        return updated

    async def list_steps_by_box(
        self, box_id: str, deployment_attempt: int | None = None,
    ) -> list[DeployStep]:
        """Rows ordered by ``(deployment_attempt, order)``."""
        steps = await self._repo.list_for_box(box_id, deployment_attempt)
        return sorted(steps, key=lambda s: (s.deployment_attempt, s.order))
