"""Cronjob service: CRUD plus keeping the engine's repeatables in sync.

Every create, update, toggle, and delete first cancels the repeatable
keyed ``cronjob-<id>`` and then re-registers it when the cronjob is still
enabled, so a changed schedule never leaves the old one firing.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

from ..boxes.models import Box, utcnow
from ..boxes.service import BoxService
from ..deploy.steps import QUEUE_CRON_TRIGGER
from ..errors import NotFoundError, ValidationFailedError
from ..protocols import CronjobExecutionRepository, CronjobRepository
from ..workflow.cron import next_fire_time, validate_cron
from ..workflow.engine import WorkflowEngine
from .models import EXECUTION_STATUSES, Cronjob, CronjobExecution

logger = logging.getLogger(__name__)

MAX_CRONJOB_NAME_LENGTH = 100
DEFAULT_EXECUTION_LIMIT = 20
_UPDATABLE_FIELDS = frozenset({'name', 'schedule', 'prompt', 'timezone', 'enabled'})


class CronjobService:
    def __init__(
        self,
        cronjobs: CronjobRepository,
        executions: CronjobExecutionRepository,
        *,
        boxes: BoxService,
        engine: WorkflowEngine,
    ) -> None:
        self._cronjobs = cronjobs
        self._executions = executions
        self._boxes = boxes
        self._engine = engine

    # ── Validation ───────────────────────────────────────────────

    @staticmethod
    def _check_fields(name: str | None, prompt: str | None) -> None:
        if name is not None:
            if not name.strip():
                raise ValidationFailedError('cronjob name is required')
            if len(name) > MAX_CRONJOB_NAME_LENGTH:
                raise ValidationFailedError(
                    f'cronjob name must be at most {MAX_CRONJOB_NAME_LENGTH} characters',
                )
        if prompt is not None and not prompt.strip():
            raise ValidationFailedError('cronjob prompt is required')

    # ── Repeatable sync ──────────────────────────────────────────

    async def _sync(self, cronjob: Cronjob) -> None:
        await self._engine.cancel_repeatable(cronjob.repeat_key)
        if not cronjob.enabled:
            return
        await self._engine.submit_repeatable(
            cronjob.repeat_key,
            queue=QUEUE_CRON_TRIGGER,
            name='trigger',
            data={'cronjob_id': cronjob.id, 'box_id': cronjob.box_id},
            cron=cronjob.schedule,
            tz=cronjob.timezone,
        )

    async def sync_all(self) -> int:
        """Re-register enabled cronjobs of running boxes; returns the count."""
        count = 0
        for cronjob in await self._cronjobs.list_enabled():
            box = await self._boxes.find(cronjob.box_id)
            if box is None or box.status != 'running':
                continue
            await self._sync(cronjob)
            count += 1
        logger.info('Synced %d cronjob repeatables', count)
        return count

    # ── CRUD ─────────────────────────────────────────────────────

    async def create(
        self,
        box_id: str,
        *,
        name: str,
        schedule: str,
        prompt: str,
        timezone: str = 'UTC',
        user_id: str | None = None,
    ) -> Cronjob:
        box = await self._boxes.get(box_id, user_id=user_id)
        if box.status == 'deleted':
            raise NotFoundError(f'box {box_id!r} not found', details={'box_id': box_id})
        self._check_fields(name, prompt)
        validate_cron(schedule, timezone)

        cronjob = Cronjob(
            id=f'cron_{uuid.uuid4().hex[:16]}',
            box_id=box.id,
            name=name.strip(),
            schedule=schedule.strip(),
            prompt=prompt,
            timezone=timezone,
            enabled=True,
            next_run_at=next_fire_time(schedule, timezone),
        )
        created = await self._cronjobs.insert(cronjob)
        await self._sync(created)
        logger.info(
            'Cronjob %s created for box %s (%s)', created.id, box.id, created.schedule,
            extra={'box_id': box.id, 'cronjob_id': created.id},
        )
        return created

    async def get(self, cronjob_id: str, *, user_id: str | None = None) -> Cronjob:
        cronjob = await self._cronjobs.get(cronjob_id)
        if cronjob is None:
            raise NotFoundError(
                f'cronjob {cronjob_id!r} not found', details={'cronjob_id': cronjob_id},
            )
        if user_id is not None:
            box = await self._boxes.find(cronjob.box_id)
            if box is None or box.user_id != user_id:
                raise NotFoundError(
                    f'cronjob {cronjob_id!r} not found',
                    details={'cronjob_id': cronjob_id},
                )
        return cronjob

    async def update(
        self,
        cronjob_id: str,
        changes: dict[str, Any],
        *,
        user_id: str | None = None,
    ) -> Cronjob:
        existing = await self.get(cronjob_id, user_id=user_id)
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationFailedError(
                f'unknown cronjob field(s): {", ".join(sorted(unknown))}',
            )
        updates = {k: v for k, v in changes.items() if v is not None}
        self._check_fields(updates.get('name'), updates.get('prompt'))
        schedule = updates.get('schedule', existing.schedule)
        tz = updates.get('timezone', existing.timezone)
        validate_cron(schedule, tz)
        updates['next_run_at'] = next_fire_time(schedule, tz)

        updated = await self._cronjobs.update(cronjob_id, updates)
        if updated is None:
            raise NotFoundError(f'cronjob {cronjob_id!r} not found')
        await self._sync(updated)
        return updated

    async def toggle(self, cronjob_id: str, *, user_id: str | None = None) -> Cronjob:
        existing = await self.get(cronjob_id, user_id=user_id)
        updated = await self._cronjobs.update(cronjob_id, {'enabled': not existing.enabled})
        if updated is None:
            raise NotFoundError(f'cronjob {cronjob_id!r} not found')
        await self._sync(updated)
        logger.info(
            'Cronjob %s %s', cronjob_id, 'enabled' if updated.enabled else 'disabled',
            extra={'cronjob_id': cronjob_id},
        )
        return updated

    async def delete(self, cronjob_id: str, *, user_id: str | None = None) -> None:
        existing = await self.get(cronjob_id, user_id=user_id)
        await self._engine.cancel_repeatable(existing.repeat_key)
        await self._cronjobs.delete(cronjob_id)
        logger.info('Cronjob %s deleted', cronjob_id, extra={'cronjob_id': cronjob_id})

    async def cancel_for_box(self, box_id: str) -> int:
        """Cancel the triggers of every cronjob of a deleted box; rows are kept."""
        cronjobs = await self._cronjobs.list_for_box(box_id)
        cancelled = 0
        for cronjob in cronjobs:
            if await self._engine.cancel_repeatable(cronjob.repeat_key):
                cancelled += 1
        if cronjobs:
            logger.info(
                'Cancelled %d cronjob trigger(s) of deleted box %s', cancelled, box_id,
                extra={'box_id': box_id},
            )
        return cancelled

    async def list_by_box(self, box_id: str, *, user_id: str | None = None) -> list[Cronjob]:
        await self._boxes.get(box_id, user_id=user_id)
        return await self._cronjobs.list_for_box(box_id)

    async def get_box_for_cronjob(self, cronjob_id: str) -> Box:
        cronjob = await self.get(cronjob_id)
        return await self._boxes.get(cronjob.box_id)

    async def update_last_run_at(self, cronjob_id: str, *, now: datetime | None = None) -> None:
        cronjob = await self.get(cronjob_id)
        now = now or utcnow()
        await self._cronjobs.update(
            cronjob_id,
            {
                'last_run_at': now,
                'next_run_at': next_fire_time(cronjob.schedule, cronjob.timezone, after=now),
            },
        )

    # ── Executions ───────────────────────────────────────────────

    async def create_execution(self, cronjob_id: str) -> CronjobExecution:
        execution = CronjobExecution(
            id=f'exec_{uuid.uuid4().hex[:16]}',
            cronjob_id=cronjob_id,
            status='pending',
        )
        return await self._executions.insert(execution)

    async def update_execution(self, execution_id: str, **changes: Any) -> CronjobExecution:
        status = changes.get('status')
        if status is not None and status not in EXECUTION_STATUSES:
            raise ValidationFailedError(f'invalid execution status: {status!r}')
        updated = await self._executions.update(execution_id, changes)
        if updated is None:
            raise NotFoundError(f'execution {execution_id!r} not found')
        return updated

    async def list_executions(
        self,
        cronjob_id: str,
        *,
        user_id: str | None = None,
        limit: int = DEFAULT_EXECUTION_LIMIT,
    ) -> list[CronjobExecution]:
        await self.get(cronjob_id, user_id=user_id)
        return await self._executions.list_for_cronjob(cronjob_id, limit=limit)
