"""In-memory repository implementations for local development and tests.

These are used when ENVIRONMENT=local. They satisfy the protocol interfaces
but store everything in dicts (no persistence across restarts).
"""

from __future__ import annotations

from dataclasses import replace
from typing import Any, Collection, Mapping

from .boxes.models import Box, utcnow
from .cronjobs.models import Cronjob, CronjobExecution
from .errors import AlreadyExistsError
from .ledger.models import DeployStep


class InMemoryBoxRepository:
    def __init__(self) -> None:
        self._boxes: dict[str, Box] = {}

    async def get(self, box_id: str) -> Box | None:
        return self._boxes.get(box_id)

    async def insert(self, box: Box) -> Box:
        if box.id in self._boxes:
            raise AlreadyExistsError(f'box {box.id!r} already exists')
        if any(b.subdomain == box.subdomain for b in self._boxes.values()):
            raise AlreadyExistsError(
                f'subdomain {box.subdomain!r} is already taken',
                details={'subdomain': box.subdomain},
            )
        self._boxes[box.id] = box
        return box

    async def update(
        self,
        box_id: str,
        changes: Mapping[str, Any],
        *,
        expected_status: Collection[str] | None = None,
    ) -> Box | None:
        box = self._boxes.get(box_id)
        if box is None:
            return None
        if expected_status is not None and box.status not in expected_status:
            return None
        updated = replace(box, **{**changes, 'updated_at': utcnow()})
        self._boxes[box_id] = updated
        return updated

    async def list_for_user(self, user_id: str) -> list[Box]:
        boxes = [
            b for b in self._boxes.values()
            if b.user_id == user_id and b.status != 'deleted'
        ]
        return sorted(boxes, key=lambda b: b.created_at, reverse=True)

    async def list_by_status(self, status: str) -> list[Box]:
        return [b for b in self._boxes.values() if b.status == status]

    async def find_active_by_name(self, user_id: str, name: str) -> Box | None:
        for box in self._boxes.values():
            if box.user_id == user_id and box.name == name and box.status != 'deleted':
                return box
        return None

    async def subdomain_exists(self, subdomain: str) -> bool:
        return any(b.subdomain == subdomain for b in self._boxes.values())


class InMemoryDeployStepRepository:
    def __init__(self) -> None:
        self._steps: dict[str, DeployStep] = {}

    async def insert(self, step: DeployStep) -> DeployStep:
        existing = await self.get(step.box_id, step.deployment_attempt, step.step_key)
        if existing is not None:
            raise AlreadyExistsError(
                f'step {step.step_key!r} already exists for box {step.box_id!r} '
                f'attempt {step.deployment_attempt}',
                details={
                    'box_id': step.box_id,
                    'deployment_attempt': step.deployment_attempt,
                    'step_key': step.step_key,
                },
            )
        self._steps[step.id] = step
        return step

    async def get(
        self, box_id: str, deployment_attempt: int, step_key: str,
    ) -> DeployStep | None:
        for step in self._steps.values():
            if (
                step.box_id == box_id
                and step.deployment_attempt == deployment_attempt
                and step.step_key == step_key
            ):
                return step
        return None

    async def update(
        self, step_id: str, changes: Mapping[str, Any],
    ) -> DeployStep | None:
        step = self._steps.get(step_id)
        if step is None:
            return None
        updated = replace(step, **changes)
        self._steps[step_id] = updated
        return updated

    async def list_for_box(
        self, box_id: str, deployment_attempt: int | None = None,
    ) -> list[DeployStep]:
        steps = [
            s for s in self._steps.values()
            if s.box_id == box_id
            and (deployment_attempt is None or s.deployment_attempt == deployment_attempt)
        ]
        return sorted(steps, key=lambda s: (s.deployment_attempt, s.order))


class InMemoryCronjobRepository:
    def __init__(self) -> None:
        self._cronjobs: dict[str, Cronjob] = {}

    async def get(self, cronjob_id: str) -> Cronjob | None:
        return self._cronjobs.get(cronjob_id)

    async def insert(self, cronjob: Cronjob) -> Cronjob:
        if cronjob.id in self._cronjobs:
            raise AlreadyExistsError(f'cronjob {cronjob.id!r} already exists')
        self._cronjobs[cronjob.id] = cronjob
        return cronjob

    async def update(
        self, cronjob_id: str, changes: Mapping[str, Any],
    ) -> Cronjob | None:
        cronjob = self._cronjobs.get(cronjob_id)
        if cronjob is None:
            return None
        updated = replace(cronjob, **{**changes, 'updated_at': utcnow()})
        self._cronjobs[cronjob_id] = updated
        return updated

    async def delete(self, cronjob_id: str) -> bool:
        return self._cronjobs.pop(cronjob_id, None) is not None

    async def list_for_box(self, box_id: str) -> list[Cronjob]:
        jobs = [c for c in self._cronjobs.values() if c.box_id == box_id]
        return sorted(jobs, key=lambda c: c.created_at, reverse=True)

    async def list_enabled(self) -> list[Cronjob]:
        return [c for c in self._cronjobs.values() if c.enabled]


class InMemoryCronjobExecutionRepository:
    def __init__(self) -> None:
        self._executions: dict[str, CronjobExecution] = {}

    async def insert(self, execution: CronjobExecution) -> CronjobExecution:
        self._executions[execution.id] = execution
        return execution

    async def update(
        self, execution_id: str, changes: Mapping[str, Any],
    ) -> CronjobExecution | None:
        execution = self._executions.get(execution_id)
        if execution is None:
            return None
        updated = replace(execution, **changes)
        self._executions[execution_id] = updated
        return updated

    async def list_for_cronjob(
        self, cronjob_id: str, *, limit: int = 20,
    ) -> list[CronjobExecution]:
        executions = [
            e for e in self._executions.values() if e.cronjob_id == cronjob_id
        ]
        executions.sort(key=lambda e: e.started_at, reverse=True)
        return executions[:limit]
