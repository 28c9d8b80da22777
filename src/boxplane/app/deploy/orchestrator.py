"""Deploy entry point: guard the box, plan the DAG, seed the ledger, submit.

Everything that can be rejected synchronously (unknown box, wrong status,
lost deploy race) is rejected before any job exists. Once the box is in
``deploying`` any failure to get the flow submitted moves it to ``error``
so it never sits in ``deploying`` without work behind it.
"""

from __future__ import annotations

import logging
from typing import Any

from ..boxes.models import Box
from ..boxes.service import BoxService
from ..boxes.state_machine import InvalidStatusTransition
from ..errors import BoxPlaneError, InternalError, error_message
from ..ledger.service import DeployStepService
from ..observability.metrics import DEPLOYMENTS_TOTAL
from ..workflow.engine import WorkflowEngine
from .flow_builder import DeployFlowBuilder, DeployPlan
from .steps import QUEUE_DELETE_INSTANCE

logger = logging.getLogger(__name__)


class DeployOrchestrator:
    """Starts deployment attempts and schedules instance teardown."""

    def __init__(
        self,
        *,
        boxes: BoxService,
        steps: DeployStepService,
        engine: WorkflowEngine,
        builder: DeployFlowBuilder | None = None,
    ) -> None:
        self._boxes = boxes
        self._steps = steps
        self._engine = engine
        self._builder = builder or DeployFlowBuilder()

    async def deploy(self, box_id: str, *, user_id: str | None = None) -> Box:
        """Start a new deployment attempt; returns the box in ``deploying``."""
        box = await self._boxes.start_deployment(box_id, user_id=user_id)
        try:
            plan = self._builder.build(box)
            await self._steps.initialize_steps(box.id, box.deployment_attempt, plan.steps)
            await self._engine.submit_flow(plan.root)
        except Exception as exc:
            await self._abort(box, exc)
            if isinstance(exc, BoxPlaneError):
                raise
            raise InternalError(
                f'failed to start deployment: {error_message(exc)}',
                details={'box_id': box.id},
            ) from exc

        DEPLOYMENTS_TOTAL.labels(outcome='submitted').inc()
        logger.info(
            'Deployment submitted for box %s attempt %d (%d steps)',
            box.id, box.deployment_attempt, len(plan.steps),
            extra={'box_id': box.id, 'attempt': box.deployment_attempt},
        )
        return box

    def plan(self, box: Box) -> DeployPlan:
        return self._builder.build(box)

    async def _abort(self, box: Box, exc: Exception) -> None:
        logger.error(
            'Deployment of box %s attempt %d could not be submitted: %s',
            box.id, box.deployment_attempt, error_message(exc),
            extra={'box_id': box.id, 'attempt': box.deployment_attempt},
        )
        try:
            await self._boxes.update_status(
                box.id,
                'error',
                error_message=f'Deployment could not be started: {error_message(exc)}',
            )
        except InvalidStatusTransition:
            logger.info('Box %s left deploying before abort was recorded', box.id)

    # ── Teardown ─────────────────────────────────────────────────

    async def schedule_teardown(self, box: Box) -> None:
        """Enqueue removal of ``box``'s instance (idempotent per box)."""
        if not box.instance_name:
            return
        data: dict[str, Any] = {
            'box_id': box.id,
            'instance_name': box.instance_name,
            'provider': box.provider,
        }
        await self._engine.add_job(
            QUEUE_DELETE_INSTANCE,
            'delete-instance',
            data,
            job_id=f'{box.id}-delete-instance',
        )
        logger.info(
            'Teardown scheduled for box %s (%s)', box.id, box.instance_name,
            extra={'box_id': box.id, 'instance_name': box.instance_name},
        )
