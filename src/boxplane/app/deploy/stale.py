"""Stale deployment detector and repair action.

A box that sits in ``deploying`` without any update for longer than the
deadline lost its workflow (process restart, dropped job). The sweep moves
such boxes to ``error`` so the owner can retry.

Usage::

    detector = StaleDeploymentDetector(boxes, timeout_seconds=1800)
    report = await detector.run(now=datetime.now(timezone.utc))
    # report.stale contains boxes moved to error
    # report.healthy contains deployments still within the deadline
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from ..boxes.models import Box
from ..boxes.service import BoxService
from ..boxes.state_machine import InvalidStatusTransition
from ..errors import ErrorCode
from ..observability.metrics import DEPLOYMENTS_TOTAL

logger = logging.getLogger(__name__)

DEFAULT_STALE_TIMEOUT_SECONDS = 1800


@dataclass(frozen=True, slots=True)
class StaleDeployment:
    box: Box
    elapsed_seconds: float


@dataclass(frozen=True, slots=True)
class SweepReport:
    """Result of one sweep over deploying boxes.

    Attributes:
        stale: Deployments past the deadline.
        healthy: Deployments still within the deadline.
        repaired: Ids of boxes actually moved to error.
        sweep_ts: Timestamp of the sweep.
    """

    stale: tuple[StaleDeployment, ...]
    healthy: tuple[Box, ...]
    sweep_ts: datetime
    repaired: tuple[str, ...] = ()

    @property
    def stale_count(self) -> int:
        return len(self.stale)

    @property
    def healthy_count(self) -> int:
        return len(self.healthy)

    def to_dict(self) -> dict[str, Any]:
        return {
            'stale': [entry.box.id for entry in self.stale],
            'healthy': len(self.healthy),
            'repaired': list(self.repaired),
            'sweep_ts': self.sweep_ts.isoformat(),
        }


class StaleDeploymentDetector:
    """Detects stuck deployments and moves them to ``error``.

    Args:
        boxes: Box service used for listing and repair.
        timeout_seconds: Max time a box may stay in ``deploying`` without
            an update.
    """

    def __init__(
        self,
        boxes: BoxService,
        *,
        timeout_seconds: int = DEFAULT_STALE_TIMEOUT_SECONDS,
    ) -> None:
        self._boxes = boxes
        self._timeout = timeout_seconds

    def sweep(self, boxes: Sequence[Box], *, now: datetime) -> SweepReport:
        """Classify deploying boxes without mutating anything."""
        stale: list[StaleDeployment] = []
        healthy: list[Box] = []
        for box in boxes:
            if box.status != 'deploying':
                continue
            elapsed = (now - box.updated_at).total_seconds()
            if elapsed > self._timeout:
                stale.append(StaleDeployment(box=box, elapsed_seconds=elapsed))
            else:
                healthy.append(box)
        return SweepReport(stale=tuple(stale), healthy=tuple(healthy), sweep_ts=now)

    async def repair(self, report: SweepReport) -> SweepReport:
        repaired: list[str] = []
        for entry in report.stale:
            box = entry.box
            try:
                await self._boxes.update_status(
                    box.id,
                    'error',
                    error_message=(
                        f'Deployment timed out after {int(entry.elapsed_seconds)}s '
                        f'without progress'
                    ),
                )
            except InvalidStatusTransition:
                # Finished (or deleted) between listing and repair.
                continue
            repaired.append(box.id)
            DEPLOYMENTS_TOTAL.labels(outcome='stale').inc()
            logger.warning(
                'Stale deployment of box %s attempt %d moved to error (%s)',
                box.id, box.deployment_attempt, ErrorCode.TIMEOUT.value,
                extra={'box_id': box.id, 'attempt': box.deployment_attempt},
            )
        return SweepReport(
            stale=report.stale,
            healthy=report.healthy,
            sweep_ts=report.sweep_ts,
            repaired=tuple(repaired),
        )

    async def run(self, *, now: datetime | None = None) -> SweepReport:
        now = now or datetime.now(timezone.utc)
        deploying = await self._boxes.list_by_status('deploying')
        return await self.repair(self.sweep(deploying, now=now))
