"""cron.trigger handler: deliver a cronjob's prompt to its box agent."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable

import httpx

from ..boxes.models import utcnow
from ..errors import InvalidStatusError, ProviderError, error_message
from ..observability.metrics import CRON_EXECUTIONS_TOTAL
from ..providers.http_base import _get_shared_async_client
from ..workflow.flow import Job
from .service import CronjobService

logger = logging.getLogger(__name__)

_WAKE_TIMEOUT_SECONDS = 30.0
_MAX_RESULT_CHARS = 10_000


class CronTriggerHandler:
    """Records an execution and POSTs the prompt to ``/box/rpc/cron/trigger``.

    The box health endpoint is probed first so a sleeping instance wakes up
    before the trigger call; a failed probe is only logged.
    """

    def __init__(
        self,
        cronjobs: CronjobService,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 300.0,
        wake_timeout_seconds: float = _WAKE_TIMEOUT_SECONDS,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._cronjobs = cronjobs
        self._client = http_client
        self._timeout = timeout_seconds
        self._wake_timeout = wake_timeout_seconds
        self._monotonic = monotonic

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        return _get_shared_async_client()

    def _elapsed_ms(self, started: float) -> int:
        return int((self._monotonic() - started) * 1000)

    async def __call__(self, job: Job) -> dict[str, Any]:
        cronjob_id = job.data['cronjob_id']
        log_extra = {'cronjob_id': cronjob_id, 'box_id': job.data.get('box_id'), 'job_id': job.id}

        execution = await self._cronjobs.create_execution(cronjob_id)
        started = self._monotonic()
        try:
            cronjob = await self._cronjobs.get(cronjob_id)
            if not cronjob.enabled:
                await self._cronjobs.update_execution(
                    execution.id,
                    status='completed',
                    completed_at=utcnow(),
                    duration_ms=self._elapsed_ms(started),
                    result='Skipped: cronjob disabled',
                )
                CRON_EXECUTIONS_TOTAL.labels(status='skipped').inc()
                logger.info('Cronjob %s skipped: disabled', cronjob_id, extra=log_extra)
                return {'success': True, 'skipped': True, 'execution_id': execution.id}

            box = await self._cronjobs.get_box_for_cronjob(cronjob_id)
            if box.status != 'running' or not box.instance_url:
                raise InvalidStatusError(
                    f'Box not running (status: {box.status})',
                    details={'box_id': box.id, 'status': box.status},
                )

            base_url = box.instance_url.rstrip('/')
            await self._wake(base_url, log_extra)
            await self._cronjobs.update_execution(execution.id, status='running')

            resp = await self._get_client().post(
                f'{base_url}/box/rpc/cron/trigger',
                headers={'X-Box-Secret': box.agent_secret},
                json={
                    'cronjobId': cronjob.id,
                    'cronjobName': cronjob.name,
                    'prompt': cronjob.prompt,
                },
                timeout=self._timeout,
            )
            if resp.status_code >= 400:
                raise ProviderError(
                    f'Cron trigger failed: {resp.status_code} - {resp.text[:500]}',
                    status_code=resp.status_code,
                    provider='box-agent',
                    operation='cron_trigger',
                )
            try:
                result = json.dumps(resp.json())
            except ValueError:
                result = resp.text
        except Exception as exc:
            await self._cronjobs.update_execution(
                execution.id,
                status='failed',
                completed_at=utcnow(),
                duration_ms=self._elapsed_ms(started),
                error_message=error_message(exc),
            )
            CRON_EXECUTIONS_TOTAL.labels(status='failed').inc()
            logger.warning(
                'Cronjob %s execution failed: %s', cronjob_id, error_message(exc),
                extra=log_extra,
            )
            raise

        await self._cronjobs.update_execution(
            execution.id,
            status='completed',
            completed_at=utcnow(),
            duration_ms=self._elapsed_ms(started),
            result=result[:_MAX_RESULT_CHARS],
        )
        await self._cronjobs.update_last_run_at(cronjob_id)
        CRON_EXECUTIONS_TOTAL.labels(status='completed').inc()
        logger.info('Cronjob %s delivered', cronjob_id, extra=log_extra)
        return {'success': True, 'execution_id': execution.id}

    async def _wake(self, base_url: str, log_extra: dict[str, Any]) -> None:
        try:
            resp = await self._get_client().get(
                f'{base_url}/box/health', timeout=self._wake_timeout,
            )
        except httpx.HTTPError as exc:
            logger.info('Box health probe failed: %s', exc, extra=log_extra)
            return
        if resp.status_code >= 400:
            logger.info('Box health probe returned %d', resp.status_code, extra=log_extra)
