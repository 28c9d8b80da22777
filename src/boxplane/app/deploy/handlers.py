"""Queue handlers for every deploy step, plus instance teardown.

Each step handler goes through ``_run_step`` which:

  1. drops the job when the deployment it belongs to is gone (box deleted,
     no longer deploying, or a newer attempt started);
  2. returns the recorded result when the ledger row is already
     ``completed`` (re-delivered job);
  3. moves the row ``running -> completed | failed`` around the action,
     unless the deployment went away while the action ran; then the row
     is left ``running`` and the job reports ``cancelled``.

Handlers return JSON-able dicts. Every result carries the instance
``handle`` so downstream nodes can find the instance without a lookup.

Permanent failures reach ``on_failed``, which moves the box to ``error``
with ``"<step label> failed: <reason>"``. Skill installs never do: they
report ``{"success": False}`` and the skills gate decides.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

from ..boxes.models import Box
from ..boxes.service import BoxService
from ..boxes.state_machine import InvalidStatusTransition
from ..errors import ProviderError, error_message
from ..ledger.service import DeployStepService
from ..observability.metrics import DEPLOY_STEPS_TOTAL, DEPLOYMENTS_TOTAL, step_family
from ..providers.base import ComputeProvider, InstanceHandle, InstanceSpec
from ..workflow.flow import Job
from .env import build_box_env
from .health import HealthCheckPolicy, wait_until_healthy
from .setup_steps import DEFAULT_SETUP_STEPS, SetupContext, SetupStep
from .skills import SkillCatalog, StaticSkillCatalog, install_command

logger = logging.getLogger(__name__)

StepAction = Callable[[Job, Box], Awaitable[dict[str, Any]]]


def _log_extra(job: Job) -> dict[str, Any]:
    return {
        'box_id': job.data.get('box_id'),
        'attempt': job.data.get('deployment_attempt'),
        'step_key': job.data.get('step_key'),
        'job_id': job.id,
    }


class DeployStepHandlers:
    """Step implementations bound to the stores and the compute provider."""

    def __init__(
        self,
        *,
        boxes: BoxService,
        steps: DeployStepService,
        provider: ComputeProvider,
        box_api_url: str,
        agent_binary_url: str,
        app_env: str = 'prod',
        instance_port: int = 8080,
        skill_catalog: SkillCatalog | None = None,
        setup_steps: tuple[SetupStep, ...] = DEFAULT_SETUP_STEPS,
        health_policy: HealthCheckPolicy = HealthCheckPolicy(),
        skills_require_any_success: bool = False,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._boxes = boxes
        self._steps = steps
        self._provider = provider
        self._box_api_url = box_api_url
        self._agent_binary_url = agent_binary_url
        self._app_env = app_env
        self._instance_port = instance_port
        self._skill_catalog = skill_catalog or StaticSkillCatalog()
        self._setup_steps = {step.name: step for step in setup_steps}
        self._health_policy = health_policy
        self._skills_require_any_success = skills_require_any_success
        self._sleep = sleep

    # ── Step wrapper ─────────────────────────────────────────────

    async def _active_box(
        self, box_id: str, attempt: int, statuses: tuple[str, ...] = ('deploying',),
    ) -> Box | None:
        """The box while this attempt still owns it, else None."""
        box = await self._boxes.find(box_id)
        if box is None or box.status not in statuses or box.deployment_attempt != attempt:
            return None
        return box

    async def _run_step(
        self,
        job: Job,
        action: StepAction,
        *,
        settled_status: str = 'deploying',
    ) -> dict[str, Any]:
        box_id = job.data['box_id']
        attempt = job.data['deployment_attempt']
        step_key = job.data['step_key']

        box = await self._active_box(box_id, attempt)
        if box is None:
            logger.info(
                'Skipping %s: deployment no longer active', step_key, extra=_log_extra(job),
            )
            return {'cancelled': True}

        row = await self._steps.get_step(box_id, attempt, step_key)
        if row is not None and row.status == 'completed':
            logger.info('Step %s already completed', step_key, extra=_log_extra(job))
            return dict(row.metadata.get('result') or {})

        await self._steps.update_step(
            box_id, attempt, step_key, 'running', metadata={'job_id': job.id},
        )
        try:
            result = await action(job, box)
        except Exception as exc:
            if await self._active_box(box_id, attempt) is None:
                logger.info(
                    'Step %s interrupted: deployment no longer active (%s)',
                    step_key, error_message(exc), extra=_log_extra(job),
                )
                return {'cancelled': True}
            await self._steps.update_step(
                box_id, attempt, step_key, 'failed', error_message=error_message(exc),
            )
            DEPLOY_STEPS_TOTAL.labels(step=step_family(step_key), status='failed').inc()
            raise

        # The row is left as it is once the deployment has gone away.
        if result.get('cancelled'):
            return result
        if await self._active_box(box_id, attempt, ('deploying', settled_status)) is None:
            logger.info(
                'Step %s finished after deployment ended; not recorded',
                step_key, extra=_log_extra(job),
            )
            return {'cancelled': True}

        if result.get('success') is False:
            await self._steps.update_step(
                box_id, attempt, step_key, 'failed',
                error_message=result.get('error') or 'step reported failure',
                metadata={'result': result},
            )
            DEPLOY_STEPS_TOTAL.labels(step=step_family(step_key), status='failed').inc()
            logger.warning(
                'Step %s failed: %s', step_key, result.get('error'), extra=_log_extra(job),
            )
            return result

        await self._steps.update_step(
            box_id, attempt, step_key, 'completed', metadata={'result': result},
        )
        DEPLOY_STEPS_TOTAL.labels(step=step_family(step_key), status='completed').inc()
        logger.info('Step %s completed', step_key, extra=_log_extra(job))
        return result

    async def on_failed(self, job: Job, exc: BaseException) -> None:
        """Permanent failure: close the ledger row and move the box to error."""
        box_id = job.data['box_id']
        attempt = job.data['deployment_attempt']
        step_key = job.data['step_key']
        label = job.data.get('step_label') or step_key
        reason = error_message(exc)

        if await self._active_box(box_id, attempt) is None:
            logger.info(
                'Ignoring failure of %s: deployment no longer active', step_key,
                extra=_log_extra(job),
            )
            return

        row = await self._steps.get_step(box_id, attempt, step_key)
        if row is not None and row.status not in ('completed', 'failed'):
            # A timed-out attempt is cancelled before it can close its row.
            await self._steps.update_step(
                box_id, attempt, step_key, 'failed', error_message=reason,
            )

        try:
            await self._boxes.update_status(
                box_id, 'error', error_message=f'{label} failed: {reason}',
            )
            DEPLOYMENTS_TOTAL.labels(outcome='error').inc()
        except InvalidStatusTransition:
            # Deleted or finished concurrently.
            logger.info('Box %s left deploying before failure was recorded', box_id)

    # ── Handle plumbing ──────────────────────────────────────────

    async def _handle(self, job: Job, box: Box) -> InstanceHandle:
        for value in job.children_values.values():
            if isinstance(value, Mapping) and value.get('handle'):
                return InstanceHandle.from_dict(value['handle'])
        if box.instance_name:
            handle = await self._provider.get_instance(box.instance_name)
            if handle is not None:
                return handle
        raise ProviderError(
            f'no instance recorded for box {box.id}',
            provider=self._provider.name,
            operation='get_instance',
            retryable=False,
        )

    # ── Steps ────────────────────────────────────────────────────

    async def create_instance(self, job: Job) -> dict[str, Any]:
        return await self._run_step(job, self._create_instance)

    async def _create_instance(self, job: Job, box: Box) -> dict[str, Any]:
        spec = InstanceSpec(
            name=box.subdomain,
            subdomain=box.subdomain,
            box_id=box.id,
            env=build_box_env(box, box_api_url=self._box_api_url, app_env=self._app_env),
            port=self._instance_port,
        )
        handle = await self._provider.create_instance(spec)
        recorded = await self._boxes.record_instance(
            box.id, instance_name=handle.name, instance_url=handle.url,
        )
        if recorded is None:
            current = await self._boxes.find(box.id)
            if current is None or current.status == 'deleted':
                # Deleted while we were provisioning: nothing will tear this down.
                logger.info(
                    'Box %s deleted during provisioning, removing %s', box.id, handle.name,
                    extra=_log_extra(job),
                )
                await self._provider.delete_instance(handle)
            return {'cancelled': True}

        logger.info(
            'Instance %s created at %s', handle.name, handle.url,
            extra={**_log_extra(job), 'instance_name': handle.name},
        )
        return {'handle': handle.to_dict(), 'url': handle.url}

    async def setup_step(self, job: Job) -> dict[str, Any]:
        return await self._run_step(job, self._setup_step)

    async def _setup_step(self, job: Job, box: Box) -> dict[str, Any]:
        name = job.data['setup_step']
        setup = self._setup_steps.get(name)
        if setup is None:
            raise ProviderError(
                f'unknown setup step {name!r}',
                provider=self._provider.name,
                operation='setup',
                retryable=False,
            )
        handle = await self._handle(job, box)
        if setup.requires_exec and not self._provider.capabilities.exec:
            logger.info(
                'Setup %s skipped: %s has no exec', name, self._provider.name,
                extra=_log_extra(job),
            )
            return {'handle': handle.to_dict(), 'skipped': True, 'reason': 'exec unsupported'}

        ctx = SetupContext(
            provider=self._provider,
            handle=handle,
            env=build_box_env(box, box_api_url=self._box_api_url, app_env=self._app_env),
            agent_binary_url=self._agent_binary_url,
        )
        result = await setup.action(ctx)
        return {**result, 'handle': handle.to_dict()}

    async def health_check(self, job: Job) -> dict[str, Any]:
        return await self._run_step(job, self._health_check)

    async def _health_check(self, job: Job, box: Box) -> dict[str, Any]:
        handle = await self._handle(job, box)
        result = await wait_until_healthy(
            self._provider, handle, policy=self._health_policy, sleep=self._sleep,
        )
        return {
            'handle': handle.to_dict(),
            'status': result.health.raw,
            'polls': result.polls,
        }

    async def install_skill(self, job: Job) -> dict[str, Any]:
        return await self._run_step(job, self._install_skill)

    async def _install_skill(self, job: Job, box: Box) -> dict[str, Any]:
        skill_id = job.data['skill_id']
        handle = await self._handle(job, box)
        base = {'handle': handle.to_dict(), 'skill_id': skill_id}

        if not self._provider.capabilities.exec:
            return {**base, 'success': False, 'error': 'provider cannot run install commands'}

        resolved = (await self._skill_catalog.resolve([skill_id])).get(skill_id)
        if resolved is None:
            return {**base, 'success': False, 'error': f'skill {skill_id!r} not found in catalog'}

        # Transport errors propagate so the queue retries them; a non-zero
        # exit is the skill's own failure.
        result = await self._provider.exec_command(handle, install_command(resolved))
        if not result.ok:
            output = (result.stderr or result.stdout).strip()[:500]
            return {
                **base,
                'success': False,
                'source': resolved.source,
                'error': f'skills add {resolved.source} failed: exit {result.exit_code}: {output}',
            }
        return {**base, 'success': True, 'source': resolved.source}

    async def skills_gate(self, job: Job) -> dict[str, Any]:
        return await self._run_step(job, self._skills_gate)

    async def _skills_gate(self, job: Job, box: Box) -> dict[str, Any]:
        skills = list(job.data.get('skills') or box.skills)
        succeeded: list[str] = []
        failed: list[str] = []
        for skill_id in skills:
            value = job.children_values.get(f'install-skill:{skill_id}')
            if isinstance(value, Mapping) and value.get('success') is True:
                succeeded.append(skill_id)
            else:
                failed.append(skill_id)

        summary = {
            'total': len(skills),
            'succeeded': len(succeeded),
            'failed': len(failed),
            'failed_skills': failed,
        }
        if failed:
            logger.warning(
                'Skills gate: %d/%d skills failed: %s', len(failed), len(skills), failed,
                extra=_log_extra(job),
            )
        if self._skills_require_any_success and skills and not succeeded:
            raise ProviderError(
                f'all {len(skills)} skills failed to install',
                provider=self._provider.name,
                operation='install_skill',
                details=summary,
                retryable=False,
            )
        handle = await self._handle(job, box)
        return {**summary, 'handle': handle.to_dict()}

    async def enable_access(self, job: Job) -> dict[str, Any]:
        return await self._run_step(job, self._enable_access)

    async def _enable_access(self, job: Job, box: Box) -> dict[str, Any]:
        handle = await self._handle(job, box)
        await self._provider.set_public_access(handle)
        return {'handle': handle.to_dict(), 'url': handle.url}

    async def finalize(self, job: Job) -> dict[str, Any]:
        return await self._run_step(job, self._finalize, settled_status='running')

    async def _finalize(self, job: Job, box: Box) -> dict[str, Any]:
        handle = await self._handle(job, box)
        await self._boxes.update_status(
            box.id,
            'running',
            instance_name=handle.name,
            instance_url=handle.url,
        )
        DEPLOYMENTS_TOTAL.labels(outcome='running').inc()
        logger.info(
            'Box %s running at %s', box.id, handle.url, extra=_log_extra(job),
        )
        return {'handle': handle.to_dict(), 'url': handle.url, 'status': 'running'}

    # ── Teardown ─────────────────────────────────────────────────

    async def delete_instance(self, job: Job) -> dict[str, Any]:
        """Remove a deleted box's instance. A missing instance is success."""
        name = job.data['instance_name']
        handle = await self._provider.get_instance(name)
        if handle is None:
            logger.info('Instance %s already gone', name, extra={'instance_name': name})
            return {'deleted': False, 'instance_name': name}
        await self._provider.delete_instance(handle)
        logger.info(
            'Instance %s deleted for box %s', name, job.data.get('box_id'),
            extra={'box_id': job.data.get('box_id'), 'instance_name': name},
        )
        return {'deleted': True, 'instance_name': name}
