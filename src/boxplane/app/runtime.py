"""Wire stores, provider, engine, and services into one runtime.

``build_runtime`` is the only place concrete implementations are chosen:
in-memory stores locally, Supabase elsewhere, and the compute provider
named by ``settings.default_provider``. Every piece can be overridden,
which is how tests inject fakes.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from .boxes.service import BoxService
from .cronjobs.service import CronjobService
from .cronjobs.trigger import CronTriggerHandler
from .deploy.flow_builder import DeployFlowBuilder
from .deploy.handlers import DeployStepHandlers
from .deploy.health import HealthCheckPolicy
from .deploy.orchestrator import DeployOrchestrator
from .deploy.setup_steps import DEFAULT_SETUP_STEPS
from .deploy.skills import HttpSkillCatalog, SkillCatalog, StaticSkillCatalog
from .deploy.stale import StaleDeploymentDetector
from .deploy.steps import (
    QUEUE_CREATE_INSTANCE,
    QUEUE_CRON_TRIGGER,
    QUEUE_DELETE_INSTANCE,
    QUEUE_ENABLE_ACCESS,
    QUEUE_FINALIZE,
    QUEUE_HEALTH_CHECK,
    QUEUE_INSTALL_SKILL,
    QUEUE_SETUP,
    QUEUE_SKILLS_GATE,
    QUEUE_STALE_SWEEP,
    STEP_QUEUE_CONFIG,
)
from .ledger.service import DeployStepService
from .protocols import (
    BoxRepository,
    CronjobExecutionRepository,
    CronjobRepository,
    DeployStepRepository,
)
from .providers.base import ComputeProvider
from .providers.factory import create_provider
from .settings import BoxPlaneSettings
from .workflow.engine import LocalWorkflowEngine
from .workflow.flow import Job

logger = logging.getLogger(__name__)

STALE_SWEEP_KEY = "maintenance-stale-sweep"


@dataclass
class BoxPlaneRuntime:
    """Everything the HTTP layer and the workers share.

    Stored on ``app.state.runtime``.
    """

    settings: BoxPlaneSettings
    provider: ComputeProvider
    engine: LocalWorkflowEngine
    boxes: BoxService
    steps: DeployStepService
    orchestrator: DeployOrchestrator
    handlers: DeployStepHandlers
    cronjobs: CronjobService
    cron_trigger: CronTriggerHandler
    stale_detector: StaleDeploymentDetector

    def register_queues(self) -> None:
        deploy_handlers = {
            QUEUE_CREATE_INSTANCE: self.handlers.create_instance,
            QUEUE_SETUP: self.handlers.setup_step,
            QUEUE_HEALTH_CHECK: self.handlers.health_check,
            QUEUE_SKILLS_GATE: self.handlers.skills_gate,
            QUEUE_ENABLE_ACCESS: self.handlers.enable_access,
            QUEUE_FINALIZE: self.handlers.finalize,
        }
        for queue, handler in deploy_handlers.items():
            self.engine.register(
                queue,
                handler,
                config=STEP_QUEUE_CONFIG[queue],
                on_failed=self.handlers.on_failed,
            )
        # Skill failures never fail the box; the gate decides.
        self.engine.register(
            QUEUE_INSTALL_SKILL,
            self.handlers.install_skill,
            config=STEP_QUEUE_CONFIG[QUEUE_INSTALL_SKILL],
        )
        self.engine.register(
            QUEUE_DELETE_INSTANCE,
            self.handlers.delete_instance,
            config=STEP_QUEUE_CONFIG[QUEUE_DELETE_INSTANCE],
        )
        self.engine.register(
            QUEUE_CRON_TRIGGER,
            self.cron_trigger,
            config=STEP_QUEUE_CONFIG[QUEUE_CRON_TRIGGER],
        )
        self.engine.register(
            QUEUE_STALE_SWEEP,
            self._stale_sweep,
            config=STEP_QUEUE_CONFIG[QUEUE_STALE_SWEEP],
        )

    async def _stale_sweep(self, job: Job) -> dict[str, Any]:
        report = await self.stale_detector.run()
        return report.to_dict()

    async def start(self) -> None:
        """Restore repeatables: cronjobs of running boxes and the stale sweep."""
        await self.cronjobs.sync_all()
        await self.engine.submit_repeatable(
            STALE_SWEEP_KEY,
            queue=QUEUE_STALE_SWEEP,
            name="stale-sweep",
            data={},
            cron=self.settings.stale_sweep_schedule,
        )

    async def close(self) -> None:
        await self.engine.close()


def _build_repositories(
    settings: BoxPlaneSettings, http_client: httpx.AsyncClient | None,
) -> tuple[BoxRepository, DeployStepRepository, CronjobRepository, CronjobExecutionRepository]:
    if settings.is_local:
        from .inmemory import (
            InMemoryBoxRepository,
            InMemoryCronjobExecutionRepository,
            InMemoryCronjobRepository,
            InMemoryDeployStepRepository,
        )

        return (
            InMemoryBoxRepository(),
            InMemoryDeployStepRepository(),
            InMemoryCronjobRepository(),
            InMemoryCronjobExecutionRepository(),
        )

    from .db import (
        SupabaseBoxRepository,
        SupabaseClient,
        SupabaseCronjobExecutionRepository,
        SupabaseCronjobRepository,
        SupabaseDeployStepRepository,
    )

    client = SupabaseClient(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
        http_client=http_client,
    )
    return (
        SupabaseBoxRepository(client),
        SupabaseDeployStepRepository(client),
        SupabaseCronjobRepository(client),
        SupabaseCronjobExecutionRepository(client),
    )


def build_runtime(
    settings: BoxPlaneSettings,
    *,
    box_repo: BoxRepository | None = None,
    step_repo: DeployStepRepository | None = None,
    cronjob_repo: CronjobRepository | None = None,
    execution_repo: CronjobExecutionRepository | None = None,
    provider: ComputeProvider | None = None,
    engine: LocalWorkflowEngine | None = None,
    skill_catalog: SkillCatalog | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> BoxPlaneRuntime:
    """Assemble a runtime; any argument left as None gets the default."""
    if box_repo is None or step_repo is None or cronjob_repo is None or execution_repo is None:
        defaults = _build_repositories(settings, http_client)
        box_repo = box_repo or defaults[0]
        step_repo = step_repo or defaults[1]
        cronjob_repo = cronjob_repo or defaults[2]
        execution_repo = execution_repo or defaults[3]

    provider = provider or create_provider(settings, http_client=http_client)
    engine = engine or LocalWorkflowEngine()
    if skill_catalog is None:
        skill_catalog = (
            HttpSkillCatalog(settings.skill_catalog_url, http_client=http_client)
            if settings.skill_catalog_url
            else StaticSkillCatalog()
        )

    boxes = BoxService(box_repo, default_provider=provider.name)
    steps = DeployStepService(step_repo)
    orchestrator = DeployOrchestrator(
        boxes=boxes,
        steps=steps,
        engine=engine,
        builder=DeployFlowBuilder(setup_steps=DEFAULT_SETUP_STEPS),
    )
    boxes.set_teardown(orchestrator)

    handlers = DeployStepHandlers(
        boxes=boxes,
        steps=steps,
        provider=provider,
        box_api_url=settings.box_api_url,
        agent_binary_url=settings.agent_binary_url,
        app_env="prod" if settings.environment == "production" else settings.environment,
        instance_port=settings.instance_port,
        skill_catalog=skill_catalog,
        setup_steps=DEFAULT_SETUP_STEPS,
        health_policy=HealthCheckPolicy(
            poll_interval_seconds=settings.health_poll_interval_seconds,
            timeout_seconds=settings.health_timeout_seconds,
            crash_loop_threshold=settings.health_crash_loop_threshold,
        ),
        skills_require_any_success=settings.skills_require_any_success,
    )
    cronjobs = CronjobService(cronjob_repo, execution_repo, boxes=boxes, engine=engine)
    boxes.set_cronjob_cleanup(cronjobs)

    runtime = BoxPlaneRuntime(
        settings=settings,
        provider=provider,
        engine=engine,
        boxes=boxes,
        steps=steps,
        orchestrator=orchestrator,
        handlers=handlers,
        cronjobs=cronjobs,
        cron_trigger=CronTriggerHandler(
            cronjobs,
            http_client=http_client,
            timeout_seconds=settings.cron_trigger_timeout_seconds,
        ),
        stale_detector=StaleDeploymentDetector(
            boxes, timeout_seconds=settings.stale_deploy_timeout_seconds,
        ),
    )
    runtime.register_queues()
    return runtime
