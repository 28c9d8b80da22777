"""Deploy step keys, queue names, and per-queue retry policy."""

from __future__ import annotations

from types import MappingProxyType
from typing import Mapping

from ..workflow.flow import QueueConfig

CREATE_INSTANCE = 'create-instance'
HEALTH_CHECK = 'health-check'
SKILLS_GATE = 'skills-gate'
ENABLE_ACCESS = 'enable-access'
FINALIZE = 'finalize'
SETUP_PREFIX = 'setup:'
INSTALL_SKILL_PREFIX = 'install-skill:'

QUEUE_CREATE_INSTANCE = 'deploy.create-instance'
QUEUE_SETUP = 'deploy.setup'
QUEUE_HEALTH_CHECK = 'deploy.health-check'
QUEUE_INSTALL_SKILL = 'deploy.install-skill'
QUEUE_SKILLS_GATE = 'deploy.skills-gate'
QUEUE_ENABLE_ACCESS = 'deploy.enable-access'
QUEUE_FINALIZE = 'deploy.finalize'
QUEUE_DELETE_INSTANCE = 'box.delete-instance'
QUEUE_CRON_TRIGGER = 'cron.trigger'
QUEUE_STALE_SWEEP = 'maintenance.stale-sweep'

# Health-check polling bounds its own wait, so the node runs once; a second
# attempt would double the user's wait before the box reaches error.
STEP_QUEUE_CONFIG: Mapping[str, QueueConfig] = MappingProxyType(
    {
        QUEUE_CREATE_INSTANCE: QueueConfig(attempts=3, backoff_seconds=30, concurrency=5),
        QUEUE_SETUP: QueueConfig(
            attempts=3, backoff_seconds=10, concurrency=10, timeout_seconds=180,
        ),
        QUEUE_HEALTH_CHECK: QueueConfig(attempts=1, concurrency=10),
        QUEUE_INSTALL_SKILL: QueueConfig(attempts=2, backoff_seconds=5, concurrency=5),
        QUEUE_SKILLS_GATE: QueueConfig(attempts=1, concurrency=10),
        QUEUE_ENABLE_ACCESS: QueueConfig(attempts=3, backoff_seconds=10, concurrency=10),
        QUEUE_FINALIZE: QueueConfig(attempts=1, concurrency=10),
        QUEUE_DELETE_INSTANCE: QueueConfig(attempts=3, backoff_seconds=10, concurrency=5),
        QUEUE_CRON_TRIGGER: QueueConfig(attempts=1, concurrency=10, timeout_seconds=300),
        QUEUE_STALE_SWEEP: QueueConfig(attempts=1, concurrency=1),
    }
)

STEP_LABELS: Mapping[str, str] = MappingProxyType(
    {
        CREATE_INSTANCE: 'Create instance',
        HEALTH_CHECK: 'Health check',
        SKILLS_GATE: 'Skills gate',
        ENABLE_ACCESS: 'Enable public access',
        FINALIZE: 'Finalize',
    }
)


def setup_key(name: str) -> str:
    return f'{SETUP_PREFIX}{name}'


def install_skill_key(skill_id: str) -> str:
    return f'{INSTALL_SKILL_PREFIX}{skill_id}'


def job_id_for(box_id: str, deployment_attempt: int, step_key: str) -> str:
    return f'{box_id}-{deployment_attempt}-{step_key}'
