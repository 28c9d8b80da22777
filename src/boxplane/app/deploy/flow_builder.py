"""Build the per-attempt deployment DAG.

Reference shape (leaves first)::

    create-instance
      -> setup:<step> x N      (linear chain)
      -> health-check
      -> install-skill:<id> x K (parallel, each depends on health-check)
      -> skills-gate            (joins every install-skill; omitted when K=0)
      -> enable-access
      -> finalize               (root)

The stage order is a parameter so the position of health-check, the skill
fan-out, and enable-access can change without touching any handler.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence

from ..boxes.models import Box
from ..ledger.models import PlannedStep
from ..workflow.flow import FlowNode
from .setup_steps import DEFAULT_SETUP_STEPS, SetupStep
from .steps import (
    CREATE_INSTANCE,
    ENABLE_ACCESS,
    FINALIZE,
    HEALTH_CHECK,
    QUEUE_CREATE_INSTANCE,
    QUEUE_ENABLE_ACCESS,
    QUEUE_FINALIZE,
    QUEUE_HEALTH_CHECK,
    QUEUE_INSTALL_SKILL,
    QUEUE_SETUP,
    QUEUE_SKILLS_GATE,
    SKILLS_GATE,
    STEP_LABELS,
    install_skill_key,
    job_id_for,
    setup_key,
)

STAGE_CREATE = 'create-instance'
STAGE_SETUP = 'setup'
STAGE_HEALTH = 'health-check'
STAGE_SKILLS = 'skills'
STAGE_ACCESS = 'enable-access'
STAGE_FINALIZE = 'finalize'

DEFAULT_STAGE_ORDER: tuple[str, ...] = (
    STAGE_CREATE,
    STAGE_SETUP,
    STAGE_HEALTH,
    STAGE_SKILLS,
    STAGE_ACCESS,
    STAGE_FINALIZE,
)
_ALL_STAGES = frozenset(DEFAULT_STAGE_ORDER)


@dataclass(frozen=True, slots=True)
class DeployPlan:
    root: FlowNode
    steps: tuple[PlannedStep, ...]

    @property
    def step_keys(self) -> tuple[str, ...]:
        return tuple(step.step_key for step in self.steps)


def validate_stage_order(stage_order: Sequence[str]) -> None:
    stages = tuple(stage_order)
    if len(stages) != len(set(stages)) or set(stages) != _ALL_STAGES:
        raise ValueError(
            f'stage order must contain each of {sorted(_ALL_STAGES)} exactly once, '
            f'got {list(stages)}'
        )
    if stages[0] != STAGE_CREATE:
        raise ValueError('stage order must start with create-instance')
    if stages[-1] != STAGE_FINALIZE:
        raise ValueError('stage order must end with finalize')


class DeployFlowBuilder:
    """Turns a deploying box into a ``DeployPlan`` (DAG + ledger rows)."""

    def __init__(
        self,
        *,
        setup_steps: Sequence[SetupStep] = DEFAULT_SETUP_STEPS,
        stage_order: Sequence[str] = DEFAULT_STAGE_ORDER,
    ) -> None:
        validate_stage_order(stage_order)
        self._setup_steps = tuple(setup_steps)
        self._stage_order = tuple(stage_order)

    def build(self, box: Box) -> DeployPlan:
        attempt = box.deployment_attempt
        planned: list[PlannedStep] = []

        def node(
            step_key: str,
            label: str,
            queue: str,
            children: list[FlowNode],
            *,
            fail_parent_on_failure: bool = True,
            **extra: Any,
        ) -> FlowNode:
            planned.append(PlannedStep(step_key=step_key, name=label, order=len(planned) + 1))
            return FlowNode(
                name=step_key,
                queue=queue,
                job_id=job_id_for(box.id, attempt, step_key),
                data={
                    'box_id': box.id,
                    'user_id': box.user_id,
                    'deployment_attempt': attempt,
                    'step_key': step_key,
                    'step_label': label,
                    **extra,
                },
                children=children,
                fail_parent_on_failure=fail_parent_on_failure,
            )

        frontier: FlowNode | None = None

        def after_frontier() -> list[FlowNode]:
            return [frontier] if frontier is not None else []

        for stage in self._stage_order:
            if stage == STAGE_CREATE:
                frontier = node(
                    CREATE_INSTANCE, STEP_LABELS[CREATE_INSTANCE], QUEUE_CREATE_INSTANCE,
                    after_frontier(),
                    subdomain=box.subdomain,
                )
            elif stage == STAGE_SETUP:
                for setup in self._setup_steps:
                    frontier = node(
                        setup_key(setup.name), setup.label, QUEUE_SETUP,
                        after_frontier(),
                        setup_step=setup.name,
                    )
            elif stage == STAGE_HEALTH:
                frontier = node(
                    HEALTH_CHECK, STEP_LABELS[HEALTH_CHECK], QUEUE_HEALTH_CHECK,
                    after_frontier(),
                )
            elif stage == STAGE_SKILLS:
                if not box.skills:
                    continue
                skill_nodes = [
                    node(
                        install_skill_key(skill_id),
                        f'Install skill: {skill_id}',
                        QUEUE_INSTALL_SKILL,
                        after_frontier(),
                        fail_parent_on_failure=False,
                        skill_id=skill_id,
                    )
                    for skill_id in box.skills
                ]
                frontier = node(
                    SKILLS_GATE, STEP_LABELS[SKILLS_GATE], QUEUE_SKILLS_GATE,
                    skill_nodes,
                    skills=list(box.skills),
                )
            elif stage == STAGE_ACCESS:
                frontier = node(
                    ENABLE_ACCESS, STEP_LABELS[ENABLE_ACCESS], QUEUE_ENABLE_ACCESS,
                    after_frontier(),
                )
            elif stage == STAGE_FINALIZE:
                frontier = node(
                    FINALIZE, STEP_LABELS[FINALIZE], QUEUE_FINALIZE,
                    after_frontier(),
                )

        if frontier is None:
            raise ValueError('empty deploy plan')
        return DeployPlan(root=frontier, steps=tuple(planned))
