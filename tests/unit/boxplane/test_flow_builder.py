"""Deploy DAG construction tests."""

from __future__ import annotations

import pytest

from boxplane.app.boxes.models import Box
from boxplane.app.deploy.flow_builder import (
    DEFAULT_STAGE_ORDER,
    STAGE_ACCESS,
    STAGE_CREATE,
    STAGE_FINALIZE,
    STAGE_HEALTH,
    STAGE_SETUP,
    STAGE_SKILLS,
    DeployFlowBuilder,
    validate_stage_order,
)
from boxplane.app.deploy.steps import (
    QUEUE_INSTALL_SKILL,
    QUEUE_SKILLS_GATE,
    job_id_for,
)


def _box(skills=(), attempt=1) -> Box:
    return Box(
        id='box_1',
        name='Box',
        subdomain='box-abcd',
        user_id='user-1',
        provider='inmemory',
        status='deploying',
        deployment_attempt=attempt,
        skills=tuple(skills),
    )


def _by_key(plan):
    return {node.name: node for node in plan.root.walk()}


class TestDefaultShape:
    def test_step_keys_in_order(self):
        plan = DeployFlowBuilder().build(_box(skills=['a', 'b']))
        assert plan.step_keys == (
            'create-instance',
            'setup:install-agent',
            'setup:create-dirs',
            'setup:write-env',
            'health-check',
            'install-skill:a',
            'install-skill:b',
            'skills-gate',
            'enable-access',
            'finalize',
        )
        assert [s.order for s in plan.steps] == list(range(1, 11))

    def test_root_is_finalize(self):
        plan = DeployFlowBuilder().build(_box())
        assert plan.root.name == 'finalize'
        assert plan.root.job_id == 'box_1-1-finalize'

    def test_no_skills_omits_gate(self):
        plan = DeployFlowBuilder().build(_box())
        assert 'skills-gate' not in plan.step_keys
        nodes = _by_key(plan)
        assert [c.name for c in nodes['enable-access'].children] == ['health-check']

    def test_linear_chain_dependencies(self):
        nodes = _by_key(DeployFlowBuilder().build(_box()))
        assert nodes['create-instance'].children == []
        assert [c.name for c in nodes['setup:install-agent'].children] == ['create-instance']
        assert [c.name for c in nodes['setup:create-dirs'].children] == ['setup:install-agent']
        assert [c.name for c in nodes['health-check'].children] == ['setup:write-env']

    def test_skills_fan_out_after_health_and_join_at_gate(self):
        nodes = _by_key(DeployFlowBuilder().build(_box(skills=['a', 'b'])))
        gate = nodes['skills-gate']
        assert gate.queue == QUEUE_SKILLS_GATE
        assert [c.name for c in gate.children] == ['install-skill:a', 'install-skill:b']
        for key in ('install-skill:a', 'install-skill:b'):
            skill = nodes[key]
            assert skill.queue == QUEUE_INSTALL_SKILL
            assert skill.fail_parent_on_failure is False
            assert [c.name for c in skill.children] == ['health-check']
        # Both skills share the same health-check node.
        assert nodes['install-skill:a'].children[0] is nodes['install-skill:b'].children[0]
        assert gate.data['skills'] == ['a', 'b']
        assert [c.name for c in nodes['enable-access'].children] == ['skills-gate']

    def test_job_ids_scoped_to_attempt(self):
        plan = DeployFlowBuilder().build(_box(attempt=3))
        for node in plan.root.walk():
            assert node.job_id == job_id_for('box_1', 3, node.name)
            assert node.data['deployment_attempt'] == 3
            assert node.data['box_id'] == 'box_1'

    def test_node_data_carries_labels(self):
        nodes = _by_key(DeployFlowBuilder().build(_box(skills=['s'])))
        assert nodes['health-check'].data['step_label'] == 'Health check'
        assert nodes['install-skill:s'].data['skill_id'] == 's'
        assert nodes['install-skill:s'].data['step_label'] == 'Install skill: s'
        assert nodes['create-instance'].data['subdomain'] == 'box-abcd'
        assert nodes['setup:write-env'].data['setup_step'] == 'write-env'


class TestStageOrder:
    def test_health_after_skills(self):
        order = (STAGE_CREATE, STAGE_SETUP, STAGE_SKILLS, STAGE_HEALTH, STAGE_ACCESS, STAGE_FINALIZE)
        plan = DeployFlowBuilder(stage_order=order).build(_box(skills=['a']))
        assert plan.step_keys.index('skills-gate') < plan.step_keys.index('health-check')
        nodes = _by_key(plan)
        assert [c.name for c in nodes['install-skill:a'].children] == ['setup:write-env']
        assert [c.name for c in nodes['health-check'].children] == ['skills-gate']

    def test_access_before_health(self):
        order = (STAGE_CREATE, STAGE_SETUP, STAGE_ACCESS, STAGE_HEALTH, STAGE_SKILLS, STAGE_FINALIZE)
        plan = DeployFlowBuilder(stage_order=order).build(_box())
        assert plan.step_keys.index('enable-access') < plan.step_keys.index('health-check')

    def test_default_order_is_valid(self):
        validate_stage_order(DEFAULT_STAGE_ORDER)

    @pytest.mark.parametrize(
        'order',
        [
            (STAGE_CREATE, STAGE_SETUP, STAGE_HEALTH, STAGE_FINALIZE),
            (STAGE_SETUP, STAGE_CREATE, STAGE_HEALTH, STAGE_SKILLS, STAGE_ACCESS, STAGE_FINALIZE),
            (STAGE_CREATE, STAGE_SETUP, STAGE_HEALTH, STAGE_SKILLS, STAGE_FINALIZE, STAGE_ACCESS),
            (STAGE_CREATE, STAGE_SETUP, STAGE_SETUP, STAGE_HEALTH, STAGE_SKILLS, STAGE_FINALIZE),
        ],
    )
    def test_invalid_orders_rejected(self, order):
        with pytest.raises(ValueError):
            DeployFlowBuilder(stage_order=order)
