"""Box status state-machine tests."""

from __future__ import annotations

import pytest

from boxplane.app.boxes.state_machine import (
    ALLOWED_TRANSITIONS,
    InvalidStatusTransition,
    can_transition,
    check_transition,
    next_deployment_attempt,
)
from boxplane.app.errors import ErrorCode


class TestTransitions:
    @pytest.mark.parametrize(
        'from_status,to_status',
        [
            ('pending', 'deploying'),
            ('deploying', 'running'),
            ('deploying', 'error'),
            ('running', 'stopped'),
            ('error', 'deploying'),
        ],
    )
    def test_lifecycle_moves_allowed(self, from_status, to_status):
        assert can_transition(from_status, to_status)
        check_transition(from_status, to_status)

    @pytest.mark.parametrize(
        'status', ['pending', 'deploying', 'running', 'stopped', 'error'],
    )
    def test_delete_allowed_from_every_live_status(self, status):
        assert can_transition(status, 'deleted')

    def test_deleted_is_terminal(self):
        assert ALLOWED_TRANSITIONS['deleted'] == frozenset()
        for target in ('pending', 'deploying', 'running', 'error'):
            assert not can_transition('deleted', target)

    @pytest.mark.parametrize(
        'from_status,to_status',
        [
            ('pending', 'running'),
            ('running', 'deploying'),
            ('stopped', 'running'),
            ('error', 'running'),
        ],
    )
    def test_invalid_moves_raise(self, from_status, to_status):
        with pytest.raises(InvalidStatusTransition) as exc_info:
            check_transition(from_status, to_status)
        assert exc_info.value.code == ErrorCode.INVALID_STATUS
        assert exc_info.value.details == {
            'from_status': from_status,
            'to_status': to_status,
        }

    def test_unknown_target_status_raises(self):
        with pytest.raises(InvalidStatusTransition):
            check_transition('pending', 'exploded')


class TestDeploymentAttempt:
    def test_first_deploy_keeps_attempt_one(self):
        assert next_deployment_attempt('pending', 1) == 1

    def test_retry_from_error_increments(self):
        assert next_deployment_attempt('error', 1) == 2
        assert next_deployment_attempt('error', 4) == 5

    @pytest.mark.parametrize('status', ['deploying', 'running', 'stopped', 'deleted'])
    def test_non_deployable_status_rejected(self, status):
        with pytest.raises(InvalidStatusTransition):
            next_deployment_attempt(status, 1)
