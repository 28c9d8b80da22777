"""BoxService tests: create validation, deploy guard, status updates, delete."""

from __future__ import annotations

import asyncio
import re

import pytest

from boxplane.app.boxes.service import (
    MAX_NAME_LENGTH,
    BoxService,
    generate_subdomain,
    normalize_skills,
    slugify,
    validate_env_vars,
)
from boxplane.app.boxes.state_machine import InvalidStatusTransition
from boxplane.app.errors import (
    AlreadyExistsError,
    InvalidStatusError,
    NotFoundError,
    ValidationFailedError,
)
from boxplane.app.inmemory import InMemoryBoxRepository


class RecordingTeardown:
    def __init__(self):
        self.scheduled = []

    async def schedule_teardown(self, box):
        self.scheduled.append(box.id)


class RecordingCronjobCleanup:
    def __init__(self):
        self.boxes = []

    async def cancel_for_box(self, box_id):
        self.boxes.append(box_id)
        return 1


def _service(**kwargs) -> BoxService:
    return BoxService(InMemoryBoxRepository(), default_provider='inmemory', **kwargs)


# ── Helpers ──────────────────────────────────────────────────────


class TestSubdomain:
    def test_slugify(self):
        assert slugify('My Research Box!') == 'my-research-box'
        assert slugify('***') == ''

    def test_slug_is_capped(self):
        assert len(slugify('x' * 80)) == 20

    def test_generate_subdomain_shape(self):
        subdomain = generate_subdomain('Data Box')
        assert re.match(r'^data-box-[a-z0-9]{4}$', subdomain)

    def test_generate_subdomain_falls_back_to_box(self):
        assert generate_subdomain('!!!', token_chooser=lambda _: 'a') == 'box-aaaa'


class TestInputValidation:
    def test_skills_deduplicated_in_order(self):
        assert normalize_skills(['b', 'a', 'b']) == ('b', 'a')

    def test_invalid_skill_id_rejected(self):
        with pytest.raises(ValidationFailedError):
            normalize_skills(['has space'])

    def test_reserved_env_key_rejected(self):
        with pytest.raises(ValidationFailedError, match='reserved'):
            validate_env_vars({'BOX_AGENT_SECRET': 'x'})

    def test_invalid_env_key_rejected(self):
        with pytest.raises(ValidationFailedError):
            validate_env_vars({'1BAD': 'x'})


# ── Create ───────────────────────────────────────────────────────


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_sets_initial_state(self):
        service = _service()
        box = await service.create(
            user_id='user-1', name='  Research  ', skills=['web-search'], env_vars={'A': '1'},
        )
        assert box.id.startswith('box_')
        assert box.name == 'Research'
        assert box.status == 'pending'
        assert box.deployment_attempt == 1
        assert box.provider == 'inmemory'
        assert box.skills == ('web-search',)
        assert box.env_vars == {'A': '1'}
        assert len(box.agent_secret) == 64
        assert box.subdomain.startswith('research-')

    @pytest.mark.asyncio
    async def test_agent_secret_not_in_public_dict(self):
        box = await _service().create(user_id='user-1', name='Box')
        public = box.to_public_dict()
        assert 'agent_secret' not in public
        assert box.agent_secret not in str(public)

    @pytest.mark.asyncio
    async def test_empty_name_rejected(self):
        with pytest.raises(ValidationFailedError, match='required'):
            await _service().create(user_id='user-1', name='   ')

    @pytest.mark.asyncio
    async def test_long_name_rejected(self):
        with pytest.raises(ValidationFailedError):
            await _service().create(user_id='user-1', name='x' * (MAX_NAME_LENGTH + 1))

    @pytest.mark.asyncio
    async def test_duplicate_name_per_owner_rejected(self):
        service = _service()
        await service.create(user_id='user-1', name='Box')
        with pytest.raises(ValidationFailedError, match='already exists'):
            await service.create(user_id='user-1', name='Box')
        # Another owner may reuse the name.
        other = await service.create(user_id='user-2', name='Box')
        assert other.user_id == 'user-2'

    @pytest.mark.asyncio
    async def test_name_reusable_after_delete(self):
        service = _service()
        box = await service.create(user_id='user-1', name='Box')
        await service.delete(box.id, user_id='user-1')
        again = await service.create(user_id='user-1', name='Box')
        assert again.id != box.id

    @pytest.mark.asyncio
    async def test_subdomain_collision_retries(self):
        candidates = iter(['taken-aaaa', 'taken-aaaa', 'fresh-bbbb'])
        service = _service(subdomain_factory=lambda name: next(candidates))
        first = await service.create(user_id='user-1', name='One')
        second = await service.create(user_id='user-1', name='Two')
        assert first.subdomain == 'taken-aaaa'
        assert second.subdomain == 'fresh-bbbb'

    @pytest.mark.asyncio
    async def test_subdomain_exhaustion_raises(self):
        service = _service(subdomain_factory=lambda name: 'same-aaaa')
        await service.create(user_id='user-1', name='One')
        with pytest.raises(AlreadyExistsError):
            await service.create(user_id='user-1', name='Two')


# ── Read ─────────────────────────────────────────────────────────


class TestRead:
    @pytest.mark.asyncio
    async def test_foreign_owner_gets_not_found(self):
        service = _service()
        box = await service.create(user_id='user-1', name='Box')
        with pytest.raises(NotFoundError):
            await service.get(box.id, user_id='user-2')

    @pytest.mark.asyncio
    async def test_list_by_owner_hides_deleted(self):
        service = _service()
        keep = await service.create(user_id='user-1', name='Keep')
        gone = await service.create(user_id='user-1', name='Gone')
        await service.create(user_id='user-2', name='Other')
        await service.delete(gone.id)
        listed = await service.list_by_owner('user-1')
        assert [b.id for b in listed] == [keep.id]


# ── Deploy guard ─────────────────────────────────────────────────


class TestStartDeployment:
    @pytest.mark.asyncio
    async def test_first_deploy_uses_attempt_one(self):
        service = _service()
        box = await service.create(user_id='user-1', name='Box')
        deploying = await service.start_deployment(box.id, user_id='user-1')
        assert deploying.status == 'deploying'
        assert deploying.deployment_attempt == 1

    @pytest.mark.asyncio
    async def test_retry_from_error_increments_and_clears_error(self):
        service = _service()
        box = await service.create(user_id='user-1', name='Box')
        await service.start_deployment(box.id)
        await service.update_status(box.id, 'error', error_message='Health check failed: boom')
        retried = await service.start_deployment(box.id)
        assert retried.deployment_attempt == 2
        assert retried.error_message is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize('status', ['deploying', 'running'])
    async def test_deploy_rejected_while_not_deployable(self, status):
        service = _service()
        box = await service.create(user_id='user-1', name='Box')
        await service.start_deployment(box.id)
        if status == 'running':
            await service.update_status(box.id, 'running')
        with pytest.raises(InvalidStatusError):
            await service.start_deployment(box.id)

    @pytest.mark.asyncio
    async def test_concurrent_deploys_only_one_wins(self):
        service = _service()
        box = await service.create(user_id='user-1', name='Box')
        results = await asyncio.gather(
            service.start_deployment(box.id),
            service.start_deployment(box.id),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, InvalidStatusError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert (await service.get(box.id)).deployment_attempt == 1


# ── Status updates / delete ──────────────────────────────────────


class TestStatusAndDelete:
    @pytest.mark.asyncio
    async def test_update_status_enforces_state_machine(self):
        service = _service()
        box = await service.create(user_id='user-1', name='Box')
        with pytest.raises(InvalidStatusTransition):
            await service.update_status(box.id, 'running')

    @pytest.mark.asyncio
    async def test_update_status_sets_fields(self):
        service = _service()
        box = await service.create(user_id='user-1', name='Box')
        await service.start_deployment(box.id)
        running = await service.update_status(
            box.id, 'running', instance_name='n', instance_url='http://n',
        )
        assert running.status == 'running'
        assert running.instance_url == 'http://n'
        assert running.error_message is None

    @pytest.mark.asyncio
    async def test_delete_schedules_teardown_when_instance_recorded(self):
        teardown = RecordingTeardown()
        service = _service(teardown=teardown)
        box = await service.create(user_id='user-1', name='Box')
        await service.start_deployment(box.id)
        await service.record_instance(box.id, instance_name='box-1', instance_url=None)
        deleted = await service.delete(box.id, user_id='user-1')
        assert deleted.status == 'deleted'
        assert teardown.scheduled == [box.id]

    @pytest.mark.asyncio
    async def test_delete_without_instance_skips_teardown(self):
        teardown = RecordingTeardown()
        service = _service(teardown=teardown)
        box = await service.create(user_id='user-1', name='Box')
        await service.delete(box.id)
        assert teardown.scheduled == []

    @pytest.mark.asyncio
    async def test_delete_is_idempotent(self):
        teardown = RecordingTeardown()
        service = _service(teardown=teardown)
        box = await service.create(user_id='user-1', name='Box')
        await service.start_deployment(box.id)
        await service.record_instance(box.id, instance_name='box-1', instance_url=None)
        await service.delete(box.id)
        again = await service.delete(box.id)
        assert again.status == 'deleted'
        assert teardown.scheduled == [box.id]

    @pytest.mark.asyncio
    async def test_delete_while_deploying_allowed(self):
        service = _service()
        box = await service.create(user_id='user-1', name='Box')
        await service.start_deployment(box.id)
        deleted = await service.delete(box.id)
        assert deleted.status == 'deleted'

    @pytest.mark.asyncio
    async def test_delete_cancels_cronjob_triggers(self):
        cleanup = RecordingCronjobCleanup()
        service = _service(cronjob_cleanup=cleanup)
        box = await service.create(user_id='user-1', name='Box')
        await service.delete(box.id)
        await service.delete(box.id)
        assert cleanup.boxes == [box.id]

    @pytest.mark.asyncio
    async def test_record_instance_only_while_deploying(self):
        service = _service()
        box = await service.create(user_id='user-1', name='Box')
        await service.start_deployment(box.id)
        await service.delete(box.id)

        result = await service.record_instance(
            box.id, instance_name='box-1', instance_url='http://box-1',
        )

        assert result is None
        stored = await service.get(box.id)
        assert stored.status == 'deleted'
        assert stored.instance_name is None
        assert stored.instance_url is None
