"""Box registry service: create, list, get, deploy guard, delete, status updates.

All status changes go through the state machine in ``state_machine.py``.
The deploy guard (``start_deployment``) is the only place a new deployment
attempt is assigned; it uses a status-conditional update so two concurrent
deploy requests cannot both move the same box into ``deploying``.
"""

from __future__ import annotations

import logging
import re
import secrets
import string
import uuid
from typing import Any, Callable, Iterable, Mapping, Protocol

from ..errors import (
    AlreadyExistsError,
    InvalidStatusError,
    NotFoundError,
    ValidationFailedError,
)
from ..protocols import BoxRepository
from .models import Box
from .state_machine import (
    DEPLOYABLE_STATUSES,
    InvalidStatusTransition,
    check_transition,
    next_deployment_attempt,
)

logger = logging.getLogger(__name__)

SUBDOMAIN_SUFFIX_LENGTH = 4
SUBDOMAIN_SLUG_MAX_LENGTH = 20
_SUBDOMAIN_ALPHABET = string.ascii_lowercase + string.digits
_MAX_SUBDOMAIN_TRIES = 8

MAX_NAME_LENGTH = 64
_SKILL_ID_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._/-]{0,127}$')
_ENV_KEY_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')
# Keys injected by the deploy workflow; owners cannot override them.
RESERVED_ENV_KEYS = frozenset(
    {'APP_ENV', 'BOX_AGENT_SECRET', 'BOX_API_URL', 'BOX_SUBDOMAIN', 'BOX_ID'}
)


class TeardownScheduler(Protocol):
    """Enqueue removal of a deleted box's provider instance."""

    async def schedule_teardown(self, box: Box) -> None: ...


class CronjobCleanup(Protocol):
    """Stop the scheduled triggers of a deleted box's cronjobs."""

    async def cancel_for_box(self, box_id: str) -> int: ...


def slugify(name: str) -> str:
    """Lowercase, collapse non-alphanumerics to '-', trim, cap length."""
    slug = re.sub(r'[^a-z0-9]+', '-', name.lower()).strip('-')
    return slug[:SUBDOMAIN_SLUG_MAX_LENGTH].strip('-')


def generate_subdomain(
    name: str,
    *,
    token_chooser: Callable[[str], str] = secrets.choice,
) -> str:
    base = slugify(name) or 'box'
    suffix = ''.join(
        token_chooser(_SUBDOMAIN_ALPHABET) for _ in range(SUBDOMAIN_SUFFIX_LENGTH)
    )
    return f'{base}-{suffix}'


def normalize_skills(skills: Iterable[str] | None) -> tuple[str, ...]:
    """Validate skill ids and de-duplicate while keeping request order."""
    seen: dict[str, None] = {}
    for raw in skills or ():
        skill_id = str(raw).strip()
        if not _SKILL_ID_RE.match(skill_id):
            raise ValidationFailedError(
                f'invalid skill id: {raw!r}', details={'skill_id': raw},
            )
        seen.setdefault(skill_id, None)
    return tuple(seen)


def validate_env_vars(env_vars: Mapping[str, str] | None) -> dict[str, str]:
    result: dict[str, str] = {}
    for key, value in (env_vars or {}).items():
        if not _ENV_KEY_RE.match(key):
            raise ValidationFailedError(
                f'invalid environment variable name: {key!r}', details={'key': key},
            )
        if key in RESERVED_ENV_KEYS:
            raise ValidationFailedError(
                f'environment variable {key!r} is reserved', details={'key': key},
            )
        result[key] = str(value)
    return result


class BoxService:
    """Box registry operations on top of a ``BoxRepository``."""

    def __init__(
        self,
        repo: BoxRepository,
        *,
        default_provider: str,
        teardown: TeardownScheduler | None = None,
        cronjob_cleanup: CronjobCleanup | None = None,
        subdomain_factory: Callable[[str], str] = generate_subdomain,
    ) -> None:
        self._repo = repo
        self._default_provider = default_provider
        self._teardown = teardown
        self._cronjob_cleanup = cronjob_cleanup
        self._subdomain_factory = subdomain_factory

    def set_teardown(self, teardown: TeardownScheduler) -> None:
        self._teardown = teardown

    def set_cronjob_cleanup(self, cleanup: CronjobCleanup) -> None:
        self._cronjob_cleanup = cleanup

    async def create(
        self,
        *,
        user_id: str,
        name: str,
        skills: Iterable[str] | None = None,
        env_vars: Mapping[str, str] | None = None,
        provider: str | None = None,
    ) -> Box:
        name = (name or '').strip()
        if not name:
            raise ValidationFailedError('box name is required')
        if len(name) > MAX_NAME_LENGTH:
            raise ValidationFailedError(
                f'box name must be at most {MAX_NAME_LENGTH} characters',
            )
        if await self._repo.find_active_by_name(user_id, name) is not None:
            raise ValidationFailedError(
                f'a box named {name!r} already exists', details={'name': name},
            )

        box = Box(
            id=f'box_{uuid.uuid4().hex[:16]}',
            name=name,
            subdomain=await self._unique_subdomain(name),
            user_id=user_id,
            provider=provider or self._default_provider,
            status='pending',
            deployment_attempt=1,
            skills=normalize_skills(skills),
            env_vars=validate_env_vars(env_vars),
            agent_secret=secrets.token_hex(32),
        )
        created = await self._repo.insert(box)
        logger.info(
            'Box created: %s (%s)', created.id, created.subdomain,
            extra={'box_id': created.id},
        )
        return created

    async def _unique_subdomain(self, name: str) -> str:
        for _ in range(_MAX_SUBDOMAIN_TRIES):
            candidate = self._subdomain_factory(name)
            if not await self._repo.subdomain_exists(candidate):
                return candidate
        raise AlreadyExistsError(
            'could not allocate a unique subdomain', details={'name': name},
        )

    async def get(self, box_id: str, *, user_id: str | None = None) -> Box:
        """Return the box or raise NotFoundError (also for foreign owners)."""
        box = await self._repo.get(box_id)
        if box is None or (user_id is not None and box.user_id != user_id):
            raise NotFoundError(f'box {box_id!r} not found', details={'box_id': box_id})
        return box

    async def find(self, box_id: str) -> Box | None:
        return await self._repo.get(box_id)

    async def list_by_owner(self, user_id: str) -> list[Box]:
        return await self._repo.list_for_user(user_id)

    async def list_by_status(self, status: str) -> list[Box]:
        return await self._repo.list_by_status(status)

    async def start_deployment(self, box_id: str, *, user_id: str | None = None) -> Box:
        """Guard and assign a fresh deployment attempt: ``pending|error -> deploying``."""
        box = await self.get(box_id, user_id=user_id)
        if box.status not in DEPLOYABLE_STATUSES:
            raise InvalidStatusError(
                f'box cannot be deployed while {box.status!r}',
                details={'box_id': box.id, 'status': box.status},
            )
        attempt = next_deployment_attempt(box.status, box.deployment_attempt)
        updated = await self._repo.update(
            box.id,
            {
                'status': 'deploying',
                'deployment_attempt': attempt,
                'error_message': None,
            },
            expected_status=DEPLOYABLE_STATUSES,
        )
        if updated is None:
            # Lost the race against another deploy (or a delete).
            current = await self.get(box_id)
            raise InvalidStatusError(
                f'box cannot be deployed while {current.status!r}',
                details={'box_id': box_id, 'status': current.status},
            )
        logger.info(
            'Box %s deployment attempt %d started', box.id, attempt,
            extra={'box_id': box.id, 'attempt': attempt},
        )
        return updated

    async def update_status(
        self,
        box_id: str,
        status: str,
        *,
        error_message: str | None = None,
        **fields: Any,
    ) -> Box:
        """Move a box along the state machine; raises InvalidStatusTransition."""
        box = await self.get(box_id)
        check_transition(box.status, status)
        updated = await self._repo.update(
            box_id,
            {'status': status, 'error_message': error_message, **fields},
            expected_status=(box.status,),
        )
        if updated is None:
            current = await self.get(box_id)
            raise InvalidStatusTransition(current.status, status)
        logger.info(
            'Box %s status %s -> %s', box_id, box.status, status,
            extra={'box_id': box_id},
        )
        return updated

    async def record_instance(
        self, box_id: str, *, instance_name: str, instance_url: str | None,
    ) -> Box | None:
        """Persist the provider handle of a deploying box.

        Returns None (and writes nothing) once the box left ``deploying``.
        """
        return await self._repo.update(
            box_id,
            {'instance_name': instance_name, 'instance_url': instance_url},
            expected_status=('deploying',),
        )

    async def delete(self, box_id: str, *, user_id: str | None = None) -> Box:
        """Move the box to ``deleted`` from any status.

        Stops the box's cronjob triggers and schedules instance teardown.
        """
        box = await self.get(box_id, user_id=user_id)
        if box.status == 'deleted':
            return box
        updated = await self._repo.update(box.id, {'status': 'deleted'})
        if updated is None:
            raise NotFoundError(f'box {box_id!r} not found', details={'box_id': box_id})
        logger.info(
            'Box %s deleted (was %s)', box.id, box.status, extra={'box_id': box.id},
        )
        if self._cronjob_cleanup is not None:
            await self._cronjob_cleanup.cancel_for_box(box.id)
        if self._teardown is not None and updated.instance_name:
            await self._teardown.schedule_teardown(updated)
        return updated
