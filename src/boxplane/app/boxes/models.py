"""Box domain model and row mapping."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

BOX_STATUSES = (
    'pending',
    'deploying',
    'running',
    'stopped',
    'error',
    'deleted',
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Box:
    """A sandboxed compute instance provisioned on behalf of one user.

    ``subdomain`` is assigned once at creation and never changes.
    ``deployment_attempt`` only ever grows; step-ledger rows are scoped to it.
    ``agent_secret`` authenticates calls between the control plane and the
    box agent and is never included in API payloads.
    """

    id: str
    name: str
    subdomain: str
    user_id: str
    provider: str
    status: str = 'pending'
    deployment_attempt: int = 1
    instance_name: str | None = None
    instance_url: str | None = None
    error_message: str | None = None
    skills: tuple[str, ...] = ()
    env_vars: Mapping[str, str] = field(default_factory=dict)
    agent_secret: str = ''
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_public_dict(self) -> dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'subdomain': self.subdomain,
            'status': self.status,
            'provider': self.provider,
            'deployment_attempt': self.deployment_attempt,
            'instance_name': self.instance_name,
            'instance_url': self.instance_url,
            'error_message': self.error_message,
            'skills': list(self.skills),
            'env_keys': sorted(self.env_vars),
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }


def box_to_row(box: Box) -> dict[str, Any]:
    return {
        'id': box.id,
        'name': box.name,
        'subdomain': box.subdomain,
        'user_id': box.user_id,
        'provider': box.provider,
        'status': box.status,
        'deployment_attempt': box.deployment_attempt,
        'instance_name': box.instance_name,
        'instance_url': box.instance_url,
        'error_message': box.error_message,
        'skills': list(box.skills),
        'env_vars': dict(box.env_vars),
        'agent_secret': box.agent_secret,
        'created_at': box.created_at.isoformat(),
        'updated_at': box.updated_at.isoformat(),
    }


def box_from_row(row: Mapping[str, Any]) -> Box:
    return Box(
        id=row['id'],
        name=row['name'],
        subdomain=row['subdomain'],
        user_id=row['user_id'],
        provider=row['provider'],
        status=row.get('status') or 'pending',
        deployment_attempt=int(row.get('deployment_attempt') or 1),
        instance_name=row.get('instance_name'),
        instance_url=row.get('instance_url'),
        error_message=row.get('error_message'),
        skills=tuple(row.get('skills') or ()),
        env_vars=dict(row.get('env_vars') or {}),
        agent_secret=row.get('agent_secret') or '',
        created_at=parse_timestamp(row.get('created_at')) or utcnow(),
        updated_at=parse_timestamp(row.get('updated_at')) or utcnow(),
    )


def parse_timestamp(value: Any) -> datetime | None:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value
    # PostgREST emits "+00:00"; older rows may carry a trailing "Z".
    return datetime.fromisoformat(str(value).replace('Z', '+00:00'))
