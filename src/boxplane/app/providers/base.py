"""Compute provider capability interface.

Every backend (Sprites fleet, local Docker engine, Coolify PaaS, in-memory)
implements ``ComputeProvider``. Deploy step handlers only ever talk to this
interface; the concrete backend is chosen once at startup by
``providers.factory.create_provider``.
"""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Mapping

from ..errors import ProviderError

HEALTHY_STATUSES = frozenset({'running', 'ready', 'healthy', 'started'})
RESTARTING_STATUSES = frozenset({'restarting'})
EXITED_STATUSES = frozenset({'exited', 'dead'})

ENV_FILE_PATH = '/home/box/.env'


@dataclass(frozen=True, slots=True)
class InstanceSpec:
    """What to provision for one box."""

    name: str
    subdomain: str
    box_id: str
    env: Mapping[str, str] = field(default_factory=dict)
    port: int = 8080


@dataclass(frozen=True, slots=True)
class InstanceHandle:
    """Provider-assigned reference to a running instance.

    Passed between workflow nodes as a plain dict (see ``to_dict``).
    """

    provider: str
    name: str
    url: str | None = None
    external_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'provider': self.provider,
            'name': self.name,
            'url': self.url,
            'external_id': self.external_id,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> InstanceHandle:
        return cls(
            provider=data['provider'],
            name=data['name'],
            url=data.get('url'),
            external_id=data.get('external_id'),
        )


@dataclass(frozen=True, slots=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True, slots=True)
class ProviderCapabilities:
    """Optional features a backend may lack."""

    exec: bool = True
    filesystem: bool = True
    url_auth: bool = False
    env_hot_reload: bool = False


@dataclass(frozen=True, slots=True)
class InstanceHealth:
    raw: str
    is_healthy: bool
    is_restarting: bool
    is_exited: bool


def normalize_status(raw: str | None) -> InstanceHealth:
    """Map a backend's raw status string onto health booleans.

    Only the part before ``:`` counts, so ``running:healthy`` (PaaS) and
    ``running`` (container engine) normalize the same way.
    """
    value = (raw or '').strip().lower()
    family = value.split(':', 1)[0].strip()
    return InstanceHealth(
        raw=raw or '',
        is_healthy=family in HEALTHY_STATUSES,
        is_restarting=family in RESTARTING_STATUSES,
        is_exited=family in EXITED_STATUSES,
    )


def render_env_file(env: Mapping[str, str]) -> str:
    """Render ``KEY=value`` lines with shell-safe quoting."""
    lines = [f'{key}={shlex.quote(str(value))}' for key, value in sorted(env.items())]
    return '\n'.join(lines) + ('\n' if lines else '')


class ComputeProvider(ABC):
    """Backend-agnostic operations on a compute instance."""

    name: str = 'abstract'
    capabilities: ProviderCapabilities = ProviderCapabilities()

    @abstractmethod
    async def create_instance(self, spec: InstanceSpec) -> InstanceHandle:
        """Provision a new instance and return its handle."""

    @abstractmethod
    async def get_instance(self, name: str) -> InstanceHandle | None:
        """Return the handle of an existing instance, or None."""

    @abstractmethod
    async def exec_command(self, handle: InstanceHandle, command: str) -> ExecResult:
        """Run a shell command inside the instance."""

    @abstractmethod
    async def write_file(
        self,
        handle: InstanceHandle,
        path: str,
        content: bytes,
        *,
        mode: str | None = None,
        mkdir: bool = True,
    ) -> None:
        """Write bytes to ``path`` inside the instance."""

    @abstractmethod
    async def read_file(self, handle: InstanceHandle, path: str) -> bytes:
        """Read bytes from ``path`` inside the instance."""

    @abstractmethod
    async def get_status(self, handle: InstanceHandle) -> str:
        """Return the backend's raw status string (see ``normalize_status``)."""

    @abstractmethod
    async def delete_instance(self, handle: InstanceHandle) -> None:
        """Remove the instance. A missing instance is not an error."""

    async def set_public_access(self, handle: InstanceHandle) -> None:
        """Make the instance URL reachable without provider auth.

        Backends without URL auth route publicly from creation; no-op.
        """
        return None

    async def update_env(self, handle: InstanceHandle, env: Mapping[str, str]) -> None:
        """Deliver the box environment to the instance.

        Default: write it as an env file the box agent sources at start.
        """
        await self.write_file(
            handle,
            ENV_FILE_PATH,
            render_env_file(env).encode(),
            mode='0600',
            mkdir=True,
        )

    def unsupported(self, operation: str) -> ProviderError:
        return ProviderError(
            f'{self.name} provider does not support {operation}',
            provider=self.name,
            operation=operation,
            retryable=False,
        )
