"""In-memory ComputeProvider for local development and tests.

Tracks calls, stores written files, and replays a scripted sequence of raw
statuses so health-check behaviour can be driven deterministically.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from ..errors import ProviderError
from .base import (
    ComputeProvider,
    ExecResult,
    InstanceHandle,
    InstanceSpec,
    ProviderCapabilities,
)


class InMemoryComputeProvider(ComputeProvider):
    """Test provider that tracks calls."""

    name = 'inmemory'

    def __init__(
        self,
        *,
        statuses: Iterable[str] = ('running',),
        create_fails: bool = False,
        exec_fails: bool = False,
        public_access_fails: bool = False,
        failing_commands: Iterable[str] = (),
        capabilities: ProviderCapabilities | None = None,
    ) -> None:
        self._statuses = list(statuses) or ['running']
        self.create_fails = create_fails
        self.exec_fails = exec_fails
        self.public_access_fails = public_access_fails
        self.failing_commands = tuple(failing_commands)
        if capabilities is not None:
            self.capabilities = capabilities
        self.instances: dict[str, InstanceHandle] = {}
        self.files: dict[tuple[str, str], bytes] = {}
        self.env: dict[str, dict[str, str]] = {}
        self.public: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def set_statuses(self, statuses: Iterable[str]) -> None:
        """Replace the status script; the last value repeats forever."""
        self._statuses = list(statuses) or ['running']

    async def create_instance(self, spec: InstanceSpec) -> InstanceHandle:
        self.calls.append(('create_instance', spec.name))
        if self.create_fails:
            raise ProviderError(
                'instance creation failed', provider=self.name, operation='create_instance',
            )
        handle = self.instances.get(spec.name)
        if handle is None:
            handle = InstanceHandle(
                provider=self.name,
                name=spec.name,
                url=f'http://{spec.name}.boxes.local',
                external_id=f'mem-{len(self.instances) + 1}',
            )
            self.instances[spec.name] = handle
        return handle

    async def get_instance(self, name: str) -> InstanceHandle | None:
        return self.instances.get(name)

    async def exec_command(self, handle: InstanceHandle, command: str) -> ExecResult:
        self.calls.append(('exec_command', command))
        if self.exec_fails:
            raise ProviderError('exec failed', provider=self.name, operation='exec_command')
        for needle in self.failing_commands:
            if needle in command:
                return ExecResult(stdout='', stderr=f'{needle}: command failed', exit_code=1)
        return ExecResult(stdout='ok\n', stderr='', exit_code=0)

    async def write_file(
        self,
        handle: InstanceHandle,
        path: str,
        content: bytes,
        *,
        mode: str | None = None,
        mkdir: bool = True,
    ) -> None:
        self.calls.append(('write_file', path))
        self.files[(handle.name, path)] = content

    async def read_file(self, handle: InstanceHandle, path: str) -> bytes:
        self.calls.append(('read_file', path))
        try:
            return self.files[(handle.name, path)]
        except KeyError:
            raise ProviderError(
                f'{path}: no such file', status_code=404,
                provider=self.name, operation='read_file', retryable=False,
            ) from None

    async def get_status(self, handle: InstanceHandle) -> str:
        self.calls.append(('get_status', handle.name))
        if len(self._statuses) > 1:
            return self._statuses.pop(0)
        return self._statuses[0]

    async def delete_instance(self, handle: InstanceHandle) -> None:
        self.calls.append(('delete_instance', handle.name))
        self.instances.pop(handle.name, None)

    async def set_public_access(self, handle: InstanceHandle) -> None:
        self.calls.append(('set_public_access', handle.name))
        if self.public_access_fails:
            raise ProviderError(
                'url settings update failed', provider=self.name, operation='set_public_access',
            )
        self.public.add(handle.name)

    async def update_env(self, handle: InstanceHandle, env: Mapping[str, str]) -> None:
        self.calls.append(('update_env', handle.name))
        self.env[handle.name] = dict(env)
        await super().update_env(handle, env)
