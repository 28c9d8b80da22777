"""DockerComputeProvider: boxes as containers on a local Docker engine.

Routing is done by a reverse proxy watching container labels (Traefik
style), so instances are public from creation and EnableAccess is a no-op.
"""

from __future__ import annotations

import logging
import posixpath
import shlex
from typing import Any

from .base import (
    ComputeProvider,
    ExecResult,
    InstanceHandle,
    InstanceSpec,
    ProviderCapabilities,
)
from .docker_client import DockerEngineClient
from .http_base import ProviderAPIError, ProviderNotFoundError

logger = logging.getLogger(__name__)


def container_status(inspect: dict[str, Any]) -> str:
    """Raw status for ``normalize_status`` from an inspect payload.

    ``running:healthy`` style when the image defines a HEALTHCHECK.
    """
    state = inspect.get('State') or {}
    status = str(state.get('Status') or 'unknown')
    if state.get('Restarting'):
        return 'restarting'
    health = (state.get('Health') or {}).get('Status')
    if status == 'running' and health:
        if health != 'healthy':
            # Started but its healthcheck has not passed yet.
            return f'starting:{health}'
        return f'running:{health}'
    return status


class DockerComputeProvider(ComputeProvider):
    name = 'docker'
    capabilities = ProviderCapabilities(
        exec=True, filesystem=True, url_auth=False, env_hot_reload=False,
    )

    def __init__(
        self,
        client: DockerEngineClient,
        *,
        image: str,
        base_domain: str,
        network: str | None = None,
        scheme: str = 'https',
    ) -> None:
        self._client = client
        self._image = image
        self._base_domain = base_domain
        self._network = network or None
        self._scheme = scheme

    def _url_for(self, name: str) -> str:
        return f'{self._scheme}://{name}.{self._base_domain}'

    def _labels(self, spec: InstanceSpec) -> dict[str, str]:
        router = f'box-{spec.name}'
        return {
            'boxplane.box_id': spec.box_id,
            'boxplane.subdomain': spec.subdomain,
            'traefik.enable': 'true',
            f'traefik.http.routers.{router}.rule': (
                f'Host(`{spec.subdomain}.{self._base_domain}`)'
            ),
            f'traefik.http.services.{router}.loadbalancer.server.port': str(spec.port),
        }

    async def create_instance(self, spec: InstanceSpec) -> InstanceHandle:
        existing = await self.get_instance(spec.name)
        if existing is None:
            container_id = await self._client.create_container(
                spec.name,
                image=self._image,
                env=spec.env,
                labels=self._labels(spec),
                port=spec.port,
                network=self._network,
            )
        else:
            container_id = existing.external_id
        await self._client.start_container(spec.name)
        return InstanceHandle(
            provider=self.name,
            name=spec.name,
            url=self._url_for(spec.name),
            external_id=container_id,
        )

    async def get_instance(self, name: str) -> InstanceHandle | None:
        try:
            inspect = await self._client.inspect_container(name)
        except ProviderNotFoundError:
            return None
        return InstanceHandle(
            provider=self.name,
            name=name,
            url=self._url_for(name),
            external_id=inspect.get('Id'),
        )

    async def exec_command(self, handle: InstanceHandle, command: str) -> ExecResult:
        stdout, stderr, exit_code = await self._client.exec(
            handle.name, ['sh', '-lc', command],
        )
        return ExecResult(stdout=stdout, stderr=stderr, exit_code=exit_code)

    async def write_file(
        self,
        handle: InstanceHandle,
        path: str,
        content: bytes,
        *,
        mode: str | None = None,
        mkdir: bool = True,
    ) -> None:
        if mkdir:
            directory = posixpath.dirname(path) or '/'
            result = await self.exec_command(handle, f'mkdir -p {shlex.quote(directory)}')
            if not result.ok:
                raise ProviderAPIError(
                    0,
                    f'mkdir {directory} failed: {result.stderr.strip()}',
                    provider=self.name,
                    operation='write_file',
                )
        await self._client.put_file(
            handle.name, path, content, mode=int(mode, 8) if mode else 0o644,
        )

    async def read_file(self, handle: InstanceHandle, path: str) -> bytes:
        return await self._client.get_file(handle.name, path)

    async def get_status(self, handle: InstanceHandle) -> str:
        return container_status(await self._client.inspect_container(handle.name))

    async def delete_instance(self, handle: InstanceHandle) -> None:
        try:
            await self._client.remove_container(handle.name)
        except ProviderNotFoundError:
            logger.info(
                'Container already removed: name=%s', handle.name,
                extra={'instance_name': handle.name},
            )
