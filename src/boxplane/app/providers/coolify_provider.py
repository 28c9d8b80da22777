"""CoolifyComputeProvider: boxes as Coolify dockerfile applications.

Coolify exposes no exec or filesystem API, so the box runtime image must
already contain the agent; environment is delivered through the envs API
followed by a redeploy.
"""

from __future__ import annotations

import logging
from typing import Mapping

from .base import (
    ComputeProvider,
    ExecResult,
    InstanceHandle,
    InstanceSpec,
    ProviderCapabilities,
)
from .coolify_client import CoolifyClient
from .http_base import ProviderNotFoundError

logger = logging.getLogger(__name__)


def build_dockerfile(image: str, port: int) -> str:
    return '\n'.join(
        [
            f'FROM {image}',
            f'EXPOSE {port}',
            '',
        ]
    )


class CoolifyComputeProvider(ComputeProvider):
    name = 'coolify'
    capabilities = ProviderCapabilities(
        exec=False, filesystem=False, url_auth=False, env_hot_reload=False,
    )

    def __init__(
        self,
        client: CoolifyClient,
        *,
        image: str,
        base_domain: str,
    ) -> None:
        self._client = client
        self._image = image
        self._base_domain = base_domain

    def _fqdn(self, subdomain: str) -> str:
        return f'https://{subdomain}.{self._base_domain}'

    async def create_instance(self, spec: InstanceSpec) -> InstanceHandle:
        existing = await self.get_instance(spec.name)
        if existing is not None:
            return existing
        fqdn = self._fqdn(spec.subdomain)
        uuid = await self._client.create_application(
            name=spec.name,
            dockerfile=build_dockerfile(self._image, spec.port),
            fqdn=fqdn,
            ports=str(spec.port),
        )
        if spec.env:
            await self._client.update_application_env(uuid, spec.env)
        await self._client.deploy_application(uuid)
        return InstanceHandle(provider=self.name, name=spec.name, url=fqdn, external_id=uuid)

    async def get_instance(self, name: str) -> InstanceHandle | None:
        for app in await self._client.list_applications():
            if app.get('name') == name and app.get('uuid'):
                fqdn = app.get('fqdn') or f'https://{name}.{self._base_domain}'
                return InstanceHandle(
                    provider=self.name,
                    name=name,
                    url=fqdn,
                    external_id=app['uuid'],
                )
        return None

    def _uuid(self, handle: InstanceHandle) -> str:
        if not handle.external_id:
            raise self.unsupported('operations on a handle without application uuid')
        return handle.external_id

    async def exec_command(self, handle: InstanceHandle, command: str) -> ExecResult:
        raise self.unsupported('exec_command')

    async def write_file(
        self,
        handle: InstanceHandle,
        path: str,
        content: bytes,
        *,
        mode: str | None = None,
        mkdir: bool = True,
    ) -> None:
        raise self.unsupported('write_file')

    async def read_file(self, handle: InstanceHandle, path: str) -> bytes:
        raise self.unsupported('read_file')

    async def get_status(self, handle: InstanceHandle) -> str:
        app = await self._client.get_application(self._uuid(handle))
        return str(app.get('status') or 'unknown')

    async def delete_instance(self, handle: InstanceHandle) -> None:
        if not handle.external_id:
            return
        try:
            await self._client.delete_application(handle.external_id)
        except ProviderNotFoundError:
            logger.info(
                'Coolify application already deleted: %s', handle.external_id,
                extra={'instance_name': handle.name},
            )

    async def update_env(self, handle: InstanceHandle, env: Mapping[str, str]) -> None:
        uuid = self._uuid(handle)
        await self._client.update_application_env(uuid, env)
        await self._client.deploy_application(uuid)
