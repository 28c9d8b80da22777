"""SpritesComputeProvider: ComputeProvider backed by the Sprites fleet API.

Instance names are the box subdomain, so a re-delivered CreateInstance finds
the sprite it already created instead of provisioning a second one.
"""

from __future__ import annotations

import logging
from typing import Any

from .base import (
    ComputeProvider,
    ExecResult,
    InstanceHandle,
    InstanceSpec,
    ProviderCapabilities,
)
from .http_base import ProviderAPIError, ProviderNotFoundError
from .sprites_client import SpritesClient

logger = logging.getLogger(__name__)


class SpritesComputeProvider(ComputeProvider):
    """Remote VM fleet backend.

    Sprites gate their URL behind sprite auth by default, so EnableAccess
    switches it to public (``url_auth`` capability).
    """

    name = 'sprites'
    capabilities = ProviderCapabilities(
        exec=True, filesystem=True, url_auth=True, env_hot_reload=False,
    )

    def __init__(self, client: SpritesClient) -> None:
        self._client = client

    def _handle(self, name: str, payload: dict[str, Any]) -> InstanceHandle:
        url = payload.get('url') or f'https://{name}.sprites.app'
        return InstanceHandle(
            provider=self.name,
            name=name,
            url=url,
            external_id=payload.get('id'),
        )

    async def create_instance(self, spec: InstanceSpec) -> InstanceHandle:
        existing = await self.get_instance(spec.name)
        if existing is not None:
            logger.info(
                'Sprite %s already exists, reusing', spec.name,
                extra={'instance_name': spec.name, 'box_id': spec.box_id},
            )
            return existing
        result = await self._client.create_sprite(spec.name, env=dict(spec.env) or None)
        return self._handle(spec.name, result)

    async def get_instance(self, name: str) -> InstanceHandle | None:
        try:
            result = await self._client.get_sprite(name)
        except ProviderNotFoundError:
            return None
        return self._handle(name, result)

    async def exec_command(self, handle: InstanceHandle, command: str) -> ExecResult:
        result = await self._client.exec(handle.name, ['bash', '-lc', command])
        return ExecResult(
            stdout=str(result.get('stdout') or ''),
            stderr=str(result.get('stderr') or ''),
            exit_code=int(result.get('exit_code', result.get('exitCode', 1))),
        )

    async def write_file(
        self,
        handle: InstanceHandle,
        path: str,
        content: bytes,
        *,
        mode: str | None = None,
        mkdir: bool = True,
    ) -> None:
        await self._client.write_file(handle.name, path, content, mode=mode, mkdir=mkdir)

    async def read_file(self, handle: InstanceHandle, path: str) -> bytes:
        return await self._client.read_file(handle.name, path)

    async def get_status(self, handle: InstanceHandle) -> str:
        result = await self._client.get_sprite(handle.name)
        return str(result.get('status') or result.get('state') or 'unknown')

    async def delete_instance(self, handle: InstanceHandle) -> None:
        """Delete a sprite. Silently succeeds if it doesn't exist."""
        try:
            await self._client.delete_sprite(handle.name)
        except ProviderNotFoundError:
            logger.info(
                'Sprite already deleted: name=%s', handle.name,
                extra={'instance_name': handle.name},
            )

    async def set_public_access(self, handle: InstanceHandle) -> None:
        try:
            await self._client.update_url_settings(handle.name, auth='public')
        except ProviderAPIError as exc:
            logger.warning(
                'Failed to set public URL auth for %s: %s', handle.name, exc.message,
                extra={'instance_name': handle.name},
            )
            raise
