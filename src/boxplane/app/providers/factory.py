"""Select the compute provider backend once, from configuration."""

from __future__ import annotations

import logging
from typing import Callable

import httpx

from ..settings import BoxPlaneSettings
from .base import ComputeProvider

logger = logging.getLogger(__name__)

ProviderBuilder = Callable[[BoxPlaneSettings, "httpx.AsyncClient | None"], ComputeProvider]


def _build_sprites(
    settings: BoxPlaneSettings, http_client: httpx.AsyncClient | None,
) -> ComputeProvider:
    from .sprites_client import SpritesClient
    from .sprites_provider import SpritesComputeProvider

    client = SpritesClient(
        bearer_token=settings.sprites_bearer_token,
        base_url=settings.sprites_base_url,
        http_client=http_client,
    )
    return SpritesComputeProvider(client)


def _build_docker(
    settings: BoxPlaneSettings, http_client: httpx.AsyncClient | None,
) -> ComputeProvider:
    from .docker_client import DockerEngineClient, build_uds_client
    from .docker_provider import DockerComputeProvider

    client = DockerEngineClient(
        http_client=http_client or build_uds_client(settings.docker_socket_path),
    )
    return DockerComputeProvider(
        client,
        image=settings.docker_image,
        base_domain=settings.base_domain,
        network=settings.docker_network or None,
        scheme='http' if settings.is_local else 'https',
    )


def _build_coolify(
    settings: BoxPlaneSettings, http_client: httpx.AsyncClient | None,
) -> ComputeProvider:
    from .coolify_client import CoolifyClient
    from .coolify_provider import CoolifyComputeProvider

    client = CoolifyClient(
        api_url=settings.coolify_api_url,
        api_token=settings.coolify_api_token,
        project_uuid=settings.coolify_project_uuid,
        server_uuid=settings.coolify_server_uuid,
        environment_name=settings.coolify_environment_name,
        environment_uuid=settings.coolify_environment_uuid,
        http_client=http_client,
    )
    return CoolifyComputeProvider(
        client, image=settings.docker_image, base_domain=settings.base_domain,
    )


def _build_inmemory(
    settings: BoxPlaneSettings, http_client: httpx.AsyncClient | None,
) -> ComputeProvider:
    from .inmemory import InMemoryComputeProvider

    return InMemoryComputeProvider()


PROVIDER_BUILDERS: dict[str, ProviderBuilder] = {
    'sprites': _build_sprites,
    'docker': _build_docker,
    'coolify': _build_coolify,
    'inmemory': _build_inmemory,
}


def create_provider(
    settings: BoxPlaneSettings,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> ComputeProvider:
    """Build the backend named by ``settings.default_provider``."""
    try:
        builder = PROVIDER_BUILDERS[settings.default_provider]
    except KeyError:
        raise ValueError(
            f'unknown provider type {settings.default_provider!r}; '
            f'expected one of {sorted(PROVIDER_BUILDERS)}'
        ) from None
    provider = builder(settings, http_client)
    logger.info('Compute provider selected: %s', provider.name, extra={'provider': provider.name})
    return provider
