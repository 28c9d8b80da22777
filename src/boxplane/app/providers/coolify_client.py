"""Async HTTP client for the Coolify PaaS API (v1).

Boxes are Coolify "dockerfile" applications: created from an inline
Dockerfile, deployed on demand, configured through the envs endpoint.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx

from .http_base import ProviderAPIError, RetryingAPIClient

logger = logging.getLogger(__name__)


class CoolifyClient(RetryingAPIClient):
    provider_name = "coolify"

    def __init__(
        self,
        *,
        api_url: str,
        api_token: str,
        project_uuid: str,
        server_uuid: str,
        environment_name: str = "production",
        environment_uuid: str = "",
        http_client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        if not api_token:
            raise ValueError("api_token is required")
        super().__init__(base_url=api_url, http_client=http_client, **kwargs)
        self._api_token = api_token
        self._project_uuid = project_uuid
        self._server_uuid = server_uuid
        self._environment_name = environment_name
        self._environment_uuid = environment_uuid

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._api_token}"}

    async def create_application(
        self,
        *,
        name: str,
        dockerfile: str,
        fqdn: str,
        ports: str,
    ) -> str:
        """Create a dockerfile application; returns its uuid."""
        payload: dict[str, Any] = {
            "project_uuid": self._project_uuid,
            "server_uuid": self._server_uuid,
            "environment_name": self._environment_name,
            "dockerfile": dockerfile,
            "autogenerate_domain": False,
            "ports_exposes": ports,
            "name": name,
            "domains": fqdn,
        }
        if self._environment_uuid:
            payload["environment_uuid"] = self._environment_uuid

        resp = await self._request_with_retry("POST", "/applications/dockerfile", json=payload)
        self._raise_for_status(resp, operation="create_application")
        data = resp.json()
        uuid = data.get("uuid") if isinstance(data, dict) else None
        if not uuid:
            raise ProviderAPIError(
                resp.status_code,
                "create response carried no application uuid",
                provider=self.provider_name,
                operation="create_application",
                response_body=resp.text,
            )
        logger.info(
            "Coolify application created: name=%s uuid=%s",
            name,
            uuid,
            extra={"instance_name": name, "provider": "coolify"},
        )
        return uuid

    async def list_applications(self) -> list[dict[str, Any]]:
        resp = await self._request_with_retry("GET", "/applications")
        self._raise_for_status(resp, operation="list_applications")
        data = resp.json()
        return data if isinstance(data, list) else []

    async def get_application(self, uuid: str) -> dict[str, Any]:
        resp = await self._request_with_retry("GET", f"/applications/{uuid}")
        self._raise_for_status(resp, operation="get_application")
        return resp.json()

    async def deploy_application(self, uuid: str) -> None:
        resp = await self._request_with_retry(
            "GET", "/deploy", params={"uuid": uuid, "force": "true"},
        )
        self._raise_for_status(resp, operation="deploy_application")

    async def delete_application(self, uuid: str) -> None:
        resp = await self._request_with_retry(
            "DELETE",
            f"/applications/{uuid}",
            params={"delete_configurations": "true", "delete_volumes": "true"},
        )
        self._raise_for_status(resp, operation="delete_application")

    async def update_application_env(self, uuid: str, env: Mapping[str, str]) -> None:
        for key, value in env.items():
            resp = await self._request_with_retry(
                "POST",
                f"/applications/{uuid}/envs",
                json={"key": key, "value": value, "is_preview": False},
            )
            self._raise_for_status(resp, operation="update_application_env")
