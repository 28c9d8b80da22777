"""Async HTTP client for the Sprites fleet API.

Provides create, get, delete, list, exec, filesystem, and URL-settings
operations against the Sprites REST API. Auth uses a static bearer token
(server-side only, never leaves the control plane).
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .http_base import ProviderAPIError, RetryingAPIClient

logger = logging.getLogger(__name__)


class SpritesClient(RetryingAPIClient):
    """Async HTTP client for the Sprites VM fleet.

    All calls authenticate via a static bearer token injected server-side.
    """

    provider_name = "sprites"

    def __init__(
        self,
        *,
        bearer_token: str,
        base_url: str = "https://api.sprites.dev",
        http_client: httpx.AsyncClient | None = None,
        **kwargs: Any,
    ) -> None:
        if not bearer_token:
            raise ValueError("bearer_token is required")
        super().__init__(base_url=base_url, http_client=http_client, **kwargs)
        self._bearer_token = bearer_token

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._bearer_token}"}

    # ── Lifecycle ────────────────────────────────────────────────

    async def create_sprite(
        self,
        name: str,
        *,
        env: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        """Create a new sprite. Returns the created sprite metadata."""
        payload: dict[str, Any] = {"name": name}
        if env:
            payload["env"] = env

        resp = await self._request_with_retry("POST", "/v1/sprites", json=payload)
        self._raise_for_status(resp, operation="create_sprite")

        result = resp.json()
        logger.info(
            "Sprite created: name=%s",
            name,
            extra={"instance_name": name, "provider": "sprites"},
        )
        return result

    async def get_sprite(self, name: str) -> dict[str, Any]:
        """Get sprite metadata by name.

        Raises ProviderNotFoundError if the sprite doesn't exist.
        """
        resp = await self._request_with_retry("GET", f"/v1/sprites/{name}")
        self._raise_for_status(resp, operation="get_sprite")
        return resp.json()

    async def delete_sprite(self, name: str) -> None:
        """Delete a sprite.

        Raises ProviderNotFoundError if the sprite doesn't exist.
        """
        resp = await self._request_with_retry("DELETE", f"/v1/sprites/{name}")
        self._raise_for_status(resp, operation="delete_sprite")
        logger.info(
            "Sprite deleted: name=%s",
            name,
            extra={"instance_name": name, "provider": "sprites"},
        )

    async def list_sprites(self, prefix: str | None = None) -> list[dict[str, Any]]:
        """List sprites, optionally filtered by name prefix."""
        params: dict[str, str] = {}
        if prefix:
            params["prefix"] = prefix

        resp = await self._request_with_retry("GET", "/v1/sprites", params=params)
        self._raise_for_status(resp, operation="list_sprites")

        result = resp.json()
        if isinstance(result, dict) and isinstance(result.get("sprites"), list):
            return result["sprites"]
        if not isinstance(result, list):
            raise ProviderAPIError(
                0,
                f"Expected list from /v1/sprites, got {type(result).__name__}",
                provider=self.provider_name,
                operation="list_sprites",
            )
        return result

    async def update_url_settings(self, name: str, *, auth: str) -> dict[str, Any]:
        """Set URL auth mode ("public" or "sprite") for the sprite URL."""
        resp = await self._request_with_retry(
            "PUT",
            f"/v1/sprites/{name}",
            json={"url_settings": {"auth": auth}},
        )
        self._raise_for_status(resp, operation="update_url_settings")
        return resp.json() if resp.content else {}

    # ── Exec / filesystem ────────────────────────────────────────

    async def exec(
        self,
        name: str,
        command: list[str],
        *,
        timeout_seconds: float | None = None,
    ) -> dict[str, Any]:
        """Run a command; returns ``{"stdout", "stderr", "exit_code"}``."""
        resp = await self._request_with_retry(
            "POST",
            f"/v1/sprites/{name}/exec",
            json={"cmd": command},
            timeout=timeout_seconds,
        )
        self._raise_for_status(resp, operation="exec")
        return resp.json()

    async def write_file(
        self,
        name: str,
        path: str,
        content: bytes,
        *,
        mode: str | None = None,
        mkdir: bool = True,
    ) -> None:
        params = {"path": path, "mkdir": "true" if mkdir else "false"}
        if mode:
            params["mode"] = mode
        resp = await self._request_with_retry(
            "PUT",
            f"/v1/sprites/{name}/fs/write",
            params=params,
            content=content,
            headers={"Content-Type": "application/octet-stream"},
        )
        self._raise_for_status(resp, operation="write_file")

    async def read_file(self, name: str, path: str) -> bytes:
        resp = await self._request_with_retry(
            "GET", f"/v1/sprites/{name}/fs/read", params={"path": path},
        )
        self._raise_for_status(resp, operation="read_file")
        return resp.content
