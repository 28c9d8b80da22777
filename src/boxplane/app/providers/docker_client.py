"""Async client for the Docker Engine HTTP API.

Talks to the local engine over its unix socket through httpx's UDS
transport. Only the container, exec, and archive endpoints the box
workflow needs are wrapped here.
"""

from __future__ import annotations

import io
import logging
import posixpath
import struct
import tarfile
from typing import Any, Mapping

import httpx

from .http_base import ProviderAPIError, RetryingAPIClient

logger = logging.getLogger(__name__)

DOCKER_API_VERSION = "v1.43"

# Multiplexed exec stream frame header: stream type, 3 pad bytes, big-endian size.
_FRAME_HEADER = struct.Struct(">BxxxL")
_STDOUT, _STDERR = 1, 2


def build_uds_client(socket_path: str) -> httpx.AsyncClient:
    """httpx client bound to the engine's unix socket."""
    transport = httpx.AsyncHTTPTransport(uds=socket_path)
    return httpx.AsyncClient(transport=transport)


def demux_stream(payload: bytes) -> tuple[bytes, bytes]:
    """Split a non-TTY exec/attach stream into (stdout, stderr)."""
    stdout = bytearray()
    stderr = bytearray()
    offset = 0
    while offset + _FRAME_HEADER.size <= len(payload):
        stream_type, size = _FRAME_HEADER.unpack_from(payload, offset)
        offset += _FRAME_HEADER.size
        chunk = payload[offset:offset + size]
        offset += size
        if stream_type == _STDERR:
            stderr.extend(chunk)
        else:
            stdout.extend(chunk)
    return bytes(stdout), bytes(stderr)


def pack_single_file(path: str, content: bytes, *, mode: int = 0o644) -> bytes:
    """Tar archive holding one file named after ``path``'s basename."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        info = tarfile.TarInfo(name=posixpath.basename(path))
        info.size = len(content)
        info.mode = mode
        archive.addfile(info, io.BytesIO(content))
    return buffer.getvalue()


def unpack_single_file(payload: bytes) -> bytes:
    with tarfile.open(fileobj=io.BytesIO(payload), mode="r") as archive:
        for member in archive.getmembers():
            if member.isfile():
                extracted = archive.extractfile(member)
                if extracted is not None:
                    return extracted.read()
    raise ProviderAPIError(
        0, "archive contained no regular file", provider="docker", operation="read_file",
    )


class DockerEngineClient(RetryingAPIClient):
    """Container lifecycle, exec, and file transfer against one engine."""

    provider_name = "docker"

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient,
        base_url: str = f"http://docker/{DOCKER_API_VERSION}",
        **kwargs: Any,
    ) -> None:
        super().__init__(base_url=base_url, http_client=http_client, **kwargs)

    def _error_message(self, resp: httpx.Response) -> str:
        try:
            payload = resp.json()
            if isinstance(payload, dict) and payload.get("message"):
                return str(payload["message"])
        except ValueError:
            pass
        return super()._error_message(resp)

    # ── Containers ───────────────────────────────────────────────

    async def create_container(
        self,
        name: str,
        *,
        image: str,
        env: Mapping[str, str],
        labels: Mapping[str, str],
        port: int,
        network: str | None = None,
    ) -> str:
        body: dict[str, Any] = {
            "Image": image,
            "Env": [f"{k}={v}" for k, v in sorted(env.items())],
            "Labels": dict(labels),
            "ExposedPorts": {f"{port}/tcp": {}},
            "HostConfig": {"RestartPolicy": {"Name": "unless-stopped"}},
        }
        if network:
            body["HostConfig"]["NetworkMode"] = network
        resp = await self._request_with_retry(
            "POST", "/containers/create", params={"name": name}, json=body,
        )
        self._raise_for_status(resp, operation="create_container")
        container_id = resp.json().get("Id", "")
        logger.info(
            "Container created: name=%s id=%s",
            name,
            container_id[:12],
            extra={"instance_name": name, "provider": "docker"},
        )
        return container_id

    async def start_container(self, name: str) -> None:
        resp = await self._request_with_retry("POST", f"/containers/{name}/start")
        # 304: already started.
        if resp.status_code == 304:
            return
        self._raise_for_status(resp, operation="start_container")

    async def inspect_container(self, name: str) -> dict[str, Any]:
        resp = await self._request_with_retry("GET", f"/containers/{name}/json")
        self._raise_for_status(resp, operation="inspect_container")
        return resp.json()

    async def remove_container(self, name: str) -> None:
        resp = await self._request_with_retry(
            "DELETE", f"/containers/{name}", params={"force": "true", "v": "true"},
        )
        self._raise_for_status(resp, operation="remove_container")

    # ── Exec ─────────────────────────────────────────────────────

    async def exec(self, name: str, command: list[str]) -> tuple[str, str, int]:
        """Run ``command`` in the container; returns (stdout, stderr, exit_code)."""
        resp = await self._request_with_retry(
            "POST",
            f"/containers/{name}/exec",
            json={"AttachStdout": True, "AttachStderr": True, "Cmd": command},
        )
        self._raise_for_status(resp, operation="exec_create")
        exec_id = resp.json()["Id"]

        resp = await self._request_with_retry(
            "POST", f"/exec/{exec_id}/start", json={"Detach": False, "Tty": False},
        )
        self._raise_for_status(resp, operation="exec_start")
        stdout, stderr = demux_stream(resp.content)

        resp = await self._request_with_retry("GET", f"/exec/{exec_id}/json")
        self._raise_for_status(resp, operation="exec_inspect")
        exit_code = resp.json().get("ExitCode")
        return (
            stdout.decode(errors="replace"),
            stderr.decode(errors="replace"),
            int(exit_code) if exit_code is not None else 1,
        )

    # ── Archive (file transfer) ──────────────────────────────────

    async def put_file(
        self, name: str, path: str, content: bytes, *, mode: int = 0o644,
    ) -> None:
        resp = await self._request_with_retry(
            "PUT",
            f"/containers/{name}/archive",
            params={"path": posixpath.dirname(path) or "/"},
            content=pack_single_file(path, content, mode=mode),
            headers={"Content-Type": "application/x-tar"},
        )
        self._raise_for_status(resp, operation="put_archive")

    async def get_file(self, name: str, path: str) -> bytes:
        resp = await self._request_with_retry(
            "GET", f"/containers/{name}/archive", params={"path": path},
        )
        self._raise_for_status(resp, operation="get_archive")
        return unpack_single_file(resp.content)
