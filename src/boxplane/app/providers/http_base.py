"""Shared async HTTP plumbing for provider API clients.

Exponential backoff with full jitter for transient errors, Retry-After
support for 429 responses, and a status-to-exception mapping that turns
upstream failures into ``ProviderError`` subclasses.
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable

import httpx

from ..errors import ProviderError

logger = logging.getLogger(__name__)

# Status codes eligible for automatic retry.
_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

# Default retry configuration.
_DEFAULT_MAX_RETRIES = 3
_DEFAULT_BASE_DELAY = 1.0  # seconds
_DEFAULT_MAX_DELAY = 30.0  # seconds


# ── Exception hierarchy ─────────────────────────────────────────


class ProviderAPIError(ProviderError):
    """Upstream provider API answered with an error status."""

    def __init__(
        self,
        status_code: int,
        message: str = "",
        *,
        provider: str | None = None,
        operation: str | None = None,
        response_body: str = "",
    ) -> None:
        self.response_body = response_body
        super().__init__(
            f"{provider or 'provider'} API error {status_code}: {message}",
            status_code=status_code,
            provider=provider,
            operation=operation,
            retryable=status_code in _RETRYABLE_STATUS_CODES or status_code == 0,
        )


class ProviderNotFoundError(ProviderAPIError):
    """Upstream resource not found (404)."""

    def __init__(self, message: str = "resource not found", **kwargs: Any) -> None:
        super().__init__(404, message, **kwargs)


class ProviderTimeoutError(ProviderAPIError):
    """Request to the provider API timed out."""

    def __init__(self, message: str = "request timed out", **kwargs: Any) -> None:
        super().__init__(0, message, **kwargs)


# ── Module-level shared client ───────────────────────────────────

_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    global _shared_async_client
    _shared_async_client = None


# ── Client base ──────────────────────────────────────────────────


class RetryingAPIClient:
    """Base for provider API clients talking JSON over httpx."""

    provider_name = "provider"

    def __init__(
        self,
        *,
        base_url: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = _DEFAULT_MAX_RETRIES,
        base_delay: float = _DEFAULT_BASE_DELAY,
        max_delay: float = _DEFAULT_MAX_DELAY,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep

    def _auth_headers(self) -> dict[str, str]:
        return {}

    def _error_message(self, resp: httpx.Response) -> str:
        body = resp.text
        message = body[:200] if body else f"HTTP {resp.status_code}"
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("error", payload.get("message", message))
        except (ValueError, KeyError):
            pass
        return str(message)

    def _raise_for_status(self, resp: httpx.Response, *, operation: str) -> None:
        if resp.status_code < 400:
            return

        message = self._error_message(resp)
        if resp.status_code == 404:
            raise ProviderNotFoundError(
                message,
                provider=self.provider_name,
                operation=operation,
                response_body=resp.text,
            )
        raise ProviderAPIError(
            resp.status_code,
            message,
            provider=self.provider_name,
            operation=operation,
            response_body=resp.text,
        )

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        *,
        json: Any | None = None,
        params: dict[str, str] | None = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential backoff retry for transient errors."""
        url = f"{self._base_url}{path}"
        request_headers = {**self._auth_headers(), **(headers or {})}

        last_exc: Exception | None = None
        for attempt in range(self._max_retries + 1):
            try:
                resp = await self._client.request(
                    method,
                    url,
                    headers=request_headers,
                    json=json,
                    params=params,
                    content=content,
                    timeout=timeout or self._timeout,
                )
            except httpx.TimeoutException as e:
                last_exc = ProviderTimeoutError(
                    str(e) or "request timed out",
                    provider=self.provider_name,
                    operation=f"{method} {path}",
                )
                if attempt < self._max_retries:
                    delay = self._backoff_delay(attempt)
                    logger.warning(
                        "%s request timeout (attempt %d/%d), retrying in %.1fs",
                        self.provider_name,
                        attempt + 1,
                        self._max_retries + 1,
                        delay,
                    )
                    await self._sleep(delay)
                    continue
                raise last_exc from e
            except httpx.TransportError as e:
                raise ProviderAPIError(
                    0,
                    f"transport error: {e}",
                    provider=self.provider_name,
                    operation=f"{method} {path}",
                ) from e

            if resp.status_code not in _RETRYABLE_STATUS_CODES:
                return resp

            if attempt < self._max_retries:
                delay = self._retry_after_delay(resp, attempt)
                logger.warning(
                    "%s %s %s returned %d (attempt %d/%d), retrying in %.1fs",
                    self.provider_name,
                    method,
                    path,
                    resp.status_code,
                    attempt + 1,
                    self._max_retries + 1,
                    delay,
                )
                await self._sleep(delay)
            else:
                return resp

        if last_exc:
            raise last_exc
        raise ProviderAPIError(
            0, "exhausted retries with no response", provider=self.provider_name,
        )

    def _backoff_delay(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        delay = min(self._base_delay * (2 ** attempt), self._max_delay)
        return random.uniform(0, delay)

    def _retry_after_delay(self, resp: httpx.Response, attempt: int) -> float:
        """Use Retry-After header if present, otherwise exponential backoff."""
        retry_after = resp.headers.get("retry-after")
        if retry_after:
            try:
                return max(float(retry_after), 0.1)
            except ValueError:
                pass
        return self._backoff_delay(attempt)
