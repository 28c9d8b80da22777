"""Async PostgREST client wrapper for Supabase.

Single point of Supabase HTTP interaction for the box repositories.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterable, Mapping, Sequence, Union

import httpx

from ..providers.http_base import _get_shared_async_client
from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)


@dataclass(frozen=True, slots=True)
class PostgrestFilter:
    column: str
    op: str
    value: Any


Filters = Union[Sequence[PostgrestFilter], Mapping[str, Any], None]


def _split_schema_table(table: str, default_schema: str) -> tuple[str, str]:
    # "box.boxes" selects a non-public schema through the profile headers.
    if "." in table:
        schema, name = table.split(".", 1)
        return schema.strip(), name.strip()
    return default_schema, table.strip()


def _encode_filter_value(op: str, value: Any) -> str:
    if op == "is":
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    if op == "in":
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("in operator requires an iterable of values")
        items = []
        for v in value:
            if isinstance(v, str):
                items.append(json.dumps(v))
            elif v is None:
                items.append("null")
            else:
                items.append(str(v))
        return f"({','.join(items)})"

    if value is None:
        raise ValueError(f"{op} does not support None; use op='is' with value=None")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def filters_to_params(filters: Filters) -> dict[str, str]:
    if not filters:
        return {}

    params: dict[str, str] = {}
    if isinstance(filters, Mapping):
        items: Iterable[tuple[str, Any]] = filters.items()
        for col, spec in items:
            if isinstance(spec, tuple) and len(spec) == 2:
                op, val = spec
            else:
                op, val = "eq", spec
            params[str(col)] = f"{op}.{_encode_filter_value(str(op), val)}"
        return params

    for f in filters:
        params[f.column] = f"{f.op}.{_encode_filter_value(f.op, f.value)}"
    return params


class SupabaseClient:
    """Minimal async PostgREST client (service role)."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        default_schema: str = "public",
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not service_role_key:
            raise ValueError("service_role_key is required")

        self._supabase_url = supabase_url.rstrip("/")
        self._service_role_key = service_role_key
        self._default_schema = default_schema or "public"
        self._timeout_seconds = float(timeout_seconds)
        self._client = http_client or _get_shared_async_client()

    @property
    def base_rest_url(self) -> str:
        return f"{self._supabase_url}/rest/v1"

    def _headers(self, schema: str, method: str, *, representation: bool) -> dict[str, str]:
        # Never log these headers.
        headers = {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
        }
        if schema:
            headers["Accept-Profile"] = schema
            if method in ("POST", "PATCH", "DELETE"):
                headers["Content-Profile"] = schema
        if representation:
            headers["Prefer"] = "return=representation"
        return headers

    def _raise_for_error(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        message = resp.text
        code = details = hint = None
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("message") or message
                code = payload.get("code")
                details = payload.get("details")
                hint = payload.get("hint")
        except ValueError:
            pass

        err_cls: type[SupabaseError]
        if resp.status_code in (401, 403):
            err_cls = SupabaseAuthError
        elif resp.status_code == 404:
            err_cls = SupabaseNotFoundError
        elif resp.status_code == 409:
            err_cls = SupabaseConflictError
        else:
            err_cls = SupabaseError
        raise err_cls(
            status_code=resp.status_code,
            message=message,
            code=code,
            details=details,
            hint=hint,
        )

    async def _rows(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        body: Any = None,
        representation: bool = True,
    ) -> list[dict[str, Any]]:
        schema, table_name = _split_schema_table(table, self._default_schema)
        resp = await self._client.request(
            method,
            f"{self.base_rest_url}/{table_name}",
            params=params or None,
            json=body,
            headers=self._headers(schema, method, representation=representation),
            timeout=self._timeout_seconds,
        )
        self._raise_for_error(resp)
        payload = resp.json()
        if not isinstance(payload, list):
            raise SupabaseError(
                status_code=500, message=f"expected list response from {method} {table_name}",
            )
        return payload

    async def select(
        self,
        table: str,
        filters: Filters = None,
        *,
        columns: str = "*",
        limit: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = filters_to_params(filters)
        params["select"] = columns
        if limit is not None:
            params["limit"] = str(int(limit))
        if order:
            params["order"] = order
        return await self._rows("GET", table, params=params, representation=False)

    async def insert(
        self, table: str, data: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    ) -> list[dict[str, Any]]:
        return await self._rows("POST", table, body=data)

    async def update(
        self, table: str, filters: Filters, data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        return await self._rows("PATCH", table, params=filters_to_params(filters), body=dict(data))

    async def delete(self, table: str, filters: Filters) -> list[dict[str, Any]]:
        return await self._rows("DELETE", table, params=filters_to_params(filters))
