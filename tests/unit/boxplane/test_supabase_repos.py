from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

import httpx
import pytest

from boxplane.app.boxes.models import Box, box_to_row
from boxplane.app.db.errors import SupabaseAuthError, SupabaseError
from boxplane.app.db.repos import (
    SupabaseBoxRepository,
    SupabaseCronjobRepository,
    SupabaseDeployStepRepository,
    encode_changes,
)
from boxplane.app.db.supabase_client import (
    PostgrestFilter,
    SupabaseClient,
    filters_to_params,
)
from boxplane.app.errors import AlreadyExistsError
from boxplane.app.ledger.models import DeployStep, step_to_row

BOX = Box(
    id="box_1",
    name="Research",
    subdomain="research-ab12",
    user_id="user-1",
    provider="sprites",
    status="deploying",
    skills=("acme/skills/pdf",),
    env_vars={"FOO": "bar"},
    agent_secret="s3cret",
)


def _client(handler) -> tuple[SupabaseClient, httpx.AsyncClient]:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = SupabaseClient(
        supabase_url="https://example.supabase.co/",
        service_role_key="svc-key",
        http_client=http_client,
    )
    return client, http_client


def test_filters_encode_operators():
    params = filters_to_params(
        {
            "id": ("eq", "box_1"),
            "status": ("in", ["deploying", "pending"]),
            "enabled": ("is", True),
            "instance_url": ("is", None),
            "name": "plain",
        }
    )
    assert params == {
        "id": "eq.box_1",
        "status": 'in.("deploying","pending")',
        "enabled": "is.true",
        "instance_url": "is.null",
        "name": "eq.plain",
    }


def test_filter_objects_and_none_value():
    assert filters_to_params([PostgrestFilter("sort_order", "gte", 3)]) == {"sort_order": "gte.3"}
    with pytest.raises(ValueError):
        filters_to_params({"id": ("eq", None)})


def test_client_requires_credentials():
    with pytest.raises(ValueError):
        SupabaseClient(supabase_url="", service_role_key="k")
    with pytest.raises(ValueError):
        SupabaseClient(supabase_url="https://x.supabase.co", service_role_key="")


def test_encode_changes_maps_columns_and_values():
    ts = datetime(2026, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    row = encode_changes(
        {"order": 3, "started_at": ts, "skills": ("a",), "metadata": {"k": 1}},
        {"order": "sort_order"},
    )
    assert row == {
        "sort_order": 3,
        "started_at": "2026-01-02T03:04:05+00:00",
        "skills": ["a"],
        "metadata": {"k": 1},
    }


@pytest.mark.asyncio
async def test_box_get_selects_by_id():
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["headers"] = dict(request.headers)
        return httpx.Response(200, json=[box_to_row(BOX)])

    client, http_client = _client(handler)
    async with http_client:
        box = await SupabaseBoxRepository(client).get("box_1")

    assert box.id == "box_1"
    assert box.skills == ("acme/skills/pdf",)
    assert box.env_vars == {"FOO": "bar"}
    assert seen["method"] == "GET"
    assert seen["path"] == "/rest/v1/boxes"
    assert seen["params"] == {"id": "eq.box_1", "select": "*", "limit": "1"}
    assert seen["headers"]["apikey"] == "svc-key"
    assert seen["headers"]["authorization"] == "Bearer svc-key"
    assert seen["headers"]["accept-profile"] == "public"


@pytest.mark.asyncio
async def test_box_get_missing_returns_none():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[])

    client, http_client = _client(handler)
    async with http_client:
        assert await SupabaseBoxRepository(client).get("nope") is None


@pytest.mark.asyncio
async def test_box_insert_conflict_maps_to_already_exists():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            409,
            json={"code": "23505", "message": "duplicate key", "details": "subdomain"},
        )

    client, http_client = _client(handler)
    async with http_client:
        with pytest.raises(AlreadyExistsError) as exc_info:
            await SupabaseBoxRepository(client).insert(BOX)
    assert exc_info.value.details["db_code"] == "23505"


@pytest.mark.asyncio
async def test_box_update_with_status_guard():
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["params"] = dict(request.url.params)
        seen["body"] = json.loads(request.content)
        seen["headers"] = dict(request.headers)
        return httpx.Response(200, json=[])

    client, http_client = _client(handler)
    async with http_client:
        result = await SupabaseBoxRepository(client).update(
            "box_1",
            {"status": "deploying", "deployment_attempt": 2},
            expected_status={"pending", "error"},
        )

    # Guard did not match: no row came back.
    assert result is None
    assert seen["method"] == "PATCH"
    assert seen["params"] == {"id": "eq.box_1", "status": 'in.("error","pending")'}
    assert seen["body"]["status"] == "deploying"
    assert seen["body"]["deployment_attempt"] == 2
    assert "updated_at" in seen["body"]
    assert seen["headers"]["prefer"] == "return=representation"
    assert seen["headers"]["content-profile"] == "public"


@pytest.mark.asyncio
async def test_list_for_user_excludes_deleted_newest_first():
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[box_to_row(BOX)])

    client, http_client = _client(handler)
    async with http_client:
        boxes = await SupabaseBoxRepository(client).list_for_user("user-1")

    assert [b.id for b in boxes] == ["box_1"]
    assert seen["params"]["status"] == "neq.deleted"
    assert seen["params"]["order"] == "created_at.desc"


@pytest.mark.asyncio
async def test_step_rows_use_sort_order_column():
    step = DeployStep(
        id="step_1",
        box_id="box_1",
        deployment_attempt=2,
        step_key="health-check",
        name="Health check",
        order=5,
    )
    seen: list[httpx.Request] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.method == "GET":
            return httpx.Response(200, json=[step_to_row(step)])
        return httpx.Response(201, json=[step_to_row(step)])

    client, http_client = _client(handler)
    async with http_client:
        repo = SupabaseDeployStepRepository(client)
        inserted = await repo.insert(step)
        rows = await repo.list_for_box("box_1", 2)

    assert inserted.order == 5
    assert json.loads(seen[0].content)["sort_order"] == 5
    assert seen[0].url.path == "/rest/v1/box_deploy_steps"
    assert rows[0].step_key == "health-check"
    params = dict(seen[1].url.params)
    assert params["deployment_attempt"] == "eq.2"
    assert params["order"] == "deployment_attempt.asc,sort_order.asc"


@pytest.mark.asyncio
async def test_enabled_cronjobs_filter():
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json=[{
                "id": "cron_1",
                "box_id": "box_1",
                "name": "Digest",
                "schedule": "0 9 * * *",
                "prompt": "Summarize",
                "timezone": None,
                "enabled": True,
                "last_run_at": "2026-01-01T09:00:00Z",
            }],
        )

    client, http_client = _client(handler)
    async with http_client:
        [cronjob] = await SupabaseCronjobRepository(client).list_enabled()

    assert seen["path"] == "/rest/v1/box_cronjobs"
    assert seen["params"]["enabled"] == "is.true"
    assert cronjob.timezone == "UTC"
    assert cronjob.last_run_at == datetime(2026, 1, 1, 9, 0, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_auth_error_mapping():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"message": "Invalid API key"})

    client, http_client = _client(handler)
    async with http_client:
        with pytest.raises(SupabaseAuthError) as exc_info:
            await client.select("boxes")
    assert exc_info.value.status_code == 401
    assert exc_info.value.message == "Invalid API key"


@pytest.mark.asyncio
async def test_non_list_response_rejected():
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"id": "box_1"})

    client, http_client = _client(handler)
    async with http_client:
        with pytest.raises(SupabaseError, match="expected list response"):
            await client.select("boxes")


@pytest.mark.asyncio
async def test_schema_qualified_table_uses_profile_headers():
    seen: dict[str, Any] = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["headers"] = dict(request.headers)
        return httpx.Response(200, json=[])

    client, http_client = _client(handler)
    async with http_client:
        await client.delete("box.boxes", {"id": ("eq", "box_1")})

    assert seen["path"] == "/rest/v1/boxes"
    assert seen["headers"]["accept-profile"] == "box"
    assert seen["headers"]["content-profile"] == "box"
