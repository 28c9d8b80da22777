"""Supabase-backed repositories for boxes, deploy steps, and cronjobs.

Each class satisfies the matching protocol in ``protocols.py``. Uniqueness
is enforced by the database (``boxes.subdomain``, ``box_deploy_steps``
``(box_id, deployment_attempt, step_key)``); a 409 becomes
``AlreadyExistsError``.

The status guard of ``SupabaseBoxRepository.update`` is a PATCH filtered on
``status=in.(...)``: PostgREST applies it atomically and returns no row
when it did not match.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Collection, Mapping

from ..boxes.models import Box, box_from_row, box_to_row
from ..cronjobs.models import (
    Cronjob,
    CronjobExecution,
    cronjob_from_row,
    cronjob_to_row,
    execution_from_row,
    execution_to_row,
)
from ..ledger.models import DeployStep, step_from_row, step_to_row
from .errors import SupabaseConflictError, to_boxplane_error
from .supabase_client import SupabaseClient

BOXES_TABLE = "boxes"
STEPS_TABLE = "box_deploy_steps"
CRONJOBS_TABLE = "box_cronjobs"
EXECUTIONS_TABLE = "box_cronjob_executions"

# Dataclass field -> column where they differ.
_STEP_COLUMNS = {"order": "sort_order"}


def encode_changes(
    changes: Mapping[str, Any], columns: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Map dataclass field changes onto JSON-ready column values."""
    columns = columns or {}
    row: dict[str, Any] = {}
    for key, value in changes.items():
        if isinstance(value, datetime):
            value = value.isoformat()
        elif isinstance(value, tuple):
            value = list(value)
        elif isinstance(value, Mapping):
            value = dict(value)
        row[columns.get(key, key)] = value
    return row


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class SupabaseBoxRepository:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get(self, box_id: str) -> Box | None:
        rows = await self._client.select(BOXES_TABLE, {"id": ("eq", box_id)}, limit=1)
        return box_from_row(rows[0]) if rows else None

    async def insert(self, box: Box) -> Box:
        try:
            rows = await self._client.insert(BOXES_TABLE, box_to_row(box))
        except SupabaseConflictError as exc:
            raise to_boxplane_error(exc, what=f"box {box.name!r}") from exc
        return box_from_row(rows[0])

    async def update(
        self,
        box_id: str,
        changes: Mapping[str, Any],
        *,
        expected_status: Collection[str] | None = None,
    ) -> Box | None:
        filters: dict[str, tuple[str, Any]] = {"id": ("eq", box_id)}
        if expected_status is not None:
            filters["status"] = ("in", sorted(expected_status))
        row = encode_changes(changes)
        row["updated_at"] = _now_iso()
        rows = await self._client.update(BOXES_TABLE, filters, row)
        return box_from_row(rows[0]) if rows else None

    async def list_for_user(self, user_id: str) -> list[Box]:
        rows = await self._client.select(
            BOXES_TABLE,
            {"user_id": ("eq", user_id), "status": ("neq", "deleted")},
            order="created_at.desc",
        )
        return [box_from_row(r) for r in rows]

    async def list_by_status(self, status: str) -> list[Box]:
        rows = await self._client.select(BOXES_TABLE, {"status": ("eq", status)})
        return [box_from_row(r) for r in rows]

    async def find_active_by_name(self, user_id: str, name: str) -> Box | None:
        rows = await self._client.select(
            BOXES_TABLE,
            {
                "user_id": ("eq", user_id),
                "name": ("eq", name),
                "status": ("neq", "deleted"),
            },
            limit=1,
        )
        return box_from_row(rows[0]) if rows else None

    async def subdomain_exists(self, subdomain: str) -> bool:
        rows = await self._client.select(
            BOXES_TABLE, {"subdomain": ("eq", subdomain)}, columns="id", limit=1,
        )
        return bool(rows)


class SupabaseDeployStepRepository:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def insert(self, step: DeployStep) -> DeployStep:
        try:
            rows = await self._client.insert(STEPS_TABLE, step_to_row(step))
        except SupabaseConflictError as exc:
            raise to_boxplane_error(
                exc,
                what=f"step {step.step_key!r} for attempt {step.deployment_attempt}",
            ) from exc
        return step_from_row(rows[0])

    async def get(
        self, box_id: str, deployment_attempt: int, step_key: str,
    ) -> DeployStep | None:
        rows = await self._client.select(
            STEPS_TABLE,
            {
                "box_id": ("eq", box_id),
                "deployment_attempt": ("eq", deployment_attempt),
                "step_key": ("eq", step_key),
            },
            limit=1,
        )
        return step_from_row(rows[0]) if rows else None

    async def update(
        self, step_id: str, changes: Mapping[str, Any],
    ) -> DeployStep | None:
        rows = await self._client.update(
            STEPS_TABLE, {"id": ("eq", step_id)}, encode_changes(changes, _STEP_COLUMNS),
        )
        return step_from_row(rows[0]) if rows else None

    async def list_for_box(
        self, box_id: str, deployment_attempt: int | None = None,
    ) -> list[DeployStep]:
        filters: dict[str, tuple[str, Any]] = {"box_id": ("eq", box_id)}
        if deployment_attempt is not None:
            filters["deployment_attempt"] = ("eq", deployment_attempt)
        rows = await self._client.select(
            STEPS_TABLE, filters, order="deployment_attempt.asc,sort_order.asc",
        )
        return [step_from_row(r) for r in rows]


class SupabaseCronjobRepository:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def get(self, cronjob_id: str) -> Cronjob | None:
        rows = await self._client.select(CRONJOBS_TABLE, {"id": ("eq", cronjob_id)}, limit=1)
        return cronjob_from_row(rows[0]) if rows else None

    async def insert(self, cronjob: Cronjob) -> Cronjob:
        try:
            rows = await self._client.insert(CRONJOBS_TABLE, cronjob_to_row(cronjob))
        except SupabaseConflictError as exc:
            raise to_boxplane_error(exc, what=f"cronjob {cronjob.name!r}") from exc
        return cronjob_from_row(rows[0])

    async def update(
        self, cronjob_id: str, changes: Mapping[str, Any],
    ) -> Cronjob | None:
        row = encode_changes(changes)
        row["updated_at"] = _now_iso()
        rows = await self._client.update(CRONJOBS_TABLE, {"id": ("eq", cronjob_id)}, row)
        return cronjob_from_row(rows[0]) if rows else None

    async def delete(self, cronjob_id: str) -> bool:
        rows = await self._client.delete(CRONJOBS_TABLE, {"id": ("eq", cronjob_id)})
        return bool(rows)

    async def list_for_box(self, box_id: str) -> list[Cronjob]:
        rows = await self._client.select(
            CRONJOBS_TABLE, {"box_id": ("eq", box_id)}, order="created_at.desc",
        )
        return [cronjob_from_row(r) for r in rows]

    async def list_enabled(self) -> list[Cronjob]:
        rows = await self._client.select(CRONJOBS_TABLE, {"enabled": ("is", True)})
        return [cronjob_from_row(r) for r in rows]


class SupabaseCronjobExecutionRepository:
    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def insert(self, execution: CronjobExecution) -> CronjobExecution:
        rows = await self._client.insert(EXECUTIONS_TABLE, execution_to_row(execution))
        return execution_from_row(rows[0])

    async def update(
        self, execution_id: str, changes: Mapping[str, Any],
    ) -> CronjobExecution | None:
        rows = await self._client.update(
            EXECUTIONS_TABLE, {"id": ("eq", execution_id)}, encode_changes(changes),
        )
        return execution_from_row(rows[0]) if rows else None

    async def list_for_cronjob(
        self, cronjob_id: str, *, limit: int = 20,
    ) -> list[CronjobExecution]:
        rows = await self._client.select(
            EXECUTIONS_TABLE,
            {"cronjob_id": ("eq", cronjob_id)},
            order="started_at.desc",
            limit=limit,
        )
        return [execution_from_row(r) for r in rows]
