"""Repository protocol interfaces for dependency injection.

These protocols define the contracts that concrete implementations (InMemory
for local dev and tests, Supabase for non-local) must satisfy. Services accept
any implementation that matches these protocols.
"""

from __future__ import annotations

from typing import Any, Collection, Mapping, Protocol, runtime_checkable

from .boxes.models import Box
from .cronjobs.models import Cronjob, CronjobExecution
from .ledger.models import DeployStep


@runtime_checkable
class BoxRepository(Protocol):
    """Box persistence.

    ``update`` applies ``changes`` (Box field names) and bumps
    ``updated_at``. When ``expected_status`` is given the update only
    happens if the stored status is one of them; ``None`` is returned when
    the box is missing or the guard did not match.
    """

    async def get(self, box_id: str) -> Box | None: ...
    async def insert(self, box: Box) -> Box: ...
    async def update(
        self,
        box_id: str,
        changes: Mapping[str, Any],
        *,
        expected_status: Collection[str] | None = None,
    ) -> Box | None: ...
    async def list_for_user(self, user_id: str) -> list[Box]: ...
    async def list_by_status(self, status: str) -> list[Box]: ...
    async def find_active_by_name(self, user_id: str, name: str) -> Box | None: ...
    async def subdomain_exists(self, subdomain: str) -> bool: ...


@runtime_checkable
class DeployStepRepository(Protocol):
    """Step ledger persistence. ``insert`` raises AlreadyExistsError on a
    duplicate ``(box_id, deployment_attempt, step_key)``."""

    async def insert(self, step: DeployStep) -> DeployStep: ...
    async def get(
        self, box_id: str, deployment_attempt: int, step_key: str,
    ) -> DeployStep | None: ...
    async def update(
        self, step_id: str, changes: Mapping[str, Any],
    ) -> DeployStep | None: ...
    async def list_for_box(
        self, box_id: str, deployment_attempt: int | None = None,
    ) -> list[DeployStep]: ...


@runtime_checkable
class CronjobRepository(Protocol):
    """Cronjob persistence."""

    async def get(self, cronjob_id: str) -> Cronjob | None: ...
    async def insert(self, cronjob: Cronjob) -> Cronjob: ...
    async def update(
        self, cronjob_id: str, changes: Mapping[str, Any],
    ) -> Cronjob | None: ...
    async def delete(self, cronjob_id: str) -> bool: ...
    async def list_for_box(self, box_id: str) -> list[Cronjob]: ...
    async def list_enabled(self) -> list[Cronjob]: ...


@runtime_checkable
class CronjobExecutionRepository(Protocol):
    """Cronjob execution ledger persistence (newest first on list)."""

    async def insert(self, execution: CronjobExecution) -> CronjobExecution: ...
    async def update(
        self, execution_id: str, changes: Mapping[str, Any],
    ) -> CronjobExecution | None: ...
    async def list_for_cronjob(
        self, cronjob_id: str, *, limit: int = 20,
    ) -> list[CronjobExecution]: ...
