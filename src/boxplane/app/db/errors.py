"""Supabase client error hierarchy.

Kept small and free of httpx types so repositories never leak
``httpx.Response`` objects (or the service-role key) through exceptions.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..errors import AlreadyExistsError, BoxPlaneError, InternalError, NotFoundError


@dataclass(frozen=True, slots=True)
class SupabaseError(Exception):
    """Base error for PostgREST requests."""

    status_code: int
    message: str
    code: str | None = None
    details: str | None = None
    hint: str | None = None

    def __str__(self) -> str:
        bits: list[str] = [f"SupabaseError(status={self.status_code})", self.message]
        if self.code:
            bits.append(f"code={self.code}")
        if self.details:
            bits.append(f"details={self.details}")
        return " ".join(bits)


class SupabaseAuthError(SupabaseError):
    """401/403 (bad key, RLS)."""


class SupabaseNotFoundError(SupabaseError):
    """404 (missing table or route)."""


class SupabaseConflictError(SupabaseError):
    """409 (unique violation)."""


def to_boxplane_error(exc: SupabaseError, *, what: str) -> BoxPlaneError:
    """Translate a storage failure into the API error taxonomy."""
    if isinstance(exc, SupabaseConflictError):
        return AlreadyExistsError(
            f"{what} already exists", details={"db_code": exc.code, "db_details": exc.details},
        )
    if isinstance(exc, SupabaseNotFoundError):
        return NotFoundError(f"{what} not found")
    return InternalError(
        f"storage error while writing {what}",
        details={"status_code": exc.status_code, "db_code": exc.code},
    )
