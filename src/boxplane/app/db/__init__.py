"""Supabase-backed persistence."""

from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)
from .repos import (
    SupabaseBoxRepository,
    SupabaseCronjobExecutionRepository,
    SupabaseCronjobRepository,
    SupabaseDeployStepRepository,
)
from .supabase_client import PostgrestFilter, SupabaseClient

__all__ = [
    "PostgrestFilter",
    "SupabaseAuthError",
    "SupabaseBoxRepository",
    "SupabaseClient",
    "SupabaseConflictError",
    "SupabaseCronjobExecutionRepository",
    "SupabaseCronjobRepository",
    "SupabaseDeployStepRepository",
    "SupabaseError",
    "SupabaseNotFoundError",
]
