"""PostgREST-backed persistence for the provisioning queue."""

from .audit_emitter import SupabaseAuditEmitter
from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)
from .queue_repo import SupabaseQueueStore
from .supabase_client import SupabaseClient

__all__ = [
    "SupabaseAuditEmitter",
    "SupabaseAuthError",
    "SupabaseClient",
    "SupabaseConflictError",
    "SupabaseError",
    "SupabaseNotFoundError",
    "SupabaseQueueStore",
]
