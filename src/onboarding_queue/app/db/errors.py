"""PostgREST error hierarchy for the queue database.

Kept free of httpx types so store code can catch these without holding on to
response objects (which carry the service-role key in their request headers).
"""

from __future__ import annotations

from dataclasses import dataclass

# Postgres "undefined_table" and the PostgREST schema-cache miss for the same.
MISSING_RELATION_CODES = frozenset({"42P01", "PGRST205"})


@dataclass(frozen=True, slots=True)
class SupabaseError(Exception):
    """Base error for a failed PostgREST request."""

    status_code: int
    message: str
    code: str | None = None
    details: str | None = None
    hint: str | None = None

    @property
    def is_missing_relation(self) -> bool:
        return self.code in MISSING_RELATION_CODES or "does not exist" in self.message

    @property
    def is_server_error(self) -> bool:
        return self.status_code >= 500

    def __str__(self) -> str:
        bits: list[str] = [f"SupabaseError(status={self.status_code})", self.message]
        if self.code:
            bits.append(f"code={self.code}")
        if self.details:
            bits.append(f"details={self.details}")
        return " ".join(bits)


class SupabaseAuthError(SupabaseError):
    """401/403: bad key or row-level security denial."""


class SupabaseNotFoundError(SupabaseError):
    """404: unknown table, view or RPC."""


class SupabaseConflictError(SupabaseError):
    """409: unique violation, e.g. the one-active-item-per-customer index."""
