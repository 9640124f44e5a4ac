"""Audit trail for provisioning queue mutations.

One immutable event per enqueue, claim, credential submission and migration
outcome. Events name the customer, the acting operator (``None`` when the
signup flow enqueues), the request correlation id and a payload that has been
scrubbed of secrets.

Storage:
  InMemoryAuditEmitter   local development and tests
  SupabaseAuditEmitter   db/audit_emitter.py, table provisioning_audit_log
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol

REDACTED = '[REDACTED]'

# Compared case-insensitively against payload keys at any depth.
SENSITIVE_KEYS = frozenset({
    'authorization',
    'apikey',
    'api_key',
    'anon_key',
    'service_role_key',
    'database_password',
    'password',
    'secret',
    'token',
})

ACTIONS = frozenset({
    'queue_created',
    'task_claimed',
    'credentials_submitted',
    'migration_started',
    'migration_completed',
    'migration_failed',
})


def sanitize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of ``payload`` with secret-looking keys redacted."""
    return {key: _scrub(key, value) for key, value in payload.items()}


def _scrub(key: str, value: Any) -> Any:
    if key.lower() in SENSITIVE_KEYS:
        return REDACTED
    if isinstance(value, dict):
        return sanitize_payload(value)
    if isinstance(value, (list, tuple)):
        return [sanitize_payload(v) if isinstance(v, dict) else v for v in value]
    return value


@dataclass(frozen=True)
class AuditEvent:
    """One row of provisioning_audit_log."""

    customer_id: str
    action: str
    actor_id: str | None = None
    request_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    id: int | None = None

    def __post_init__(self) -> None:
        if self.action not in ACTIONS:
            raise ValueError(f'unknown audit action {self.action!r}')

    def to_row(self) -> dict[str, Any]:
        return {
            'customer_id': self.customer_id,
            'action': self.action,
            'actor_id': self.actor_id,
            'request_id': self.request_id,
            'payload': sanitize_payload(self.payload),
            'created_at': self.created_at.isoformat(),
        }


class AuditEmitter(Protocol):
    """Records audit events. ``emit`` must not raise."""

    async def emit(self, event: AuditEvent) -> None: ...


class InMemoryAuditEmitter:
    def __init__(self) -> None:
        self._events: list[AuditEvent] = []

    async def emit(self, event: AuditEvent) -> None:
        self._events.append(
            replace(
                event,
                id=len(self._events) + 1,
                payload=sanitize_payload(event.payload),
            )
        )

    async def list_for_customer(
        self, customer_id: str, limit: int = 50,
    ) -> list[AuditEvent]:
        """Newest first."""
        matching = [e for e in self._events if e.customer_id == customer_id]
        matching.sort(key=lambda e: (e.created_at, e.id or 0), reverse=True)
        return matching[:limit]

    def actions_for(self, customer_id: str) -> list[str]:
        """Actions in emission order, for test assertions."""
        return [e.action for e in self._events if e.customer_id == customer_id]

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)
