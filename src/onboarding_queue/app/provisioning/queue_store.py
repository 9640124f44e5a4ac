"""Queue store protocol and in-memory implementation.

Enforces three invariants:
  1. At most one non-terminal queue item per customer.
  2. Status changes are compare-and-swap on (item_id, expected status).
  3. ``priority``, ``created_at`` and identity fields never change after
     enqueue.

The database schema provides a matching unique partial index on
``provisioning_queue(customer_id) WHERE status NOT IN ('completed','failed')``
as a safety net for the Supabase implementation.
"""

from __future__ import annotations

import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Protocol

from .errors import (
    CredentialsAlreadyStored,
    DuplicateJob,
    QueueItemNotFound,
    StaleTransition,
)
from .records import QueueItem, StoredCredentials
from .scheduler import order_active, scheduling_key
from .state_machine import QueueStatus, validate_transition

# Fields a transition patch may touch. Everything else is immutable.
MUTABLE_FIELDS = frozenset(
    {'assigned_to', 'started_at', 'completed_at', 'failure_reason'}
)

DEFAULT_LIST_LIMIT = 50


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_patch(patch: Mapping[str, Any] | None) -> dict[str, Any]:
    """Reject patches that would touch immutable fields."""
    patch = dict(patch or {})
    illegal = set(patch) - MUTABLE_FIELDS
    if illegal:
        raise ValueError(
            f'transition patch may not modify: {", ".join(sorted(illegal))}'
        )
    return patch


# ── Store protocol ──────────────────────────────────────────────────


class QueueStore(Protocol):
    """Abstract storage for provisioning queue items.

    Implementations: InMemoryQueueStore (local/testing),
    SupabaseQueueStore (production).
    """

    async def enqueue(self, item: QueueItem) -> QueueItem:
        """Persist a new pending item. Raises DuplicateJob."""
        ...

    async def get(self, customer_id: str) -> QueueItem | None:
        """Return the customer's current item (active first, else newest)."""
        ...

    async def get_by_email(self, email: str) -> QueueItem | None:
        """Like ``get`` but keyed by contact email, case-insensitively."""
        ...

    async def get_item(self, item_id: str) -> QueueItem | None: ...

    async def list_active(self) -> list[QueueItem]:
        """Fresh snapshot of pending/in-progress items in scheduling order."""
        ...

    async def list_items(
        self,
        status: QueueStatus | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[QueueItem]: ...

    async def count_by_status(
        self, updated_since: datetime | None = None,
    ) -> dict[QueueStatus, int]: ...

    async def transition(
        self,
        item_id: str,
        from_status: QueueStatus,
        to_status: QueueStatus,
        patch: Mapping[str, Any] | None = None,
    ) -> QueueItem:
        """Compare-and-swap status update. Raises StaleTransition."""
        ...

    async def save_credentials(
        self, record: StoredCredentials,
    ) -> StoredCredentials:
        """Insert the credentials row. Raises CredentialsAlreadyStored."""
        ...

    async def get_credentials(
        self, queue_item_id: str,
    ) -> StoredCredentials | None: ...

    async def delete_credentials(self, queue_item_id: str) -> bool:
        """Remove credentials stored for an item; False if there were none."""
        ...


# ── In-memory implementation ────────────────────────────────────────


class InMemoryQueueStore:
    """In-memory queue store for local development and tests.

    Each mutating method runs check-and-write without an ``await`` in
    between, so on a single event loop it is atomic.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._items: dict[str, QueueItem] = {}
        self._credentials: dict[str, StoredCredentials] = {}
        self._clock = clock

    async def enqueue(self, item: QueueItem) -> QueueItem:
        active = self._active_for_customer(item.customer_id)
        if active is not None:
            raise DuplicateJob(item.customer_id, active.id)

        if not item.id:
            item = replace(item, id=f'q_{uuid.uuid4().hex[:12]}')
        self._items[item.id] = item
        return item

    async def get(self, customer_id: str) -> QueueItem | None:
        return self._current(lambda item: item.customer_id == customer_id)

    async def get_by_email(self, email: str) -> QueueItem | None:
        wanted = email.strip().lower()
        return self._current(
            lambda item: item.customer_email.strip().lower() == wanted,
        )

    async def get_item(self, item_id: str) -> QueueItem | None:
        return self._items.get(item_id)

    async def list_active(self) -> list[QueueItem]:
        return order_active(self._items.values())

    async def list_items(
        self,
        status: QueueStatus | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[QueueItem]:
        items = [
            item for item in self._items.values()
            if status is None or item.status is status
        ]
        items.sort(key=scheduling_key)
        return items[:limit]

    async def count_by_status(
        self, updated_since: datetime | None = None,
    ) -> dict[QueueStatus, int]:
        counts: dict[QueueStatus, int] = {}
        for item in self._items.values():
            if updated_since is not None and item.updated_at < updated_since:
                continue
            counts[item.status] = counts.get(item.status, 0) + 1
        return counts

    async def transition(
        self,
        item_id: str,
        from_status: QueueStatus,
        to_status: QueueStatus,
        patch: Mapping[str, Any] | None = None,
    ) -> QueueItem:
        validate_transition(from_status, to_status)
        changes = check_patch(patch)

        current = self._items.get(item_id)
        if current is None:
            raise QueueItemNotFound(item_id)
        if current.status is not from_status:
            raise StaleTransition(
                item_id, from_status.value, current.status.value,
            )

        updated = replace(
            current,
            status=to_status,
            updated_at=self._clock(),
            **changes,
        )
        self._items[item_id] = updated
        return updated

    async def save_credentials(
        self, record: StoredCredentials,
    ) -> StoredCredentials:
        if record.queue_item_id in self._credentials:
            raise CredentialsAlreadyStored(record.queue_item_id)
        self._credentials[record.queue_item_id] = record
        return record

    async def get_credentials(
        self, queue_item_id: str,
    ) -> StoredCredentials | None:
        return self._credentials.get(queue_item_id)

    async def delete_credentials(self, queue_item_id: str) -> bool:
        return self._credentials.pop(queue_item_id, None) is not None

    def _active_for_customer(self, customer_id: str) -> QueueItem | None:
        for item in self._items.values():
            if (
                item.customer_id == customer_id
                and not item.status.is_terminal
            ):
                return item
        return None

    def _current(
        self, matches: Callable[[QueueItem], bool],
    ) -> QueueItem | None:
        history = [item for item in self._items.values() if matches(item)]
        if not history:
            return None
        active = [item for item in history if not item.status.is_terminal]
        return max(active or history, key=lambda item: (item.created_at, item.id))
