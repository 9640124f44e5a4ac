"""Supabase-backed queue store.

Implements the ``QueueStore`` protocol against two PostgREST tables:

  provisioning_queue   one row per queue item
  customer_backends    encrypted backend credentials, keyed by queue_item_id

The one-active-item-per-customer rule is enforced by the partial unique index
``ux_provisioning_queue_active`` (customer_id WHERE status NOT IN
('completed','failed')); a 409 on insert maps to ``DuplicateJob``.
``customer_backends.queue_item_id`` is unique as well; a 409 there maps to
``CredentialsAlreadyStored``.

Status changes are a conditional PATCH filtered on both ``id`` and the
expected ``status``. PostgREST returns the changed rows, so an empty result
means another writer got there first.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, TypeVar

import httpx

from ..observability.logging import get_logger
from ..provisioning.errors import (
    CredentialsAlreadyStored,
    DuplicateJob,
    QueueItemNotFound,
    StaleTransition,
    StoreUnavailable,
)
from ..provisioning.queue_store import DEFAULT_LIST_LIMIT, check_patch
from ..provisioning.records import QueueItem, StoredCredentials
from ..provisioning.scheduler import order_active
from ..provisioning.state_machine import (
    TERMINAL_STATES,
    WAITING_STATES,
    QueueStatus,
    validate_transition,
)
from .errors import SupabaseConflictError, SupabaseError
from .supabase_client import SupabaseClient

logger = get_logger(__name__)

T = TypeVar("T")

QUEUE_TABLE = "provisioning_queue"
CREDENTIALS_TABLE = "customer_backends"

# Same ordering the scheduler uses, so pages line up with positions.
SCHEDULING_ORDER = "priority.desc,created_at.asc,id.asc"

PAGE_SIZE = 500

_NON_TERMINAL = sorted(s.value for s in QueueStatus if s not in TERMINAL_STATES)
_WAITING = sorted(s.value for s in WAITING_STATES)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _serialize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class SupabaseQueueStore:
    """Queue store backed by Supabase PostgREST.

    Every client failure surfaces as ``StoreUnavailable`` so callers never see
    transport or PostgREST types.
    """

    def __init__(
        self,
        client: SupabaseClient,
        *,
        page_size: int = PAGE_SIZE,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be positive")
        self._client = client
        self._page_size = page_size
        self._clock = clock

    async def enqueue(self, item: QueueItem) -> QueueItem:
        row = item.to_row()
        if not row.get("id"):
            row.pop("id", None)
        try:
            rows = await self._client.insert(QUEUE_TABLE, row)
        except SupabaseConflictError:
            active = await self._active_for_customer(item.customer_id)
            raise DuplicateJob(
                item.customer_id, active.id if active else "",
            ) from None
        except (SupabaseError, httpx.HTTPError) as exc:
            raise StoreUnavailable(f"enqueue: {exc}") from exc
        if not rows:
            raise StoreUnavailable("enqueue: insert returned no row")
        return QueueItem.from_row(rows[0])

    async def get(self, customer_id: str) -> QueueItem | None:
        active = await self._active_for_customer(customer_id)
        if active is not None:
            return active
        rows = await self._guard(
            self._client.select(
                QUEUE_TABLE,
                {"customer_id": customer_id},
                order="created_at.desc,id.desc",
                limit=1,
            ),
            "get",
        )
        return QueueItem.from_row(rows[0]) if rows else None

    async def get_by_email(self, email: str) -> QueueItem | None:
        """Emails are stored lowercased at enqueue, so an eq match suffices."""
        by_email = {"customer_email": email.strip().lower()}
        for filters in ({**by_email, "status": ("in", _NON_TERMINAL)}, by_email):
            rows = await self._guard(
                self._client.select(
                    QUEUE_TABLE,
                    filters,
                    order="created_at.desc,id.desc",
                    limit=1,
                ),
                "get_by_email",
            )
            if rows:
                return QueueItem.from_row(rows[0])
        return None

    async def get_item(self, item_id: str) -> QueueItem | None:
        rows = await self._guard(
            self._client.select(QUEUE_TABLE, {"id": item_id}, limit=1),
            "get_item",
        )
        return QueueItem.from_row(rows[0]) if rows else None

    async def list_active(self) -> list[QueueItem]:
        rows = await self._select_all(
            {"status": ("in", _WAITING)}, order=SCHEDULING_ORDER,
        )
        return order_active(QueueItem.from_row(row) for row in rows)

    async def list_items(
        self,
        status: QueueStatus | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
    ) -> list[QueueItem]:
        filters = {"status": status.value} if status is not None else None
        rows = await self._guard(
            self._client.select(
                QUEUE_TABLE, filters, order=SCHEDULING_ORDER, limit=limit,
            ),
            "list_items",
        )
        return [QueueItem.from_row(row) for row in rows]

    async def count_by_status(
        self, updated_since: datetime | None = None,
    ) -> dict[QueueStatus, int]:
        filters = None
        if updated_since is not None:
            filters = {"updated_at": ("gte", updated_since.isoformat())}
        rows = await self._select_all(filters, columns="status", order="id.asc")
        counts: dict[QueueStatus, int] = {}
        for row in rows:
            status = QueueStatus(row["status"])
            counts[status] = counts.get(status, 0) + 1
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

        data = {key: _serialize(value) for key, value in changes.items()}
        data["status"] = to_status.value
        data["updated_at"] = self._clock().isoformat()

        rows = await self._guard(
            self._client.update(
                QUEUE_TABLE,
                {"id": item_id, "status": from_status.value},
                data,
            ),
            "transition",
        )
        if rows:
            return QueueItem.from_row(rows[0])

        current = await self.get_item(item_id)
        if current is None:
            raise QueueItemNotFound(item_id)
        raise StaleTransition(item_id, from_status.value, current.status.value)

    async def save_credentials(
        self, record: StoredCredentials,
    ) -> StoredCredentials:
        try:
            rows = await self._client.insert(CREDENTIALS_TABLE, record.to_row())
        except SupabaseConflictError as exc:
            raise CredentialsAlreadyStored(record.queue_item_id) from exc
        except (SupabaseError, httpx.HTTPError) as exc:
            raise StoreUnavailable(f"save_credentials: {exc}") from exc
        return StoredCredentials.from_row(rows[0]) if rows else record

    async def get_credentials(
        self, queue_item_id: str,
    ) -> StoredCredentials | None:
        rows = await self._guard(
            self._client.select(
                CREDENTIALS_TABLE, {"queue_item_id": queue_item_id}, limit=1,
            ),
            "get_credentials",
        )
        return StoredCredentials.from_row(rows[0]) if rows else None

    async def delete_credentials(self, queue_item_id: str) -> bool:
        rows = await self._guard(
            self._client.delete(
                CREDENTIALS_TABLE, {"queue_item_id": queue_item_id},
            ),
            "delete_credentials",
        )
        return bool(rows)

    # ── Internal helpers ─────────────────────────────────────────────

    async def _active_for_customer(self, customer_id: str) -> QueueItem | None:
        rows = await self._guard(
            self._client.select(
                QUEUE_TABLE,
                {"customer_id": customer_id, "status": ("in", _NON_TERMINAL)},
                order="created_at.desc",
                limit=1,
            ),
            "get_active",
        )
        return QueueItem.from_row(rows[0]) if rows else None

    async def _select_all(
        self,
        filters: Mapping[str, Any] | None,
        *,
        columns: str = "*",
        order: str,
    ) -> list[dict[str, Any]]:
        rows: list[dict[str, Any]] = []
        offset = 0
        while True:
            page = await self._guard(
                self._client.select(
                    QUEUE_TABLE,
                    filters,
                    columns=columns,
                    order=order,
                    limit=self._page_size,
                    offset=offset,
                ),
                "select_all",
            )
            rows.extend(page)
            if len(page) < self._page_size:
                return rows
            offset += self._page_size

    @staticmethod
    async def _guard(call: Awaitable[T], operation: str) -> T:
        try:
            return await call
        except SupabaseError as exc:
            if exc.is_missing_relation:
                # Migrations not applied to this database.
                logger.error("queue_schema_missing", operation=operation, code=exc.code)
            elif exc.is_server_error:
                logger.warning(
                    "queue_store_server_error",
                    operation=operation,
                    status_code=exc.status_code,
                )
            raise StoreUnavailable(f"{operation}: {exc}") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "queue_store_unreachable",
                operation=operation,
                error_type=type(exc).__name__,
            )
            raise StoreUnavailable(f"{operation}: {exc}") from exc
