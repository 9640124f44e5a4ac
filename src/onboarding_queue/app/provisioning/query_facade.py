"""Read-only projection of queue state for the customer waiting room.

The waiting-room page polls ``status_for`` and renders a fixed five-step
progress model:

  1 account_created -> 2 queued -> 3 backend_creation -> 4 migration -> 5 ready

``status_for_email`` serves the same view to customers who look themselves up
by signup email, with a short account summary attached.

Lookups never raise to the poller. Unknown customers yield ``InvalidRequest``
and store outages yield ``Unavailable`` so the client can tell "still queued"
from "something is wrong" and keep showing its last-known state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Callable, Union

from ..observability.logging import get_logger
from .errors import StoreUnavailable
from .queue_store import QueueStore
from .records import QueueItem
from .scheduler import (
    DEFAULT_UNIT_PROCESSING_HOURS,
    QueuePosition,
    estimate_wait_hours,
    position_of,
)
from .state_machine import QueueStatus

logger = get_logger(__name__)

STEP_NAMES = (
    'account_created',
    'queued',
    'backend_creation',
    'migration',
    'ready',
)
STEP_COUNT = len(STEP_NAMES)

EMAIL_PATTERN = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')

STATUS_STEP_INDEX = MappingProxyType(
    {
        QueueStatus.PENDING: 2,
        QueueStatus.IN_PROGRESS: 3,
        QueueStatus.CREDENTIALS_RECEIVED: 3,
        QueueStatus.MIGRATING: 4,
        QueueStatus.COMPLETED: 5,
    }
)


@dataclass(frozen=True, slots=True)
class QueueStatusView:
    customer_id: str
    status: QueueStatus
    status_label: str
    step_index: int | None
    step_count: int
    position: int
    ahead: int
    estimated_wait_hours: float
    updated_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            'customer_id': self.customer_id,
            'status': self.status.value,
            'status_label': self.status_label,
            'step_index': self.step_index,
            'step_count': self.step_count,
            'position': self.position,
            'ahead_in_queue': self.ahead,
            'estimated_wait_hours': self.estimated_wait_hours,
            'updated_at': self.updated_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class CustomerStatusView:
    """Status view plus the account summary shown by the status lookup page."""

    queue: QueueStatusView
    email: str
    company_name: str
    contact_name: str
    created_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            **self.queue.to_dict(),
            'customer': {
                'email': self.email,
                'company_name': self.company_name,
                'contact_name': self.contact_name,
                'created_at': self.created_at.isoformat(),
            },
        }


@dataclass(frozen=True, slots=True)
class InvalidRequest:
    key: str
    reason: str
    # Rejected before any lookup, as opposed to "nothing found".
    malformed: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {'error': 'invalid_request', 'detail': self.reason}


@dataclass(frozen=True, slots=True)
class Unavailable:
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {'error': 'unavailable', 'detail': self.reason}


StatusResult = Union[QueueStatusView, InvalidRequest, Unavailable]
CustomerStatusResult = Union[CustomerStatusView, InvalidRequest, Unavailable]

_OUT_OF_LINE = QueuePosition(position=0, ahead=0, estimated_wait_hours=0.0)


@dataclass(frozen=True, slots=True)
class QueueStats:
    pending: int
    in_progress: int
    credentials_received: int
    migrating: int
    completed_today: int
    failed_today: int
    backlog_hours: float

    def to_dict(self) -> dict[str, Any]:
        return {
            'pending': self.pending,
            'in_progress': self.in_progress,
            'credentials_received': self.credentials_received,
            'migrating': self.migrating,
            'completed_today': self.completed_today,
            'failed_today': self.failed_today,
            'backlog_hours': self.backlog_hours,
        }


def status_label(status: QueueStatus) -> str:
    if status is QueueStatus.FAILED:
        return 'failed'
    return STEP_NAMES[STATUS_STEP_INDEX[status] - 1]


class ActiveSnapshotCache:
    """Caches the ordered active-item snapshot between writes.

    Writers call ``invalidate()`` synchronously after every enqueue and every
    successful transition; a stale position is a correctness bug. Only valid
    when this process is the sole writer (the in-memory store).
    """

    def __init__(self) -> None:
        self._snapshot: list[QueueItem] | None = None
        self._generation = 0

    def get(self) -> list[QueueItem] | None:
        return self._snapshot

    def put(self, snapshot: list[QueueItem], generation: int) -> None:
        # A write that landed while the snapshot was loading wins.
        if generation == self._generation:
            self._snapshot = snapshot

    @property
    def generation(self) -> int:
        return self._generation

    def invalidate(self) -> None:
        self._generation += 1
        self._snapshot = None


class QueryFacade:
    """Waiting-room status and admin stats, computed on demand."""

    def __init__(
        self,
        store: QueueStore,
        *,
        unit_hours: float = DEFAULT_UNIT_PROCESSING_HOURS,
        cache: ActiveSnapshotCache | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._unit_hours = unit_hours
        self._cache = cache
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def status_for(self, customer_id: str) -> StatusResult:
        if not customer_id or not customer_id.strip():
            return InvalidRequest(customer_id or '', 'customer_id is required')

        try:
            item = await self._store.get(customer_id)
            if item is None:
                return InvalidRequest(
                    customer_id,
                    f'no queue item found for customer {customer_id!r}',
                )
            return await self._view(item)
        except StoreUnavailable as exc:
            logger.warning(
                'queue_status_unavailable',
                customer_id=customer_id,
                detail=exc.detail,
            )
            return Unavailable('queue status is temporarily unavailable')

    async def status_for_email(self, email: str | None) -> CustomerStatusResult:
        """Status lookup by the contact email given at signup."""
        address = (email or '').strip().lower()
        if not address:
            return InvalidRequest(address, 'email is required', malformed=True)
        if not EMAIL_PATTERN.match(address):
            return InvalidRequest(address, 'invalid email format', malformed=True)

        try:
            item = await self._store.get_by_email(address)
            if item is None:
                return InvalidRequest(address, 'no account found for this email')
            view = await self._view(item)
        except StoreUnavailable as exc:
            # The address itself stays out of the log.
            logger.warning(
                'queue_status_unavailable', lookup='email', detail=exc.detail,
            )
            return Unavailable('queue status is temporarily unavailable')

        return CustomerStatusView(
            queue=view,
            email=item.customer_email,
            company_name=item.company_name,
            contact_name=item.contact_name,
            created_at=item.created_at,
        )

    async def stats(self) -> QueueStats:
        active = await self._active_snapshot()
        counts = await self._store.count_by_status()
        now = self._clock()
        midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
        today = await self._store.count_by_status(updated_since=midnight)
        pending = sum(1 for i in active if i.status is QueueStatus.PENDING)
        return QueueStats(
            pending=pending,
            in_progress=counts.get(QueueStatus.IN_PROGRESS, 0),
            credentials_received=counts.get(QueueStatus.CREDENTIALS_RECEIVED, 0),
            migrating=counts.get(QueueStatus.MIGRATING, 0),
            completed_today=today.get(QueueStatus.COMPLETED, 0),
            failed_today=today.get(QueueStatus.FAILED, 0),
            backlog_hours=estimate_wait_hours(pending, self._unit_hours),
        )

    async def _view(self, item: QueueItem) -> QueueStatusView:
        position = await self._position(item)
        if position is None:
            # Moved between the two reads; re-read both once.
            if self._cache is not None:
                self._cache.invalidate()
            item = await self._store.get(item.customer_id) or item
            position = await self._position(item) or _OUT_OF_LINE

        return QueueStatusView(
            customer_id=item.customer_id,
            status=item.status,
            status_label=status_label(item.status),
            step_index=STATUS_STEP_INDEX.get(item.status),
            step_count=STEP_COUNT,
            position=position.position,
            ahead=position.ahead,
            estimated_wait_hours=position.estimated_wait_hours,
            updated_at=item.updated_at,
        )

    async def _position(self, item: QueueItem) -> QueuePosition | None:
        """Position within the current snapshot, None if the item is absent."""
        if item.status is not QueueStatus.PENDING:
            return _OUT_OF_LINE

        snapshot = await self._active_snapshot()
        if not any(i.id == item.id for i in snapshot):
            return None
        return position_of(snapshot, item.id, unit_hours=self._unit_hours)

    async def _active_snapshot(self) -> list[QueueItem]:
        if self._cache is None:
            return await self._store.list_active()
        cached = self._cache.get()
        if cached is not None:
            return cached
        generation = self._cache.generation
        snapshot = await self._store.list_active()
        self._cache.put(snapshot, generation)
        return snapshot
