"""Queue ordering, position and wait-time estimation.

Everything here is a pure function of the snapshot passed in: no clock reads,
no randomness, so the same snapshot always yields the same answer.

The wait estimate is linear in the number of jobs ahead. It is a known
approximation of "typical setup time", not a guarantee.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from types import MappingProxyType
from typing import Iterable, Sequence

from .errors import QueueItemNotFound
from .records import PlanType, QueueItem
from .state_machine import QueueStatus, WAITING_STATES

DEFAULT_UNIT_PROCESSING_HOURS = 0.5

PLAN_PRIORITY = MappingProxyType(
    {
        PlanType.ENTERPRISE: 2,
        PlanType.PROFESSIONAL: 1,
        PlanType.STANDARD: 0,
        PlanType.FREE: 0,
    }
)


@dataclass(frozen=True, slots=True)
class QueuePosition:
    position: int
    ahead: int
    estimated_wait_hours: float


def priority_for_plan(plan_type: PlanType | str) -> int:
    return PLAN_PRIORITY[PlanType(plan_type)]


def scheduling_key(item: QueueItem) -> tuple[int, datetime, str]:
    """Total order: priority desc, then FIFO, then id as the final tie-break."""
    return (-item.priority, item.created_at, item.id)


def order_active(items: Iterable[QueueItem]) -> list[QueueItem]:
    """Waiting/in-progress items in scheduling order."""
    return sorted(
        (item for item in items if item.status in WAITING_STATES),
        key=scheduling_key,
    )


def estimate_wait_hours(
    ahead: int,
    unit_hours: float = DEFAULT_UNIT_PROCESSING_HOURS,
) -> float:
    if ahead < 0:
        raise ValueError('ahead must be >= 0')
    return ahead * unit_hours


def position_of(
    items: Sequence[QueueItem],
    target_id: str,
    *,
    unit_hours: float = DEFAULT_UNIT_PROCESSING_HOURS,
) -> QueuePosition:
    """Compute the waiting-line position of ``target_id`` within ``items``.

    Only ``pending`` items hold a place in line; anything else has left it
    and reports position 0. ``items`` need not be pre-sorted.

    Raises:
        QueueItemNotFound: If ``target_id`` is not in ``items``.
    """
    target = next((item for item in items if item.id == target_id), None)
    if target is None:
        raise QueueItemNotFound(target_id)

    if target.status is not QueueStatus.PENDING:
        return QueuePosition(position=0, ahead=0, estimated_wait_hours=0.0)

    target_key = scheduling_key(target)
    ahead = sum(
        1
        for item in items
        if item.status is QueueStatus.PENDING
        and scheduling_key(item) < target_key
    )
    return QueuePosition(
        position=ahead + 1,
        ahead=ahead,
        estimated_wait_hours=estimate_wait_hours(ahead, unit_hours),
    )


def format_wait_time(hours: float) -> str:
    """Human wording for a wait estimate, used in customer emails."""
    if hours < 1:
        return 'Less than 1 hour'
    if hours < 24:
        return f'{round(hours)} hours'
    return f'{round(hours / 24)} days'
