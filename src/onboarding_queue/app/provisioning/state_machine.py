"""Provisioning queue state machine.

Implements the customer provisioning flow:
  pending -> in_progress -> credentials_received -> migrating -> completed

And the error transition:
  any non-terminal state -> failed

``credentials_received`` may also be entered directly from ``pending`` when an
operator submits verified credentials without claiming the job first. There is
no retry edge out of ``failed``; a fresh queue item is enqueued instead.
"""

from __future__ import annotations

from enum import Enum
from types import MappingProxyType

from .errors import InvalidStateTransition


class QueueStatus(str, Enum):
    PENDING = 'pending'
    IN_PROGRESS = 'in_progress'
    CREDENTIALS_RECEIVED = 'credentials_received'
    MIGRATING = 'migrating'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({QueueStatus.COMPLETED, QueueStatus.FAILED})

# Items still in the waiting line or being worked on by an operator.
WAITING_STATES = frozenset({QueueStatus.PENDING, QueueStatus.IN_PROGRESS})

ACTIVE_STATES = frozenset(QueueStatus) - TERMINAL_STATES

# States from which credentials may be submitted.
CREDENTIAL_INTAKE_STATES = WAITING_STATES

ALLOWED_TRANSITIONS = MappingProxyType(
    {
        QueueStatus.PENDING: frozenset(
            {
                QueueStatus.IN_PROGRESS,
                QueueStatus.CREDENTIALS_RECEIVED,
                QueueStatus.FAILED,
            }
        ),
        QueueStatus.IN_PROGRESS: frozenset(
            {QueueStatus.CREDENTIALS_RECEIVED, QueueStatus.FAILED}
        ),
        QueueStatus.CREDENTIALS_RECEIVED: frozenset(
            {QueueStatus.MIGRATING, QueueStatus.FAILED}
        ),
        QueueStatus.MIGRATING: frozenset(
            {QueueStatus.COMPLETED, QueueStatus.FAILED}
        ),
        QueueStatus.COMPLETED: frozenset(),
        QueueStatus.FAILED: frozenset(),
    }
)


def parse_status(value: str | QueueStatus) -> QueueStatus:
    """Coerce a stored/raw status into ``QueueStatus``.

    Raises ``ValueError`` for unknown values so a corrupt row cannot silently
    become a legal state.
    """
    if isinstance(value, QueueStatus):
        return value
    try:
        return QueueStatus(value)
    except ValueError:
        raise ValueError(f'unknown queue status: {value!r}') from None


def can_transition(from_state: QueueStatus, to_state: QueueStatus) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(from_state, frozenset())


def validate_transition(
    from_state: str | QueueStatus,
    to_state: str | QueueStatus,
) -> tuple[QueueStatus, QueueStatus]:
    """Return the parsed pair or raise ``InvalidStateTransition``."""
    try:
        src = parse_status(from_state)
        dst = parse_status(to_state)
    except ValueError:
        raise InvalidStateTransition(str(from_state), str(to_state)) from None
    if not can_transition(src, dst):
        raise InvalidStateTransition(src.value, dst.value)
    return src, dst
