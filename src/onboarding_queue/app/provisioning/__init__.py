"""Queue ordering, credential intake and provisioning state transitions."""

from .credential_verifier import (
    CredentialVerifier,
    VerificationResult,
    validate_credentials,
)
from .errors import (
    ConnectionFailed,
    DuplicateJob,
    InvalidCredentials,
    InvalidStateTransition,
    ProvisioningError,
    QueueItemNotFound,
    StaleTransition,
    StoreUnavailable,
    Unrecoverable,
)
from .query_facade import (
    ActiveSnapshotCache,
    InvalidRequest,
    QueryFacade,
    QueueStats,
    QueueStatusView,
    Unavailable,
)
from .queue_store import InMemoryQueueStore, QueueStore
from .records import CredentialSubmission, Customer, PlanType, QueueItem, StoredCredentials
from .scheduler import QueuePosition, format_wait_time, position_of, priority_for_plan
from .service import ProvisioningService
from .state_machine import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATES,
    QueueStatus,
    can_transition,
    validate_transition,
)

__all__ = [
    'ALLOWED_TRANSITIONS',
    'ActiveSnapshotCache',
    'ConnectionFailed',
    'CredentialSubmission',
    'CredentialVerifier',
    'Customer',
    'DuplicateJob',
    'InMemoryQueueStore',
    'InvalidCredentials',
    'InvalidRequest',
    'InvalidStateTransition',
    'PlanType',
    'ProvisioningError',
    'ProvisioningService',
    'QueryFacade',
    'QueueItem',
    'QueueItemNotFound',
    'QueuePosition',
    'QueueStats',
    'QueueStatus',
    'QueueStatusView',
    'QueueStore',
    'StaleTransition',
    'StoreUnavailable',
    'StoredCredentials',
    'TERMINAL_STATES',
    'Unavailable',
    'Unrecoverable',
    'VerificationResult',
    'can_transition',
    'format_wait_time',
    'position_of',
    'priority_for_plan',
    'validate_credentials',
]
