"""Domain errors for the provisioning queue.

Store and service methods raise these; route factories translate them into
JSON error payloads. Query-side lookups do not raise, they return typed
results from ``query_facade``.
"""

from __future__ import annotations


class ProvisioningError(Exception):
    """Base class for provisioning queue errors."""

    code = 'provisioning_error'


class DuplicateJob(ProvisioningError):
    """Raised when a customer already has a non-terminal queue item."""

    code = 'duplicate_job'

    def __init__(self, customer_id: str, active_item_id: str) -> None:
        self.customer_id = customer_id
        self.active_item_id = active_item_id
        super().__init__(
            f'customer {customer_id!r} already has active '
            f'queue item {active_item_id!r}'
        )


class QueueItemNotFound(ProvisioningError):
    """Raised when no queue item exists for the given key."""

    code = 'invalid_request'

    def __init__(self, key: str) -> None:
        self.key = key
        super().__init__(f'no queue item found for {key!r}')


class StaleTransition(ProvisioningError):
    """Raised when a compare-and-swap finds a different current status."""

    code = 'stale_transition'

    def __init__(
        self,
        item_id: str,
        expected: str,
        actual: str | None = None,
    ) -> None:
        self.item_id = item_id
        self.expected = expected
        self.actual = actual
        detail = f'queue item {item_id!r} is no longer {expected!r}'
        if actual is not None:
            detail += f' (now {actual!r})'
        super().__init__(detail)


class CredentialsAlreadyStored(StaleTransition):
    """Another submission already stored credentials for this queue item."""

    def __init__(self, item_id: str) -> None:
        super().__init__(item_id, 'without stored credentials')


class InvalidStateTransition(ProvisioningError, ValueError):
    """Raised for transitions not present in the state table."""

    code = 'invalid_transition'

    def __init__(self, from_state: str, to_state: str) -> None:
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f'invalid state transition: {from_state!r} -> {to_state!r}'
        )


class ConnectionFailed(ProvisioningError):
    """Credential verification could not reach or authenticate the backend.

    ``reason`` carries the upstream error text verbatim so the operator can
    correct the credentials and resubmit.
    """

    code = 'connection_failed'

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f'connection failed: {reason}')


class InvalidCredentials(ProvisioningError, ValueError):
    """Submitted credentials fail format validation."""

    code = 'invalid_credentials'

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        self.message = message
        super().__init__(f'{field}: {message}')


class StoreUnavailable(ProvisioningError):
    """The backing store could not be reached or answered with an error."""

    code = 'unavailable'

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f'queue store unavailable: {detail}')


class Unrecoverable(ProvisioningError):
    """Operator-declared failure that moves a job to ``failed``."""

    code = 'unrecoverable'

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)
