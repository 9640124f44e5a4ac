"""Provisioning service: drives queue items through the state machine.

Every status change goes through the store's compare-and-swap, so two
operators acting on the same job cannot both win: the loser gets
``StaleTransition``. Side effects (cache invalidation, audit, notifications)
run only after a successful swap, which is what makes the "ready"
notification fire at most once per job.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping

from ..audit import AuditEmitter, AuditEvent
from ..observability.logging import get_logger, request_id_ctx
from ..observability.metrics import (
    QUEUE_ENQUEUED_TOTAL,
    QUEUE_STALE_TRANSITIONS_TOTAL,
    QUEUE_TRANSITIONS_TOTAL,
)
from ..security.credential_cipher import CredentialCipher
from .credential_verifier import (
    DEFAULT_BACKEND_HOST_SUFFIX,
    CredentialVerifier,
    VerificationResult,
    validate_credentials,
)
from .errors import (
    ConnectionFailed,
    CredentialsAlreadyStored,
    QueueItemNotFound,
    StaleTransition,
    StoreUnavailable,
    Unrecoverable,
)
from .notifications import (
    Notifier,
    admin_alert_notification,
    failed_notification,
    ready_notification,
    waiting_notification,
)
from .query_facade import ActiveSnapshotCache
from .queue_store import QueueStore
from .records import CredentialSubmission, Customer, QueueItem, StoredCredentials
from .scheduler import DEFAULT_UNIT_PROCESSING_HOURS, position_of, priority_for_plan
from .state_machine import CREDENTIAL_INTAKE_STATES, QueueStatus

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProvisioningService:
    """Enqueue, claim, credential intake and migration bookkeeping."""

    def __init__(
        self,
        store: QueueStore,
        *,
        verifier: CredentialVerifier,
        cipher: CredentialCipher,
        audit: AuditEmitter,
        notifier: Notifier,
        cache: ActiveSnapshotCache | None = None,
        unit_hours: float = DEFAULT_UNIT_PROCESSING_HOURS,
        admin_alert_email: str = '',
        backend_host_suffix: str = DEFAULT_BACKEND_HOST_SUFFIX,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._verifier = verifier
        self._cipher = cipher
        self._audit = audit
        self._notifier = notifier
        self._cache = cache
        self._unit_hours = unit_hours
        self._admin_alert_email = admin_alert_email
        self._host_suffix = backend_host_suffix
        self._clock = clock

    # ── Enqueue ──────────────────────────────────────────────────────

    async def enqueue(
        self,
        customer: Customer,
        *,
        requested_features: Iterable[str] = (),
    ) -> QueueItem:
        """Create the pending queue item for a freshly signed-up customer.

        Raises:
            DuplicateJob: If the customer already has a non-terminal item.
        """
        now = self._clock()
        item = QueueItem(
            id='',
            customer_id=customer.id,
            status=QueueStatus.PENDING,
            priority=priority_for_plan(customer.plan_type),
            plan_type=customer.plan_type,
            created_at=now,
            updated_at=now,
            customer_email=customer.email.strip().lower(),
            contact_name=customer.contact_name,
            company_name=customer.company_name,
            requested_features=tuple(requested_features),
        )
        created = await self._store.enqueue(item)
        self._invalidate()

        QUEUE_ENQUEUED_TOTAL.labels(plan_type=created.plan_type.value).inc()
        logger.info(
            'queue_item_enqueued',
            customer_id=created.customer_id,
            item_id=created.id,
            priority=created.priority,
        )
        await self._emit_audit(
            'queue_created',
            created,
            payload={
                'plan_type': created.plan_type.value,
                'features': list(created.requested_features),
            },
        )
        await self._announce_enqueue(created)
        return created

    # ── Operator actions ─────────────────────────────────────────────

    async def claim(self, customer_id: str, *, operator_id: str) -> QueueItem:
        """Operator begins work: ``pending -> in_progress``."""
        item = await self._require_item(customer_id)
        updated = await self._transition(
            item,
            expected=QueueStatus.PENDING,
            to_status=QueueStatus.IN_PROGRESS,
            patch={'assigned_to': operator_id, 'started_at': self._clock()},
        )
        await self._emit_audit('task_claimed', updated, actor_id=operator_id)
        return updated

    async def test_connection(
        self, project_url: str, service_role_key: str,
    ) -> VerificationResult:
        """Side-effect-free probe for the admin console's test button."""
        return await self._verifier.verify(project_url, service_role_key)

    async def submit_credentials(
        self,
        customer_id: str,
        submission: CredentialSubmission,
        *,
        operator_id: str,
    ) -> QueueItem:
        """Verify and accept backend credentials for a waiting job.

        Raises:
            InvalidCredentials: Format validation failed (no probe made).
            QueueItemNotFound: Unknown customer.
            StaleTransition: Item is past credential intake, or another
                operator moved it while the probe was running.
            ConnectionFailed: Probe failed; the item is left untouched.
            StoreUnavailable: Saving credentials failed (item untouched), or
                the status change could not be confirmed.
        """
        validate_credentials(submission, host_suffix=self._host_suffix)
        item = await self._require_item(customer_id)
        if item.status not in CREDENTIAL_INTAKE_STATES:
            QUEUE_STALE_TRANSITIONS_TOTAL.inc()
            raise StaleTransition(
                item.id, 'pending|in_progress', item.status.value,
            )

        result = await self._verifier.verify(
            submission.project_url, submission.service_role_key,
        )
        if not result.ok:
            logger.warning(
                'credentials_rejected',
                customer_id=customer_id,
                project_ref=submission.project_ref,
                reason=result.reason,
            )
            raise ConnectionFailed(result.reason or 'connection failed')

        now = self._clock()
        record = StoredCredentials(
            queue_item_id=item.id,
            customer_id=item.customer_id,
            project_ref=submission.project_ref.strip(),
            project_url=submission.project_url.strip().rstrip('/'),
            anon_key_encrypted=self._cipher.encrypt(submission.anon_key),
            service_role_key_encrypted=self._cipher.encrypt(
                submission.service_role_key,
            ),
            database_password_encrypted=self._cipher.encrypt_optional(
                submission.database_password,
            ),
            region=submission.region or 'us-east-1',
            admin_notes=submission.admin_notes,
            submitted_by=operator_id,
            submitted_at=now,
        )

        # Credentials land before the status flips, so a credentials_received
        # item always has a row to migrate from.
        try:
            await self._store.save_credentials(record)
        except CredentialsAlreadyStored:
            QUEUE_STALE_TRANSITIONS_TOTAL.inc()
            raise

        patch: dict[str, Any] = {}
        if item.status is QueueStatus.PENDING:
            patch = {'assigned_to': operator_id, 'started_at': now}
        try:
            updated = await self._transition(
                item,
                expected=item.status,
                to_status=QueueStatus.CREDENTIALS_RECEIVED,
                patch=patch,
            )
        except (StaleTransition, QueueItemNotFound):
            await self._discard_credentials(item)
            raise
        except StoreUnavailable:
            logger.error(
                'credentials_transition_unconfirmed',
                item_id=item.id,
                customer_id=item.customer_id,
            )
            raise

        await self._emit_audit(
            'credentials_submitted',
            updated,
            actor_id=operator_id,
            payload={
                'project_ref': submission.project_ref,
                'region': submission.region,
            },
        )
        return updated

    async def start_migration(
        self, customer_id: str, *, operator_id: str,
    ) -> QueueItem:
        """External migration started: ``credentials_received -> migrating``."""
        item = await self._require_item(customer_id)
        updated = await self._transition(
            item,
            expected=QueueStatus.CREDENTIALS_RECEIVED,
            to_status=QueueStatus.MIGRATING,
        )
        await self._emit_audit('migration_started', updated, actor_id=operator_id)
        return updated

    async def complete_migration(
        self, customer_id: str, *, operator_id: str,
    ) -> QueueItem:
        """Migration finished: ``migrating -> completed`` plus ready email.

        A retried call finds the item already completed and gets
        ``StaleTransition``, so the ready notification is never sent twice.
        """
        item = await self._require_item(customer_id)
        updated = await self._transition(
            item,
            expected=QueueStatus.MIGRATING,
            to_status=QueueStatus.COMPLETED,
            patch={'completed_at': self._clock()},
        )
        await self._emit_audit(
            'migration_completed',
            updated,
            actor_id=operator_id,
            payload={'features': list(updated.requested_features)},
        )
        await self._notifier.send(ready_notification(updated))
        return updated

    async def fail(
        self,
        customer_id: str,
        failure: Unrecoverable,
        *,
        operator_id: str,
    ) -> QueueItem:
        """Operator-declared unrecoverable error: any non-terminal -> failed.

        No automatic retry; work resumes only through a fresh enqueue.
        """
        item = await self._require_item(customer_id)
        if item.status.is_terminal:
            QUEUE_STALE_TRANSITIONS_TOTAL.inc()
            raise StaleTransition(item.id, 'non-terminal', item.status.value)

        updated = await self._transition(
            item,
            expected=item.status,
            to_status=QueueStatus.FAILED,
            patch={
                'failure_reason': failure.reason,
                'completed_at': self._clock(),
            },
        )
        await self._emit_audit(
            'migration_failed',
            updated,
            actor_id=operator_id,
            payload={'error': failure.reason, 'from_status': item.status.value},
        )
        await self._notifier.send(failed_notification(updated))
        return updated

    # ── Internal helpers ─────────────────────────────────────────────

    async def _require_item(self, customer_id: str) -> QueueItem:
        item = await self._store.get(customer_id)
        if item is None:
            raise QueueItemNotFound(customer_id)
        return item

    async def _discard_credentials(self, item: QueueItem) -> None:
        """Drop credentials saved by a submission that lost the swap.

        The caller re-raises the swap error either way; a failed delete
        leaves an orphan row keyed to an item that never reached
        credentials_received.
        """
        try:
            await self._store.delete_credentials(item.id)
        except StoreUnavailable:
            logger.exception(
                'credentials_discard_failed',
                item_id=item.id,
                customer_id=item.customer_id,
            )

    async def _transition(
        self,
        item: QueueItem,
        *,
        expected: QueueStatus,
        to_status: QueueStatus,
        patch: Mapping[str, Any] | None = None,
    ) -> QueueItem:
        try:
            updated = await self._store.transition(
                item.id, expected, to_status, patch,
            )
        except StaleTransition as exc:
            QUEUE_STALE_TRANSITIONS_TOTAL.inc()
            logger.info(
                'queue_transition_stale',
                item_id=item.id,
                expected=exc.expected,
                actual=exc.actual,
            )
            raise
        self._invalidate()

        QUEUE_TRANSITIONS_TOTAL.labels(
            from_status=expected.value, to_status=to_status.value,
        ).inc()
        logger.info(
            'queue_item_transitioned',
            item_id=updated.id,
            customer_id=updated.customer_id,
            from_status=expected.value,
            to_status=to_status.value,
        )
        return updated

    def _invalidate(self) -> None:
        if self._cache is not None:
            self._cache.invalidate()

    async def _announce_enqueue(self, item: QueueItem) -> None:
        try:
            snapshot = await self._store.list_active()
        except StoreUnavailable as exc:
            logger.warning(
                'enqueue_notification_skipped',
                customer_id=item.customer_id,
                detail=exc.detail,
            )
            return
        if not any(i.id == item.id for i in snapshot):
            return
        position = position_of(snapshot, item.id, unit_hours=self._unit_hours)
        await self._notifier.send(waiting_notification(item, position))
        if self._admin_alert_email:
            await self._notifier.send(
                admin_alert_notification(item, position, self._admin_alert_email),
            )

    async def _emit_audit(
        self,
        action: str,
        item: QueueItem,
        *,
        actor_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        await self._audit.emit(
            AuditEvent(
                customer_id=item.customer_id,
                action=action,
                actor_id=actor_id,
                request_id=request_id_ctx.get(),
                payload={'queue_item_id': item.id, **(payload or {})},
            )
        )
