"""Admin-console API: operator actions on queue items.

  GET  /api/v1/admin/queue                                  -> listing
  GET  /api/v1/admin/queue/stats                            -> dashboard counts
  POST /api/v1/admin/test-connection                        -> probe only
  POST /api/v1/admin/queue/{customer_id}/claim              -> pending -> in_progress
  POST /api/v1/admin/queue/{customer_id}/credentials        -> verify + store
  POST /api/v1/admin/queue/{customer_id}/migration/start    -> migrating
  POST /api/v1/admin/queue/{customer_id}/migration/complete -> completed
  POST /api/v1/admin/queue/{customer_id}/fail               -> failed

All endpoints require the operator identity (bearer token + X-Operator-Id).
Stored credentials are never part of any response.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from ..provisioning.errors import ProvisioningError, Unrecoverable
from ..provisioning.query_facade import QueryFacade
from ..provisioning.queue_store import DEFAULT_LIST_LIMIT, QueueStore
from ..provisioning.records import CredentialSubmission
from ..provisioning.service import ProvisioningService
from ..provisioning.state_machine import parse_status
from ..security.operator_auth import OperatorIdentity, get_operator_identity
from .errors import error_response, provisioning_error_response

MAX_LIST_LIMIT = 200


# ── Request schemas ───────────────────────────────────────────────────


class TestConnectionRequest(BaseModel):
    project_url: str = ''
    service_role_key: str = ''


class CredentialsRequest(BaseModel):
    project_ref: str
    project_url: str
    anon_key: str
    service_role_key: str
    database_password: str | None = None
    region: str = 'us-east-1'
    admin_notes: str | None = None

    def to_submission(self) -> CredentialSubmission:
        return CredentialSubmission(
            project_ref=self.project_ref,
            project_url=self.project_url,
            anon_key=self.anon_key,
            service_role_key=self.service_role_key,
            database_password=self.database_password or None,
            region=self.region or 'us-east-1',
            admin_notes=self.admin_notes,
        )


class FailRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


# ── Route factory ─────────────────────────────────────────────────────


def create_admin_router(
    service: ProvisioningService,
    facade: QueryFacade,
    store: QueueStore,
) -> APIRouter:
    """Create the admin-console router.

    Args:
        service: Provisioning service driving every state change.
        facade: Read-only projection for dashboard stats.
        store: Queue store, used read-only for the listing.
    """
    router = APIRouter(tags=['admin'])

    @router.get('/api/v1/admin/queue')
    async def list_queue(
        status: str | None = None,
        limit: int = DEFAULT_LIST_LIMIT,
        operator: OperatorIdentity = Depends(get_operator_identity),
    ):
        """List queue items in scheduling order, optionally by status."""
        status_filter = None
        if status:
            try:
                status_filter = parse_status(status)
            except ValueError:
                return error_response(
                    400, 'invalid_request', f'unknown status {status!r}',
                )
        limit = max(1, min(limit, MAX_LIST_LIMIT))
        try:
            items = await store.list_items(status_filter, limit)
        except ProvisioningError as exc:
            return provisioning_error_response(exc)
        return {'items': [item.to_public_dict() for item in items]}

    @router.get('/api/v1/admin/queue/stats')
    async def queue_stats(
        operator: OperatorIdentity = Depends(get_operator_identity),
    ):
        try:
            stats = await facade.stats()
        except ProvisioningError as exc:
            return provisioning_error_response(exc)
        return stats.to_dict()

    @router.post('/api/v1/admin/test-connection')
    async def test_connection(
        body: TestConnectionRequest,
        operator: OperatorIdentity = Depends(get_operator_identity),
    ):
        """Probe the backend without touching any queue item."""
        if not body.project_url.strip() or not body.service_role_key.strip():
            return error_response(
                400,
                'invalid_request',
                'project_url and service_role_key are required',
            )
        result = await service.test_connection(
            body.project_url, body.service_role_key,
        )
        return result.to_dict()

    @router.post('/api/v1/admin/queue/{customer_id}/claim')
    async def claim(
        customer_id: str,
        operator: OperatorIdentity = Depends(get_operator_identity),
    ):
        try:
            item = await service.claim(
                customer_id, operator_id=operator.operator_id,
            )
        except ProvisioningError as exc:
            return provisioning_error_response(exc)
        return item.to_public_dict()

    @router.post('/api/v1/admin/queue/{customer_id}/credentials')
    async def submit_credentials(
        customer_id: str,
        body: CredentialsRequest,
        operator: OperatorIdentity = Depends(get_operator_identity),
    ):
        """Verify credentials live, then move the job to credentials_received.

        A failed probe answers 422 with the upstream ``reason`` and leaves the
        job where it was, so the operator can fix the values and resubmit.
        """
        try:
            item = await service.submit_credentials(
                customer_id,
                body.to_submission(),
                operator_id=operator.operator_id,
            )
        except ProvisioningError as exc:
            return provisioning_error_response(exc)
        return item.to_public_dict()

    @router.post('/api/v1/admin/queue/{customer_id}/migration/start')
    async def start_migration(
        customer_id: str,
        operator: OperatorIdentity = Depends(get_operator_identity),
    ):
        try:
            item = await service.start_migration(
                customer_id, operator_id=operator.operator_id,
            )
        except ProvisioningError as exc:
            return provisioning_error_response(exc)
        return item.to_public_dict()

    @router.post('/api/v1/admin/queue/{customer_id}/migration/complete')
    async def complete_migration(
        customer_id: str,
        operator: OperatorIdentity = Depends(get_operator_identity),
    ):
        try:
            item = await service.complete_migration(
                customer_id, operator_id=operator.operator_id,
            )
        except ProvisioningError as exc:
            return provisioning_error_response(exc)
        return item.to_public_dict()

    @router.post('/api/v1/admin/queue/{customer_id}/fail')
    async def fail(
        customer_id: str,
        body: FailRequest,
        operator: OperatorIdentity = Depends(get_operator_identity),
    ):
        try:
            item = await service.fail(
                customer_id,
                Unrecoverable(body.reason.strip()),
                operator_id=operator.operator_id,
            )
        except ProvisioningError as exc:
            return provisioning_error_response(exc)
        return item.to_public_dict()

    return router
