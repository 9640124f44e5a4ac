"""Public queue API: signup enqueue and waiting-room polling.

  POST /api/v1/queue                          -> enqueue a signed-up customer
  GET  /api/v1/queue/position?customer_id=... -> waiting-room status view
  GET  /api/v1/queue/status?email=...         -> status view plus account summary

The position endpoint is polled every 30 seconds by the waiting-room page.
It answers 404 for unknown customers and 503 when the store is down, so the
page can keep showing its last-known state instead of a false "ready".
The email lookup also answers 400 for a missing or malformed address.
"""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..provisioning.errors import DuplicateJob, StoreUnavailable
from ..provisioning.query_facade import InvalidRequest, QueryFacade, Unavailable
from ..provisioning.records import Customer, PlanType
from ..provisioning.service import ProvisioningService
from .errors import error_response, provisioning_error_response

# Poll interval hint for the waiting-room page.
POLL_INTERVAL_SECONDS = 30


# ── Request schemas ───────────────────────────────────────────────────


class EnqueueRequest(BaseModel):
    customer_id: str = Field(min_length=1)
    plan_type: PlanType
    email: str = ''
    company_name: str = ''
    contact_name: str = ''
    requested_features: list[str] = Field(default_factory=list)


# ── Route factory ─────────────────────────────────────────────────────


def create_queue_router(
    service: ProvisioningService,
    facade: QueryFacade,
) -> APIRouter:
    """Create the public queue router.

    Args:
        service: Provisioning service used for enqueue.
        facade: Read-only projection used by the waiting room.
    """
    router = APIRouter(tags=['queue'])

    @router.post('/api/v1/queue', status_code=201)
    async def enqueue(body: EnqueueRequest):
        customer = Customer(
            id=body.customer_id.strip(),
            plan_type=body.plan_type,
            email=body.email,
            company_name=body.company_name,
            contact_name=body.contact_name,
        )
        try:
            item = await service.enqueue(
                customer, requested_features=body.requested_features,
            )
        except (DuplicateJob, StoreUnavailable) as exc:
            return provisioning_error_response(exc)
        return item.to_public_dict()

    @router.get('/api/v1/queue/position')
    async def get_position(customer_id: str = ''):
        result = await facade.status_for(customer_id)
        if isinstance(result, InvalidRequest):
            return JSONResponse(status_code=404, content=result.to_dict())
        if isinstance(result, Unavailable):
            return error_response(
                503,
                'unavailable',
                result.reason,
                retry_after_seconds=POLL_INTERVAL_SECONDS,
            )
        return {
            **result.to_dict(),
            'poll_interval_seconds': POLL_INTERVAL_SECONDS,
        }

    @router.get('/api/v1/queue/status')
    async def get_status_by_email(email: str = ''):
        result = await facade.status_for_email(email)
        if isinstance(result, InvalidRequest):
            status_code = 400 if result.malformed else 404
            return JSONResponse(status_code=status_code, content=result.to_dict())
        if isinstance(result, Unavailable):
            return error_response(
                503,
                'unavailable',
                result.reason,
                retry_after_seconds=POLL_INTERVAL_SECONDS,
            )
        return {
            **result.to_dict(),
            'poll_interval_seconds': POLL_INTERVAL_SECONDS,
        }

    return router
