"""Operator identity for admin-console routes.

Admin routes require a shared bearer token (``ADMIN_API_TOKEN``) and an
``X-Operator-Id`` header naming the operator. The operator id is recorded on
claimed jobs and in the audit log. In the ``local`` environment with no token
configured, the bearer check is skipped.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import Header, HTTPException, Request

OPERATOR_HEADER = 'X-Operator-Id'


@dataclass(frozen=True, slots=True)
class OperatorIdentity:
    operator_id: str


async def get_operator_identity(
    request: Request,
    authorization: str | None = Header(default=None),
    x_operator_id: str | None = Header(default=None),
) -> OperatorIdentity:
    """FastAPI dependency resolving the calling operator.

    Raises:
        HTTPException(401): Missing/incorrect bearer token.
        HTTPException(400): Missing operator id header.
    """
    settings = request.app.state.settings
    expected = settings.admin_api_token

    if expected or not settings.is_local:
        presented = ''
        if authorization and authorization.lower().startswith('bearer '):
            presented = authorization[7:].strip()
        if not expected or not hmac.compare_digest(
            presented.encode(), expected.encode(),
        ):
            raise HTTPException(
                status_code=401,
                detail={
                    'error': 'auth_required',
                    'detail': 'Operator authentication required',
                },
                headers={'WWW-Authenticate': 'Bearer realm="onboarding-queue"'},
            )

    if not x_operator_id or not x_operator_id.strip():
        raise HTTPException(
            status_code=400,
            detail={
                'error': 'operator_required',
                'detail': f'{OPERATOR_HEADER} header is required',
            },
        )
    return OperatorIdentity(operator_id=x_operator_id.strip())
