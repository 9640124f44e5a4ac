"""Translate provisioning errors into JSON error responses.

Every error body has the shape ``{'error': <code>, 'detail': <text>}``, plus
error-specific extras (``reason`` for failed probes, ``field`` for format
errors, ``active_item_id`` for duplicates).
"""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

from ..provisioning.errors import (
    ConnectionFailed,
    DuplicateJob,
    InvalidCredentials,
    InvalidStateTransition,
    ProvisioningError,
    QueueItemNotFound,
    StaleTransition,
    StoreUnavailable,
)

_STATUS_CODES: tuple[tuple[type[ProvisioningError], int], ...] = (
    (DuplicateJob, 409),
    (QueueItemNotFound, 404),
    (StaleTransition, 409),
    (InvalidStateTransition, 409),
    (ConnectionFailed, 422),
    (InvalidCredentials, 400),
    (StoreUnavailable, 503),
)


def error_response(
    status_code: int, error: str, detail: str, **extra: Any,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={'error': error, 'detail': detail, **extra},
    )


def provisioning_error_response(exc: ProvisioningError) -> JSONResponse:
    status_code = 400
    for exc_type, code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            status_code = code
            break

    extra: dict[str, Any] = {}
    if isinstance(exc, ConnectionFailed):
        extra['reason'] = exc.reason
    elif isinstance(exc, InvalidCredentials):
        extra['field'] = exc.field
    elif isinstance(exc, DuplicateJob):
        extra['active_item_id'] = exc.active_item_id
    elif isinstance(exc, StaleTransition):
        extra['current_status'] = exc.actual
    return error_response(status_code, exc.code, str(exc), **extra)
