"""HTTP middleware: request correlation, Prometheus metrics, access log.

Order in ``create_app`` (outermost first): request id, metrics, access log,
CORS. The request id is therefore set before anything else logs.
"""

from __future__ import annotations

import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .logging import get_logger, request_id_ctx
from .metrics import (
    HTTP_REQUEST_DURATION_SECONDS,
    HTTP_REQUESTS_IN_FLIGHT,
    HTTP_REQUESTS_TOTAL,
)

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9\-]{8,128}$")

# Customer ids in admin paths would explode label cardinality.
_ADMIN_ITEM_PATH = re.compile(r"^/api/v1/admin/queue/(?!stats$)[^/]+")

# Polled by probes and scrapers; logged at debug only.
_QUIET_PATHS = frozenset({"/health", "/metrics"})


def route_label(path: str) -> str:
    """Metric label for a request path."""
    return _ADMIN_ITEM_PATH.sub("/api/v1/admin/queue/{customer_id}", path)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Accept a well-formed ``X-Request-ID`` or mint one, echo it back."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        rid = request.headers.get(REQUEST_ID_HEADER, "")
        if not _VALID_REQUEST_ID.match(rid):
            rid = uuid.uuid4().hex

        request.state.request_id = rid
        token = request_id_ctx.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        response.headers[REQUEST_ID_HEADER] = rid
        return response


class MetricsMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        method = request.method
        route = route_label(request.url.path)
        status = "500"

        HTTP_REQUESTS_IN_FLIGHT.inc()
        started = time.perf_counter()
        try:
            response = await call_next(request)
            status = str(response.status_code)
            return response
        finally:
            HTTP_REQUESTS_IN_FLIGHT.dec()
            HTTP_REQUEST_DURATION_SECONDS.labels(
                method=method, path=route,
            ).observe(time.perf_counter() - started)
            HTTP_REQUESTS_TOTAL.labels(
                method=method, path=route, status=status,
            ).inc()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """One access-log entry per request.

    Admin calls also record the ``X-Operator-Id`` header, so a log search by
    operator lines up with the audit trail. 5xx answers log at error, 4xx at
    warning.
    """

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint,
    ) -> Response:
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = round((time.perf_counter() - started) * 1000, 2)

        fields = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": elapsed_ms,
        }
        operator = request.headers.get("x-operator-id")
        if operator:
            fields["operator_id"] = operator

        if request.url.path in _QUIET_PATHS:
            logger.debug("request_completed", **fields)
        elif response.status_code >= 500:
            logger.error("request_completed", **fields)
        elif response.status_code >= 400:
            logger.warning("request_completed", **fields)
        else:
            logger.info("request_completed", **fields)
        return response
