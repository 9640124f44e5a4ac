"""Logging, metrics and request-correlation middleware."""

from .logging import configure_logging, get_logger, request_id_ctx
from .middleware import MetricsMiddleware, RequestIdMiddleware, RequestLoggingMiddleware

__all__ = [
    "MetricsMiddleware",
    "RequestIdMiddleware",
    "RequestLoggingMiddleware",
    "configure_logging",
    "get_logger",
    "request_id_ctx",
]
