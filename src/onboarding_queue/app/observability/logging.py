"""structlog setup for the onboarding queue.

Every entry carries the service name, the deployment environment and, inside
a request, the ``X-Request-ID`` value. Backend credentials pass through
several code paths (verifier, service, store), so a processor scrubs known
secret fields before anything is rendered.

    from onboarding_queue.app.observability.logging import get_logger

    logger = get_logger(__name__)
    logger.info("queue_item_enqueued", customer_id="cus_1", priority=2)

``configure_logging`` is called from the app lifespan. Until then structlog's
defaults apply, which is what the test suite runs with.
"""

from __future__ import annotations

import logging
import os
import sys
from contextvars import ContextVar
from typing import Any, MutableMapping

import structlog

SERVICE_NAME = "onboarding-queue"

# Field names whose values must never reach a log sink.
SECRET_FIELDS = frozenset({
    "anon_key",
    "service_role_key",
    "database_password",
    "authorization",
    "apikey",
    "credential_encryption_key",
    "admin_api_token",
    "notification_api_key",
})

request_id_ctx: ContextVar[str | None] = ContextVar("request_id", default=None)

_configured = False

EventDict = MutableMapping[str, Any]


def _add_request_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    rid = request_id_ctx.get()
    if rid is not None:
        event_dict.setdefault("request_id", rid)
    return event_dict


def _redact_secrets(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in list(event_dict):
        if key.lower() in SECRET_FIELDS and event_dict[key]:
            event_dict[key] = "[REDACTED]"
    return event_dict


def _service_context(environment: str):
    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("environment", environment)
        return event_dict

    return processor


def _use_json(environment: str, json_output: bool | None) -> bool:
    if json_output is not None:
        return json_output
    fmt = os.environ.get("LOG_FORMAT")
    if fmt:
        return fmt == "json"
    # Console output only for local development.
    return environment != "local"


def configure_logging(
    *,
    environment: str = "local",
    level: str | None = None,
    json_output: bool | None = None,
) -> None:
    """Route structlog and stdlib logging through one stdout handler.

    Args:
        environment: Deployment environment stamped on every entry.
        level: Level name; falls back to ``LOG_LEVEL``, then INFO.
        json_output: Force JSON (True) or console (False) rendering.
            Otherwise ``LOG_FORMAT`` decides, and without it every
            non-local environment logs JSON.

    Repeated calls are ignored.
    """
    global _configured
    if _configured:
        return
    _configured = True

    level_name = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    renderer = (
        structlog.processors.JSONRenderer()
        if _use_json(environment, json_output)
        else structlog.dev.ConsoleRenderer()
    )

    pre_chain = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_request_id,
        _service_context(environment),
        _redact_secrets,
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level_name, logging.INFO))

    # httpx logs every request URL at INFO, including Supabase query strings.
    for noisy in ("httpx", "httpcore", "uvicorn.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
