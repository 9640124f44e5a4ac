"""Prometheus metrics for the onboarding queue.

Usage::

    from onboarding_queue.app.observability.metrics import QUEUE_TRANSITIONS_TOTAL

    QUEUE_TRANSITIONS_TOTAL.labels(from_status="pending", to_status="in_progress").inc()
"""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ---------------------------------------------------------------------------
# HTTP request metrics
# ---------------------------------------------------------------------------

HTTP_REQUESTS_TOTAL = Counter(
    "http_server_requests_total",
    "Total HTTP requests by method, path pattern, and status code.",
    labelnames=["method", "path", "status"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_server_request_duration_seconds",
    "HTTP request latency in seconds.",
    labelnames=["method", "path"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
    registry=REGISTRY,
)

HTTP_REQUESTS_IN_FLIGHT = Gauge(
    "http_server_requests_in_flight",
    "Number of HTTP requests currently being processed.",
    registry=REGISTRY,
)

# ---------------------------------------------------------------------------
# Provisioning queue metrics
# ---------------------------------------------------------------------------

QUEUE_ENQUEUED_TOTAL = Counter(
    "onboarding_queue_enqueued_total",
    "Queue items created, by subscription plan.",
    labelnames=["plan_type"],
    registry=REGISTRY,
)

QUEUE_TRANSITIONS_TOTAL = Counter(
    "onboarding_queue_transitions_total",
    "Successful queue status transitions.",
    labelnames=["from_status", "to_status"],
    registry=REGISTRY,
)

QUEUE_STALE_TRANSITIONS_TOTAL = Counter(
    "onboarding_queue_stale_transitions_total",
    "Compare-and-swap transitions rejected because the item had moved.",
    registry=REGISTRY,
)

CREDENTIAL_VERIFICATIONS_TOTAL = Counter(
    "onboarding_queue_credential_verifications_total",
    "Backend connectivity probes by outcome.",
    labelnames=["outcome"],
    registry=REGISTRY,
)

NOTIFICATIONS_TOTAL = Counter(
    "onboarding_queue_notifications_total",
    "Customer/admin notifications by template and outcome.",
    labelnames=["template", "outcome"],
    registry=REGISTRY,
)


def render_latest() -> tuple[bytes, str]:
    """Return the exposition payload and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
