"""Customer and operator notifications triggered by queue events.

Four templates:
  waiting      -- customer enqueued, with position and wait estimate
  admin_alert  -- operators told a new customer needs provisioning
  ready        -- backend ready (sent only by the completed transition)
  failed       -- setup failed, customer asked to contact support

Delivery is best effort: a failed send is logged and counted, never raised,
and never changes queue state.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Protocol

import httpx

from ..observability.logging import get_logger
from ..observability.metrics import NOTIFICATIONS_TOTAL
from .records import QueueItem
from .scheduler import QueuePosition, format_wait_time

logger = get_logger(__name__)

RESEND_API_URL = 'https://api.resend.com/emails'

SUBJECTS = MappingProxyType(
    {
        'waiting': 'Your account - initialization started',
        'admin_alert': 'New customer requires provisioning',
        'ready': 'Your account is ready!',
        'failed': 'Action required: account setup issue',
    }
)

PRIORITY_LABELS = MappingProxyType({2: 'Urgent', 1: 'High', 0: 'Normal'})


@dataclass(frozen=True, slots=True)
class Notification:
    template: str
    to: str
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        return SUBJECTS[self.template]


# ── Message builders ────────────────────────────────────────────────


def waiting_notification(item: QueueItem, position: QueuePosition) -> Notification:
    return Notification(
        template='waiting',
        to=item.customer_email,
        data={
            'customer_name': item.contact_name,
            'customer_id': item.customer_id,
            'queue_position': position.position,
            'ahead_in_queue': position.ahead,
            'estimated_time': format_wait_time(position.estimated_wait_hours),
            'plan': item.plan_type.value,
        },
    )


def admin_alert_notification(
    item: QueueItem, position: QueuePosition, admin_email: str,
) -> Notification:
    return Notification(
        template='admin_alert',
        to=admin_email,
        data={
            'company_name': item.company_name,
            'contact_name': item.contact_name,
            'customer_email': item.customer_email,
            'plan': item.plan_type.value,
            'priority': PRIORITY_LABELS.get(item.priority, 'Normal'),
            'queue_position': position.position,
            'features': list(item.requested_features),
        },
    )


def ready_notification(item: QueueItem) -> Notification:
    return Notification(
        template='ready',
        to=item.customer_email,
        data={
            'customer_name': item.contact_name,
            'customer_id': item.customer_id,
            'features': list(item.requested_features),
        },
    )


def failed_notification(item: QueueItem) -> Notification:
    return Notification(
        template='failed',
        to=item.customer_email,
        data={
            'customer_name': item.contact_name,
            'customer_id': item.customer_id,
        },
    )


# ── Notifier protocol ───────────────────────────────────────────────


class Notifier(Protocol):
    """Delivers notifications. Must not raise."""

    async def send(self, notification: Notification) -> bool: ...


class InMemoryNotifier:
    """Records notifications instead of sending them."""

    def __init__(self) -> None:
        self._sent: list[Notification] = []

    async def send(self, notification: Notification) -> bool:
        if not notification.to:
            _record(notification, 'skipped')
            return False
        self._sent.append(notification)
        _record(notification, 'sent')
        return True

    @property
    def sent(self) -> list[Notification]:
        return list(self._sent)

    def sent_with_template(self, template: str) -> list[Notification]:
        return [n for n in self._sent if n.template == template]


class ResendNotifier:
    """Sends notifications through the Resend email API."""

    def __init__(
        self,
        *,
        api_key: str,
        sender: str,
        http_client: httpx.AsyncClient | None = None,
        api_url: str = RESEND_API_URL,
        timeout_seconds: float = 10.0,
    ) -> None:
        if not api_key:
            raise ValueError('api_key is required')
        if not sender:
            raise ValueError('sender is required')
        self._api_key = api_key
        self._sender = sender
        self._client = http_client or httpx.AsyncClient()
        self._api_url = api_url
        self._timeout = float(timeout_seconds)

    async def send(self, notification: Notification) -> bool:
        if not notification.to:
            _record(notification, 'skipped')
            return False
        try:
            resp = await self._client.post(
                self._api_url,
                json={
                    'from': self._sender,
                    'to': [notification.to],
                    'subject': notification.subject,
                    'text': render_text(notification),
                    'tags': [{'name': 'template', 'value': notification.template}],
                },
                headers={'Authorization': f'Bearer {self._api_key}'},
                timeout=self._timeout,
            )
            resp.raise_for_status()
        except httpx.HTTPError:
            logger.exception(
                'notification_send_failed', template=notification.template,
            )
            _record(notification, 'failed')
            return False
        _record(notification, 'sent')
        return True


def render_text(notification: Notification) -> str:
    data = notification.data
    name = data.get('customer_name') or 'there'
    if notification.template == 'waiting':
        return (
            f'Hi {name},\n\n'
            f'Your backend is queued for setup. You are number '
            f'{data["queue_position"]} in line; estimated wait: '
            f'{data["estimated_time"]}.\n'
        )
    if notification.template == 'ready':
        return f'Hi {name},\n\nYour dedicated backend is ready to use.\n'
    if notification.template == 'failed':
        return (
            f'Hi {name},\n\nWe hit a problem setting up your backend. '
            f'Please contact support and quote {data["customer_id"]}.\n'
        )
    return '\n'.join(f'{key}: {value}' for key, value in sorted(data.items()))


def _record(notification: Notification, outcome: str) -> None:
    NOTIFICATIONS_TOTAL.labels(
        template=notification.template, outcome=outcome,
    ).inc()
    logger.info(
        'notification_' + outcome, template=notification.template,
    )
