"""Notification builders and delivery back ends."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from onboarding_queue.app.provisioning.notifications import (
    InMemoryNotifier,
    Notification,
    ResendNotifier,
    admin_alert_notification,
    failed_notification,
    ready_notification,
    render_text,
    waiting_notification,
)
from onboarding_queue.app.provisioning.records import PlanType
from onboarding_queue.app.provisioning.scheduler import QueuePosition

from queue_factories import make_item


def _resend(handler) -> ResendNotifier:
    return ResendNotifier(
        api_key='re_test_key',
        sender='Onboarding <onboarding@example.com>',
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


class TestBuilders:
    def test_waiting_carries_position_and_wording(self):
        item = make_item('a')
        note = waiting_notification(
            item, QueuePosition(position=7, ahead=6, estimated_wait_hours=3.0),
        )
        assert note.to == 'a@example.com'
        assert note.data['queue_position'] == 7
        assert note.data['estimated_time'] == '3 hours'
        assert 'number 7 in line' in render_text(note)

    def test_admin_alert_priority_label(self):
        item = make_item('a', plan=PlanType.PROFESSIONAL)
        note = admin_alert_notification(
            item, QueuePosition(1, 0, 0.0), 'ops@example.com',
        )
        assert note.to == 'ops@example.com'
        assert note.data['priority'] == 'High'
        assert note.subject == 'New customer requires provisioning'

    def test_ready_and_failed_subjects(self):
        item = make_item('a')
        assert ready_notification(item).subject == 'Your account is ready!'
        assert 'cust_a' in render_text(failed_notification(item))


class TestInMemoryNotifier:
    @pytest.mark.asyncio
    async def test_records_and_skips_blank_recipient(self):
        notifier = InMemoryNotifier()
        assert await notifier.send(Notification('ready', 'x@example.com')) is True
        assert await notifier.send(Notification('ready', '')) is False
        assert len(notifier.sent) == 1


class TestResendNotifier:
    @pytest.mark.asyncio
    async def test_posts_email_payload(self):
        seen: dict[str, Any] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            seen['url'] = str(request.url)
            seen['auth'] = request.headers['authorization']
            seen['body'] = json.loads(request.content)
            return httpx.Response(200, json={'id': 'email_1'})

        sent = await _resend(handler).send(ready_notification(make_item('a')))

        assert sent is True
        assert seen['url'] == 'https://api.resend.com/emails'
        assert seen['auth'] == 'Bearer re_test_key'
        assert seen['body']['to'] == ['a@example.com']
        assert seen['body']['subject'] == 'Your account is ready!'

    @pytest.mark.asyncio
    async def test_upstream_failure_returns_false(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={'message': 'oops'})

        assert await _resend(handler).send(ready_notification(make_item('a'))) is False

    @pytest.mark.asyncio
    async def test_network_failure_returns_false(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError('refused', request=request)

        assert await _resend(handler).send(failed_notification(make_item('a'))) is False

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            ResendNotifier(api_key='', sender='x@example.com')
