"""In-memory queue store: single-active rule, CAS transitions, listings."""

from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from onboarding_queue.app.provisioning.errors import (
    CredentialsAlreadyStored,
    DuplicateJob,
    InvalidStateTransition,
    QueueItemNotFound,
    StaleTransition,
)
from onboarding_queue.app.provisioning.records import PlanType, StoredCredentials
from onboarding_queue.app.provisioning.state_machine import QueueStatus

from queue_factories import T0, make_item


# ── Enqueue ──────────────────────────────────────────────────────────


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_assigns_id_when_blank(self, store):
        item = await store.enqueue(make_item(''))
        assert item.id.startswith('q_')
        assert await store.get_item(item.id) == item

    @pytest.mark.asyncio
    async def test_second_active_item_rejected(self, store):
        first = await store.enqueue(make_item('a', customer_id='cust_1'))
        with pytest.raises(DuplicateJob) as exc_info:
            await store.enqueue(make_item('b', customer_id='cust_1'))
        assert exc_info.value.active_item_id == first.id

    @pytest.mark.asyncio
    async def test_re_enqueue_allowed_after_terminal(self, store):
        await store.enqueue(make_item('a', customer_id='cust_1'))
        await store.transition('a', QueueStatus.PENDING, QueueStatus.FAILED)
        again = await store.enqueue(
            make_item('b', customer_id='cust_1', created_offset=60),
        )
        assert again.status is QueueStatus.PENDING
        assert (await store.get('cust_1')).id == 'b'


class TestGet:
    @pytest.mark.asyncio
    async def test_unknown_customer(self, store):
        assert await store.get('nobody') is None

    @pytest.mark.asyncio
    async def test_returns_newest_terminal_when_no_active(self, store):
        await store.enqueue(make_item('a', customer_id='c'))
        await store.transition('a', QueueStatus.PENDING, QueueStatus.FAILED)
        await store.enqueue(make_item('b', customer_id='c', created_offset=5))
        await store.transition('b', QueueStatus.PENDING, QueueStatus.FAILED)
        assert (await store.get('c')).id == 'b'

    @pytest.mark.asyncio
    async def test_by_email_ignores_case_and_prefers_active(self, store):
        await store.enqueue(
            replace(make_item('a', customer_id='c'), customer_email='dana@acme.io'),
        )
        await store.transition('a', QueueStatus.PENDING, QueueStatus.FAILED)
        await store.enqueue(
            replace(
                make_item('b', customer_id='c', created_offset=-5),
                customer_email='dana@acme.io',
            ),
        )

        assert (await store.get_by_email('  Dana@ACME.io ')).id == 'b'
        assert await store.get_by_email('other@acme.io') is None


# ── Transitions ──────────────────────────────────────────────────────


class TestTransition:
    @pytest.mark.asyncio
    async def test_updates_status_and_bumps_updated_at(self, store, clock):
        await store.enqueue(make_item('a'))
        clock.advance(90)
        updated = await store.transition(
            'a',
            QueueStatus.PENDING,
            QueueStatus.IN_PROGRESS,
            {'assigned_to': 'op_1', 'started_at': clock()},
        )
        assert updated.status is QueueStatus.IN_PROGRESS
        assert updated.assigned_to == 'op_1'
        assert updated.updated_at == T0 + timedelta(seconds=90)
        assert updated.created_at == T0

    @pytest.mark.asyncio
    async def test_stale_expected_status(self, store):
        await store.enqueue(make_item('a'))
        await store.transition('a', QueueStatus.PENDING, QueueStatus.IN_PROGRESS)
        with pytest.raises(StaleTransition) as exc_info:
            await store.transition(
                'a', QueueStatus.PENDING, QueueStatus.IN_PROGRESS,
            )
        assert exc_info.value.actual == 'in_progress'

    @pytest.mark.asyncio
    async def test_illegal_edge_rejected_before_lookup(self, store):
        await store.enqueue(make_item('a'))
        with pytest.raises(InvalidStateTransition):
            await store.transition('a', QueueStatus.PENDING, QueueStatus.COMPLETED)
        assert (await store.get_item('a')).status is QueueStatus.PENDING

    @pytest.mark.asyncio
    async def test_unknown_item(self, store):
        with pytest.raises(QueueItemNotFound):
            await store.transition(
                'missing', QueueStatus.PENDING, QueueStatus.IN_PROGRESS,
            )

    @pytest.mark.asyncio
    async def test_patch_cannot_touch_immutable_fields(self, store):
        await store.enqueue(make_item('a'))
        with pytest.raises(ValueError, match='priority'):
            await store.transition(
                'a',
                QueueStatus.PENDING,
                QueueStatus.IN_PROGRESS,
                {'priority': 99},
            )

    @pytest.mark.asyncio
    async def test_concurrent_claims_have_one_winner(self, store):
        await store.enqueue(make_item('a'))

        async def claim(operator: str):
            return await store.transition(
                'a',
                QueueStatus.PENDING,
                QueueStatus.IN_PROGRESS,
                {'assigned_to': operator},
            )

        results = await asyncio.gather(
            *(claim(f'op_{n}') for n in range(5)),
            return_exceptions=True,
        )
        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, StaleTransition)]
        assert len(winners) == 1
        assert len(losers) == 4
        assert (await store.get_item('a')).assigned_to == winners[0].assigned_to


# ── Listings ─────────────────────────────────────────────────────────


class TestListings:
    @pytest.mark.asyncio
    async def test_list_active_in_scheduling_order(self, store):
        await store.enqueue(make_item('s', plan=PlanType.STANDARD, created_offset=0))
        await store.enqueue(make_item('e', plan=PlanType.ENTERPRISE, created_offset=9))
        await store.enqueue(make_item('m', created_offset=1))
        await store.transition('m', QueueStatus.PENDING, QueueStatus.FAILED)
        assert [i.id for i in await store.list_active()] == ['e', 's']

    @pytest.mark.asyncio
    async def test_list_items_filters_and_limits(self, store):
        for n in range(4):
            await store.enqueue(make_item(f'q{n}', created_offset=n))
        await store.transition('q0', QueueStatus.PENDING, QueueStatus.IN_PROGRESS)

        pending = await store.list_items(QueueStatus.PENDING)
        assert [i.id for i in pending] == ['q1', 'q2', 'q3']
        assert len(await store.list_items(limit=2)) == 2

    @pytest.mark.asyncio
    async def test_count_by_status_since(self, store, clock):
        await store.enqueue(make_item('a'))
        await store.enqueue(make_item('b', created_offset=1))
        clock.advance(3600)
        await store.transition('a', QueueStatus.PENDING, QueueStatus.FAILED)

        assert await store.count_by_status() == {
            QueueStatus.PENDING: 1,
            QueueStatus.FAILED: 1,
        }
        recent = await store.count_by_status(
            updated_since=T0 + timedelta(minutes=30),
        )
        assert recent == {QueueStatus.FAILED: 1}


class TestCredentials:
    @pytest.mark.asyncio
    async def test_stored_once(self, store):
        record = StoredCredentials(
            queue_item_id='a',
            customer_id='cust_a',
            project_ref='abcdefghijklmnopqrst',
            project_url='https://abcdefghijklmnopqrst.supabase.co',
            anon_key_encrypted='enc-anon',
            service_role_key_encrypted='enc-service',
            region='us-east-1',
            submitted_by='op_1',
            submitted_at=T0,
        )
        await store.save_credentials(record)
        assert await store.get_credentials('a') == record
        with pytest.raises(CredentialsAlreadyStored):
            await store.save_credentials(record)

        assert await store.delete_credentials('a') is True
        assert await store.get_credentials('a') is None
        assert await store.delete_credentials('a') is False
        await store.save_credentials(record)
