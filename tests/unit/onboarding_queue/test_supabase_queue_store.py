"""Supabase queue store and audit emitter against a mocked PostgREST."""

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest

from onboarding_queue.app.audit import AuditEvent
from onboarding_queue.app.db.audit_emitter import SupabaseAuditEmitter
from onboarding_queue.app.db.queue_repo import SupabaseQueueStore
from onboarding_queue.app.db.supabase_client import SupabaseClient
from onboarding_queue.app.provisioning.errors import (
    CredentialsAlreadyStored,
    DuplicateJob,
    InvalidStateTransition,
    QueueItemNotFound,
    StaleTransition,
    StoreUnavailable,
)
from onboarding_queue.app.provisioning.records import StoredCredentials
from onboarding_queue.app.provisioning.state_machine import QueueStatus

from queue_factories import T0, FakeClock, make_item


def _row(item_id: str, status: str = "pending", **extra: Any) -> dict[str, Any]:
    row = make_item(item_id).to_row()
    row["status"] = status
    row.update(extra)
    return row


def _store(handler, **kwargs) -> SupabaseQueueStore:
    client = SupabaseClient(
        supabase_url="https://queue.supabase.co",
        service_role_key="svc-key",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    return SupabaseQueueStore(client, clock=FakeClock(), **kwargs)


# ── Enqueue ──────────────────────────────────────────────────────────


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_inserts_row_without_blank_id(self):
        seen: dict[str, Any] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json=[_row("q_db_1")])

        item = await _store(handler).enqueue(make_item(""))
        assert item.id == "q_db_1"
        assert "id" not in seen["body"]
        assert seen["body"]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_unique_violation_is_duplicate_job(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                return httpx.Response(
                    409, json={"code": "23505", "message": "duplicate key"},
                )
            return httpx.Response(200, json=[_row("q_active")])

        with pytest.raises(DuplicateJob) as exc_info:
            await _store(handler).enqueue(make_item("q_new"))
        assert exc_info.value.active_item_id == "q_active"

    @pytest.mark.asyncio
    async def test_server_error_is_store_unavailable(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="upstream unavailable")

        with pytest.raises(StoreUnavailable):
            await _store(handler).enqueue(make_item("q_1"))


# ── Compare-and-swap ─────────────────────────────────────────────────


class TestTransition:
    @pytest.mark.asyncio
    async def test_patch_filters_on_id_and_expected_status(self):
        seen: dict[str, Any] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = request.url.params
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json=[_row("q_1", "in_progress", assigned_to="op_1")],
            )

        item = await _store(handler).transition(
            "q_1",
            QueueStatus.PENDING,
            QueueStatus.IN_PROGRESS,
            {"assigned_to": "op_1", "started_at": T0},
        )

        assert item.status is QueueStatus.IN_PROGRESS
        assert seen["params"]["id"] == "eq.q_1"
        assert seen["params"]["status"] == "eq.pending"
        assert seen["body"]["status"] == "in_progress"
        assert seen["body"]["started_at"] == T0.isoformat()
        assert seen["body"]["updated_at"] == T0.isoformat()

    @pytest.mark.asyncio
    async def test_no_matching_row_is_stale(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "PATCH":
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[_row("q_1", "in_progress")])

        with pytest.raises(StaleTransition) as exc_info:
            await _store(handler).transition(
                "q_1", QueueStatus.PENDING, QueueStatus.IN_PROGRESS,
            )
        assert exc_info.value.actual == "in_progress"

    @pytest.mark.asyncio
    async def test_no_row_at_all_is_not_found(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[])

        with pytest.raises(QueueItemNotFound):
            await _store(handler).transition(
                "q_x", QueueStatus.PENDING, QueueStatus.IN_PROGRESS,
            )

    @pytest.mark.asyncio
    async def test_illegal_edge_never_reaches_network(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with pytest.raises(InvalidStateTransition):
            await _store(handler).transition(
                "q_1", QueueStatus.PENDING, QueueStatus.COMPLETED,
            )

    @pytest.mark.asyncio
    async def test_transport_error_is_store_unavailable(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(StoreUnavailable):
            await _store(handler).transition(
                "q_1", QueueStatus.PENDING, QueueStatus.IN_PROGRESS,
            )


# ── Reads ────────────────────────────────────────────────────────────


class TestReads:
    @pytest.mark.asyncio
    async def test_list_active_pages_through_results(self):
        offsets: list[str | None] = []
        rows = [_row(f"q_{n}") for n in range(5)]

        async def handler(request: httpx.Request) -> httpx.Response:
            params = request.url.params
            offsets.append(params.get("offset"))
            start = int(params.get("offset", "0"))
            size = int(params["limit"])
            return httpx.Response(200, json=rows[start:start + size])

        items = await _store(handler, page_size=2).list_active()
        assert [i.id for i in items] == [f"q_{n}" for n in range(5)]
        assert offsets == [None, "2", "4"]

    @pytest.mark.asyncio
    async def test_list_active_requests_waiting_states_in_order(self):
        seen: dict[str, Any] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            seen["params"] = request.url.params
            return httpx.Response(200, json=[])

        await _store(handler).list_active()
        assert seen["params"]["status"] == 'in.("in_progress","pending")'
        assert seen["params"]["order"] == "priority.desc,created_at.asc,id.asc"

    @pytest.mark.asyncio
    async def test_get_falls_back_to_newest_item(self):
        calls: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            status_filter = request.url.params.get("status")
            calls.append(status_filter or "any")
            if status_filter:
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[_row("q_old", "completed")])

        item = await _store(handler).get("cust_q_old")
        assert item.status is QueueStatus.COMPLETED
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_get_by_email_matches_lowercased_address(self):
        seen: list[httpx.QueryParams] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.params)
            if request.url.params.get("status"):
                return httpx.Response(200, json=[])
            return httpx.Response(200, json=[_row("q_old", "failed")])

        item = await _store(handler).get_by_email(" Dana@Acme.IO ")
        assert item.id == "q_old"
        assert [p["customer_email"] for p in seen] == ["eq.dana@acme.io"] * 2
        assert seen[0]["status"].startswith("in.(")

    @pytest.mark.asyncio
    async def test_count_by_status(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["select"] == "status"
            assert request.url.params["updated_at"].startswith("gte.")
            return httpx.Response(
                200,
                json=[{"status": "pending"}, {"status": "pending"}, {"status": "failed"}],
            )

        counts = await _store(handler).count_by_status(updated_since=T0)
        assert counts == {QueueStatus.PENDING: 2, QueueStatus.FAILED: 1}

    @pytest.mark.asyncio
    async def test_read_error_is_store_unavailable(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "JWT expired"})

        with pytest.raises(StoreUnavailable, match="JWT expired"):
            await _store(handler).get_item("q_1")


# ── Credentials ──────────────────────────────────────────────────────


def _credentials() -> StoredCredentials:
    return StoredCredentials(
        queue_item_id="q_1",
        customer_id="cust_q_1",
        project_ref="abcdefghijklmnopqrst",
        project_url="https://abcdefghijklmnopqrst.supabase.co",
        anon_key_encrypted="enc-anon",
        service_role_key_encrypted="enc-service",
        region="us-east-1",
        submitted_by="op_1",
        submitted_at=T0,
    )


class TestCredentials:
    @pytest.mark.asyncio
    async def test_conflict_is_already_stored(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                409, json={"code": "23505", "message": "duplicate key"},
            )

        with pytest.raises(CredentialsAlreadyStored) as exc_info:
            await _store(handler).save_credentials(_credentials())
        assert isinstance(exc_info.value, StaleTransition)

    @pytest.mark.asyncio
    async def test_delete_filters_on_queue_item(self):
        seen: dict[str, Any] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["params"] = request.url.params
            seen["prefer"] = request.headers.get("prefer")
            return httpx.Response(200, json=[_credentials().to_row()])

        assert await _store(handler).delete_credentials("q_1") is True
        assert seen["method"] == "DELETE"
        assert seen["params"]["queue_item_id"] == "eq.q_1"
        assert seen["prefer"] == "return=representation"

    @pytest.mark.asyncio
    async def test_delete_of_missing_row_reports_false(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[])

        assert await _store(handler).delete_credentials("q_1") is False


# ── Audit emitter ────────────────────────────────────────────────────


class TestSupabaseAuditEmitter:
    @staticmethod
    def _emitter(handler) -> SupabaseAuditEmitter:
        return SupabaseAuditEmitter(
            SupabaseClient(
                supabase_url="https://queue.supabase.co",
                service_role_key="svc-key",
                http_client=httpx.AsyncClient(
                    transport=httpx.MockTransport(handler),
                ),
            )
        )

    @pytest.mark.asyncio
    async def test_writes_sanitized_row(self):
        seen: dict[str, Any] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json=[{"id": 1}])

        await self._emitter(handler).emit(
            AuditEvent(
                customer_id="cust_1",
                action="credentials_submitted",
                actor_id="op_1",
                payload={"project_ref": "abc", "service_role_key": "secret"},
            )
        )
        assert seen["path"] == "/rest/v1/provisioning_audit_log"
        assert seen["body"]["payload"]["service_role_key"] == "[REDACTED]"
        assert seen["body"]["payload"]["project_ref"] == "abc"

    @pytest.mark.asyncio
    async def test_failure_is_swallowed(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500, json={"message": "db down"})

        await self._emitter(handler).emit(
            AuditEvent(customer_id="cust_1", action="queue_created"),
        )
