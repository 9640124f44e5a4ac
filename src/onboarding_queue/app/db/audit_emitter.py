"""Supabase-backed AuditEmitter.

Writes audit events to provisioning_audit_log via PostgREST. Emit is
fire-and-forget: a failed insert is logged and never fails the queue
operation that produced it.
"""

from __future__ import annotations

import httpx

from ..audit import AuditEvent
from ..observability.logging import get_logger
from .errors import SupabaseError
from .supabase_client import SupabaseClient

logger = get_logger(__name__)


class SupabaseAuditEmitter:
    """AuditEmitter backed by provisioning_audit_log."""

    TABLE = "provisioning_audit_log"

    def __init__(self, client: SupabaseClient) -> None:
        self._client = client

    async def emit(self, event: AuditEvent) -> None:
        try:
            await self._client.insert(self.TABLE, event.to_row())
        except (SupabaseError, httpx.HTTPError):
            logger.exception(
                "audit_emit_failed",
                action=event.action,
                customer_id=event.customer_id,
            )
