"""Async PostgREST client for the queue database.

All queue-store and audit HTTP traffic goes through ``SupabaseClient``. It
speaks the service-role key, so it must only ever be constructed server-side.
"""

from __future__ import annotations

import json
from typing import Any, Mapping, Sequence

import httpx

from .errors import (
    SupabaseAuthError,
    SupabaseConflictError,
    SupabaseError,
    SupabaseNotFoundError,
)

Filters = Mapping[str, Any]

# Module-level shared client for connection pooling.
_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    """Test helper: forget the shared client (does not close it)."""
    global _shared_async_client
    _shared_async_client = None


def encode_filter_value(op: str, value: Any) -> str:
    """Render one PostgREST filter operand, e.g. ``in.("pending","failed")``."""
    if op == "is":
        if value is None:
            return "null"
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    if op == "in":
        if not isinstance(value, (list, tuple, set, frozenset)):
            raise ValueError("in operator requires an iterable of values")
        items = []
        for v in value:
            if isinstance(v, str):
                items.append(json.dumps(v))
            elif v is None:
                items.append("null")
            else:
                items.append(str(v))
        return f"({','.join(items)})"

    if value is None:
        raise ValueError(f"{op} does not support None; use op='is' with value=None")
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(getattr(value, "value", value))


def filters_to_params(filters: Filters | None) -> dict[str, str]:
    """``{"status": ("eq", "pending"), "id": "q_1"}`` -> PostgREST query params."""
    params: dict[str, str] = {}
    for column, spec in (filters or {}).items():
        if isinstance(spec, tuple) and len(spec) == 2:
            op, value = spec
        else:
            op, value = "eq", spec
        params[str(column)] = f"{op}.{encode_filter_value(str(op), value)}"
    return params


class SupabaseClient:
    """Minimal async PostgREST client (service role) returning plain rows."""

    def __init__(
        self,
        *,
        supabase_url: str,
        service_role_key: str,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        if not supabase_url:
            raise ValueError("supabase_url is required")
        if not service_role_key:
            raise ValueError("service_role_key is required")

        self._supabase_url = supabase_url.rstrip("/")
        self._service_role_key = service_role_key
        self._timeout_seconds = float(timeout_seconds)
        self._client = http_client or _get_shared_async_client()

    @property
    def base_rest_url(self) -> str:
        return f"{self._supabase_url}/rest/v1"

    def _headers(self, *, returning: bool = False) -> dict[str, str]:
        # Never log these headers.
        headers = {
            "apikey": self._service_role_key,
            "Authorization": f"Bearer {self._service_role_key}",
        }
        if returning:
            headers["Prefer"] = "return=representation"
        return headers

    def _raise_for_error(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return

        message = resp.text
        code = details = hint = None
        try:
            payload = resp.json()
            if isinstance(payload, dict):
                message = payload.get("message") or message
                code = payload.get("code")
                details = payload.get("details")
                hint = payload.get("hint")
        except ValueError:
            pass

        err_cls: type[SupabaseError]
        if resp.status_code in (401, 403):
            err_cls = SupabaseAuthError
        elif resp.status_code == 404:
            err_cls = SupabaseNotFoundError
        elif resp.status_code == 409:
            err_cls = SupabaseConflictError
        else:
            err_cls = SupabaseError

        raise err_cls(
            status_code=resp.status_code,
            message=message,
            code=code,
            details=details,
            hint=hint,
        )

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: dict[str, str] | None = None,
        json_body: Any = None,
        returning: bool = False,
    ) -> list[dict[str, Any]]:
        resp = await self._client.request(
            method,
            f"{self.base_rest_url}/{table}",
            params=params,
            json=json_body,
            headers=self._headers(returning=returning),
            timeout=self._timeout_seconds,
        )
        self._raise_for_error(resp)
        payload = resp.json()
        if not isinstance(payload, list):
            raise SupabaseError(
                status_code=500,
                message=f"expected list response from {method} {table}",
            )
        return payload

    async def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        columns: str = "*",
        limit: int | None = None,
        offset: int | None = None,
        order: str | None = None,
    ) -> list[dict[str, Any]]:
        params = filters_to_params(filters)
        params["select"] = columns
        if limit is not None:
            params["limit"] = str(int(limit))
        if offset:
            params["offset"] = str(int(offset))
        if order:
            params["order"] = order
        return await self._request("GET", table, params=params)

    async def insert(
        self, table: str, data: Mapping[str, Any] | Sequence[Mapping[str, Any]],
    ) -> list[dict[str, Any]]:
        return await self._request("POST", table, json_body=data, returning=True)

    async def update(
        self, table: str, filters: Filters, data: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        """PATCH rows matching ``filters``; returns the rows actually changed.

        An empty list means no row matched, which the queue store relies on
        for its compare-and-swap.
        """
        if not filters:
            raise ValueError("refusing to update without filters")
        return await self._request(
            "PATCH",
            table,
            params=filters_to_params(filters),
            json_body=dict(data),
            returning=True,
        )

    async def delete(
        self, table: str, filters: Filters,
    ) -> list[dict[str, Any]]:
        """DELETE rows matching ``filters``; returns the rows removed."""
        if not filters:
            raise ValueError("refusing to delete without filters")
        return await self._request(
            "DELETE",
            table,
            params=filters_to_params(filters),
            returning=True,
        )
