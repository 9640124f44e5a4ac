"""Live connectivity probe for operator-submitted backend credentials.

Before credentials enter the state machine the target backend must answer a
single read-only PostgREST request authenticated with the privileged key:

    GET {project_url}/rest/v1/{probe_table}?select=*&limit=1

A 2xx answer is success. So is PostgREST reporting that the probe table does
not exist: the request got through the gateway and was authorised, which is
all that needs proving. Anything else (network error, timeout, 401/403, other
non-2xx) is a failure carrying the upstream error text for the operator.

The probe never writes, so verifying the same credentials twice is safe.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx

from ..observability.logging import get_logger
from ..observability.metrics import CREDENTIAL_VERIFICATIONS_TOTAL
from .errors import InvalidCredentials
from .records import CredentialSubmission

logger = get_logger(__name__)

DEFAULT_PROBE_TABLE = '_test_connection'
DEFAULT_TIMEOUT_SECONDS = 8.0
DEFAULT_BACKEND_HOST_SUFFIX = '.supabase.co'

PROJECT_REF_LENGTH = 20
MIN_KEY_LENGTH = 30

# PostgREST/Postgres codes for "relation does not exist".
_MISSING_RELATION_CODES = frozenset({'42P01', 'PGRST205'})

# Module-level shared client for connection pooling.
_shared_async_client: httpx.AsyncClient | None = None


def _get_shared_async_client() -> httpx.AsyncClient:
    global _shared_async_client
    if _shared_async_client is None:
        _shared_async_client = httpx.AsyncClient()
    return _shared_async_client


def _reset_shared_async_client_for_tests() -> None:
    """Test helper: clear shared client cache (does not close the instance)."""
    global _shared_async_client
    _shared_async_client = None


@dataclass(frozen=True, slots=True)
class VerificationResult:
    ok: bool
    reason: str | None = None
    status_code: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {'ok': self.ok, 'reason': self.reason}


def validate_credentials(
    credentials: CredentialSubmission,
    *,
    host_suffix: str = DEFAULT_BACKEND_HOST_SUFFIX,
) -> None:
    """Format checks run before any network probe.

    Raises:
        InvalidCredentials: On the first field that fails.
    """
    if len(credentials.project_ref.strip()) != PROJECT_REF_LENGTH:
        raise InvalidCredentials(
            'project_ref',
            f'must be exactly {PROJECT_REF_LENGTH} characters',
        )

    url = credentials.project_url.strip()
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL:
        raise InvalidCredentials('project_url', 'is not a valid URL') from None
    if parsed.scheme not in ('http', 'https') or not parsed.host:
        raise InvalidCredentials('project_url', 'is not a valid URL')
    if host_suffix and not parsed.host.endswith(host_suffix):
        raise InvalidCredentials(
            'project_url', f'host must end with {host_suffix!r}',
        )

    if len(credentials.anon_key) < MIN_KEY_LENGTH:
        raise InvalidCredentials(
            'anon_key', f'must be at least {MIN_KEY_LENGTH} characters',
        )
    if len(credentials.service_role_key) < MIN_KEY_LENGTH:
        raise InvalidCredentials(
            'service_role_key',
            f'must be at least {MIN_KEY_LENGTH} characters',
        )


class CredentialVerifier:
    """Probe a backend with a privileged key under a strict timeout."""

    def __init__(
        self,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        probe_table: str = DEFAULT_PROBE_TABLE,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError('timeout_seconds must be > 0')
        self._client = http_client or _get_shared_async_client()
        self._timeout = float(timeout_seconds)
        self._probe_table = probe_table

    async def verify(self, url: str, privileged_key: str) -> VerificationResult:
        if not url or not url.strip():
            return self._failed('project_url is required')
        if not privileged_key or not privileged_key.strip():
            return self._failed('service_role_key is required')

        probe_url = f'{url.strip().rstrip("/")}/rest/v1/{self._probe_table}'
        headers = {
            # Never log these headers.
            'apikey': privileged_key,
            'Authorization': f'Bearer {privileged_key}',
        }

        try:
            resp = await self._client.request(
                'GET',
                probe_url,
                params={'select': '*', 'limit': '1'},
                headers=headers,
                timeout=self._timeout,
            )
        except httpx.TimeoutException:
            return self._failed(
                f'timed out after {self._timeout:g}s waiting for {url}',
            )
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            return self._failed(str(exc) or type(exc).__name__)

        if resp.status_code < 300:
            return self._ok(resp.status_code)

        message, code = _error_text(resp)
        if resp.status_code in (400, 404) and _is_missing_relation(message, code):
            return self._ok(resp.status_code)

        return self._failed(message, status_code=resp.status_code)

    def _ok(self, status_code: int) -> VerificationResult:
        CREDENTIAL_VERIFICATIONS_TOTAL.labels(outcome='ok').inc()
        logger.info('credential_probe_ok', status_code=status_code)
        return VerificationResult(ok=True, status_code=status_code)

    def _failed(
        self, reason: str, *, status_code: int | None = None,
    ) -> VerificationResult:
        CREDENTIAL_VERIFICATIONS_TOTAL.labels(outcome='failed').inc()
        logger.warning(
            'credential_probe_failed', reason=reason, status_code=status_code,
        )
        return VerificationResult(
            ok=False, reason=reason, status_code=status_code,
        )


def _error_text(resp: httpx.Response) -> tuple[str, str | None]:
    message = resp.text or f'HTTP {resp.status_code}'
    code = None
    try:
        payload = resp.json()
    except ValueError:
        return message, code
    if isinstance(payload, dict):
        message = (
            payload.get('message')
            or payload.get('msg')
            or payload.get('error')
            or message
        )
        code = payload.get('code')
    return str(message), (str(code) if code is not None else None)


def _is_missing_relation(message: str, code: str | None) -> bool:
    if code in _MISSING_RELATION_CODES:
        return True
    return 'does not exist' in message
