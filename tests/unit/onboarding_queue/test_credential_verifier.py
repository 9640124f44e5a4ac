"""Credential verifier: format validation and the live read-only probe."""

from __future__ import annotations

from typing import Any

import httpx
import pytest

from onboarding_queue.app.provisioning.credential_verifier import (
    CredentialVerifier,
    _reset_shared_async_client_for_tests,
    validate_credentials,
)
from onboarding_queue.app.provisioning.errors import InvalidCredentials

from queue_factories import PROJECT_URL, SERVICE_KEY, make_submission


def _verifier(handler, **kwargs) -> CredentialVerifier:
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return CredentialVerifier(http_client=http_client, **kwargs)


# ── Format validation ────────────────────────────────────────────────


class TestValidateCredentials:
    def test_valid_submission_passes(self):
        validate_credentials(make_submission())

    @pytest.mark.parametrize(
        ('overrides', 'field'),
        [
            ({'project_ref': 'short'}, 'project_ref'),
            ({'project_url': 'not a url'}, 'project_url'),
            ({'project_url': 'https://evil.example.com'}, 'project_url'),
            ({'anon_key': 'tiny'}, 'anon_key'),
            ({'service_role_key': 'tiny'}, 'service_role_key'),
        ],
    )
    def test_rejects_bad_field(self, overrides, field):
        with pytest.raises(InvalidCredentials) as exc_info:
            validate_credentials(make_submission(**overrides))
        assert exc_info.value.field == field

    def test_custom_host_suffix(self):
        submission = make_submission(project_url='https://db.internal.test')
        validate_credentials(submission, host_suffix='.internal.test')

    def test_repr_hides_secrets(self):
        text = repr(make_submission())
        assert SERVICE_KEY not in text
        assert 'db-password-123' not in text


# ── Live probe ───────────────────────────────────────────────────────


class TestVerify:
    @pytest.mark.asyncio
    async def test_probe_request_shape(self):
        seen: dict[str, Any] = {}

        async def handler(request: httpx.Request) -> httpx.Response:
            seen['method'] = request.method
            seen['url'] = str(request.url)
            seen['headers'] = dict(request.headers)
            return httpx.Response(200, json=[])

        result = await _verifier(handler).verify(PROJECT_URL + '/', SERVICE_KEY)

        assert result.ok is True
        assert result.reason is None
        assert seen['method'] == 'GET'
        assert seen['url'].startswith(f'{PROJECT_URL}/rest/v1/_test_connection?')
        assert 'limit=1' in seen['url']
        assert seen['headers']['apikey'] == SERVICE_KEY
        assert seen['headers']['authorization'] == f'Bearer {SERVICE_KEY}'

    @pytest.mark.asyncio
    async def test_missing_probe_table_counts_as_reachable(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                404,
                json={
                    'code': 'PGRST205',
                    'message': "Could not find the table 'public._test_connection'",
                },
            )

        result = await _verifier(handler).verify(PROJECT_URL, SERVICE_KEY)
        assert result.ok is True

    @pytest.mark.asyncio
    async def test_undefined_relation_message_counts_as_reachable(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={'message': 'relation "_test_connection" does not exist'},
            )

        result = await _verifier(handler).verify(PROJECT_URL, SERVICE_KEY)
        assert result.ok is True

    @pytest.mark.asyncio
    async def test_bad_key_reports_upstream_message(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={'message': 'Invalid API key'})

        result = await _verifier(handler).verify(PROJECT_URL, 'x' * 40)
        assert result.ok is False
        assert result.reason == 'Invalid API key'
        assert result.status_code == 401
        assert result.to_dict() == {'ok': False, 'reason': 'Invalid API key'}

    @pytest.mark.asyncio
    async def test_network_error_is_failure(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError('connection refused', request=request)

        result = await _verifier(handler).verify(PROJECT_URL, SERVICE_KEY)
        assert result.ok is False
        assert 'connection refused' in result.reason

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self):
        async def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout('read timed out', request=request)

        result = await _verifier(handler, timeout_seconds=1.5).verify(
            PROJECT_URL, SERVICE_KEY,
        )
        assert result.ok is False
        assert 'timed out after 1.5s' in result.reason

    @pytest.mark.asyncio
    async def test_blank_inputs_fail_without_network(self):
        calls: list[httpx.Request] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json=[])

        verifier = _verifier(handler)
        assert (await verifier.verify('', SERVICE_KEY)).ok is False
        assert (await verifier.verify(PROJECT_URL, '  ')).ok is False
        assert calls == []

    @pytest.mark.asyncio
    async def test_verification_is_idempotent(self):
        calls: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.method)
            return httpx.Response(200, json=[])

        verifier = _verifier(handler)
        first = await verifier.verify(PROJECT_URL, SERVICE_KEY)
        second = await verifier.verify(PROJECT_URL, SERVICE_KEY)
        assert first == second
        assert calls == ['GET', 'GET']

    def test_rejects_non_positive_timeout(self):
        with pytest.raises(ValueError):
            CredentialVerifier(timeout_seconds=0)

    def test_verifiers_share_one_pooled_client_until_reset(self):
        _reset_shared_async_client_for_tests()
        first = CredentialVerifier()
        assert CredentialVerifier()._client is first._client
        _reset_shared_async_client_for_tests()
        assert CredentialVerifier()._client is not first._client
        _reset_shared_async_client_for_tests()
