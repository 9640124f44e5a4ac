"""Fixtures for provisioning queue unit tests."""

from __future__ import annotations

import httpx
import pytest
from cryptography.fernet import Fernet

from onboarding_queue.app.audit import InMemoryAuditEmitter
from onboarding_queue.app.provisioning.credential_verifier import CredentialVerifier
from onboarding_queue.app.provisioning.notifications import InMemoryNotifier
from onboarding_queue.app.provisioning.queue_store import InMemoryQueueStore
from onboarding_queue.app.provisioning.service import ProvisioningService
from onboarding_queue.app.security.credential_cipher import CredentialCipher

from queue_factories import FakeClock, probe_ok


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryQueueStore(clock=clock)


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def audit():
    return InMemoryAuditEmitter()


@pytest.fixture
def cipher():
    return CredentialCipher(Fernet.generate_key())


@pytest.fixture
def build_service(store, notifier, audit, cipher, clock):
    """Factory: service whose verifier answers via the given handler."""

    def _build(handler=probe_ok, **kwargs) -> ProvisioningService:
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        verifier = CredentialVerifier(http_client=http_client, timeout_seconds=2)
        return ProvisioningService(
            store,
            verifier=verifier,
            cipher=cipher,
            audit=audit,
            notifier=notifier,
            clock=clock,
            **kwargs,
        )

    return _build
