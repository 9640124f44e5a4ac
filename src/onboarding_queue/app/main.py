"""Provisioning queue FastAPI application factory.

The create_app() factory is the single entry point for building the ASGI
application. It wires observability middleware, CORS and the route
factories, and injects store/emitter implementations via dependency
injection.

Usage:
    # Local development (in-memory store, ephemeral encryption key)
    from onboarding_queue.app import create_app, QueueSettings
    app = create_app(QueueSettings())

    # Non-local (Supabase-backed stores built from the environment)
    app = create_production_app()

    # Testing (full DI control)
    app = create_app(settings, store=fake_store, notifier=recorder, ...)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from .audit import AuditEmitter, InMemoryAuditEmitter
from .observability import (
    MetricsMiddleware,
    RequestIdMiddleware,
    RequestLoggingMiddleware,
    configure_logging,
    get_logger,
)
from .observability.metrics import render_latest
from .provisioning.credential_verifier import CredentialVerifier
from .provisioning.notifications import InMemoryNotifier, Notifier, ResendNotifier
from .provisioning.query_facade import ActiveSnapshotCache, QueryFacade
from .provisioning.queue_store import InMemoryQueueStore, QueueStore
from .provisioning.service import ProvisioningService
from .routes import create_admin_router, create_queue_router
from .security.credential_cipher import CredentialCipher
from .settings import QueueSettings

logger = get_logger(__name__)


@dataclass(frozen=True)
class AppDependencies:
    """Container for injected stores and collaborators.

    Stored on ``app.state.deps`` so route handlers and tests can reach them.
    """

    store: QueueStore
    audit_emitter: AuditEmitter
    notifier: Notifier
    verifier: CredentialVerifier
    cipher: CredentialCipher
    cache: ActiveSnapshotCache | None = None


def _build_notifier(settings: QueueSettings) -> Notifier:
    if settings.notification_api_key:
        return ResendNotifier(
            api_key=settings.notification_api_key,
            sender=settings.notification_from,
        )
    return InMemoryNotifier()


def _build_cipher(settings: QueueSettings) -> CredentialCipher:
    if settings.credential_encryption_key:
        return CredentialCipher(settings.credential_encryption_key)
    # Local only: validate() rejects a missing key elsewhere.
    logger.warning('credential_cipher_ephemeral_key')
    return CredentialCipher.ephemeral()


# ── Factory ─────────────────────────────────────────────────────────


def create_app(
    settings: QueueSettings | None = None,
    *,
    store: QueueStore | None = None,
    audit_emitter: AuditEmitter | None = None,
    notifier: Notifier | None = None,
    verifier: CredentialVerifier | None = None,
    cipher: CredentialCipher | None = None,
) -> FastAPI:
    """Create a configured provisioning queue FastAPI application.

    Args:
        settings: Application settings. Defaults to local-dev settings.
        store, audit_emitter: Persistence overrides. When None, local mode
            uses in-memory implementations; non-local mode raises.
        notifier, verifier, cipher: Collaborator overrides. When None they
            are built from settings.

    Raises:
        ValueError: If settings validation fails, or a non-local
            environment has no store/audit emitter provided.
    """
    if settings is None:
        settings = QueueSettings()

    errors = settings.validate()
    if errors:
        raise ValueError(
            'Queue settings validation failed:\n'
            + '\n'.join(f'  - {e}' for e in errors)
        )

    cache: ActiveSnapshotCache | None = None
    if settings.is_local:
        if store is None:
            # Sole writer, so the active snapshot can be cached safely.
            store = InMemoryQueueStore()
            cache = ActiveSnapshotCache()
        audit_emitter = audit_emitter or InMemoryAuditEmitter()
    else:
        missing = [
            name for name, value in (
                ('store', store), ('audit_emitter', audit_emitter),
            )
            if value is None
        ]
        if missing:
            raise ValueError(
                f'Non-local environment ({settings.environment}) requires '
                f'stores to be explicitly provided. Missing: {", ".join(missing)}'
            )

    deps = AppDependencies(
        store=store,  # type: ignore[arg-type]
        audit_emitter=audit_emitter,  # type: ignore[arg-type]
        notifier=notifier or _build_notifier(settings),
        verifier=verifier or CredentialVerifier(
            timeout_seconds=settings.verify_timeout_seconds,
            probe_table=settings.probe_table,
        ),
        cipher=cipher or _build_cipher(settings),
        cache=cache,
    )

    service = ProvisioningService(
        deps.store,
        verifier=deps.verifier,
        cipher=deps.cipher,
        audit=deps.audit_emitter,
        notifier=deps.notifier,
        cache=deps.cache,
        unit_hours=settings.unit_processing_hours,
        admin_alert_email=settings.admin_alert_email,
        backend_host_suffix=settings.backend_host_suffix,
    )
    facade = QueryFacade(
        deps.store,
        unit_hours=settings.unit_processing_hours,
        cache=deps.cache,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(environment=settings.environment)
        logger.info('queue_startup', environment=settings.environment)
        yield
        logger.info('queue_shutdown')

    app = FastAPI(
        title='Onboarding Queue',
        description='Customer provisioning queue and admin console API',
        version='0.1.0',
        lifespan=lifespan,
    )

    app.state.deps = deps
    app.state.settings = settings
    app.state.service = service
    app.state.facade = facade

    # ── Middleware stack (last added runs first) ─────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=['*'],
        allow_headers=['*'],
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestIdMiddleware)

    # ── Routes ──────────────────────────────────────────────────

    @app.get('/health')
    async def health():
        return {
            'status': 'ok',
            'environment': settings.environment,
        }

    @app.get('/metrics', include_in_schema=False)
    async def metrics():
        body, content_type = render_latest()
        return Response(content=body, media_type=content_type)

    app.include_router(create_queue_router(service, facade))
    app.include_router(create_admin_router(service, facade, deps.store))

    return app


def create_production_app(settings: QueueSettings | None = None) -> FastAPI:
    """Build the app with Supabase-backed stores from environment settings."""
    from .db import SupabaseAuditEmitter, SupabaseClient, SupabaseQueueStore

    settings = settings or QueueSettings.from_env()
    if settings.is_local:
        return create_app(settings)
    client = SupabaseClient(
        supabase_url=settings.supabase_url,
        service_role_key=settings.supabase_service_role_key,
    )
    return create_app(
        settings,
        store=SupabaseQueueStore(client),
        audit_emitter=SupabaseAuditEmitter(client),
    )


# For uvicorn, use --factory flag:
#   uvicorn onboarding_queue.app.main:create_production_app --factory
# This avoids executing create_app() at import time.
