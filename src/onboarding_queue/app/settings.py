"""Provisioning queue configuration settings.

QueueSettings is the single configuration object accepted by create_app().
It is a plain dataclass so tests can inject config without touching
os.environ.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from .provisioning.credential_verifier import (
    DEFAULT_BACKEND_HOST_SUFFIX,
    DEFAULT_PROBE_TABLE,
    DEFAULT_TIMEOUT_SECONDS,
)
from .provisioning.scheduler import DEFAULT_UNIT_PROCESSING_HOURS

DEFAULT_CORS_ORIGINS = ("http://localhost:5173", "http://localhost:3000")
DEFAULT_NOTIFICATION_FROM = "Onboarding <onboarding@example.com>"


@dataclass(frozen=True, slots=True)
class QueueSettings:
    """Configuration for the provisioning queue FastAPI application.

    All fields have sensible defaults for local development.
    Non-local environments must supply real values for the Supabase
    connection, the credential encryption key and the admin API token.
    """

    # ── Environment ────────────────────────────────────────────────
    environment: str = "local"
    """One of: local, dev, staging, production."""

    # ── Supabase (queue database) ──────────────────────────────────
    supabase_url: str = ""
    """Queue database project URL (e.g. https://xyz.supabase.co)."""

    supabase_service_role_key: str = ""
    """Service-role key for PostgREST calls. Never log this."""

    # ── Secrets ────────────────────────────────────────────────────
    credential_encryption_key: str = ""
    """Fernet key for customer backend credentials at rest."""

    admin_api_token: str = ""
    """Bearer token required on admin routes."""

    # ── Scheduling / verification ──────────────────────────────────
    unit_processing_hours: float = DEFAULT_UNIT_PROCESSING_HOURS
    """Operator hours per waiting item, used for the linear ETA."""

    verify_timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    probe_table: str = DEFAULT_PROBE_TABLE
    backend_host_suffix: str = DEFAULT_BACKEND_HOST_SUFFIX

    # ── Notifications ──────────────────────────────────────────────
    notification_api_key: str = ""
    """Resend API key. Empty means notifications are recorded in memory."""

    notification_from: str = DEFAULT_NOTIFICATION_FROM
    admin_alert_email: str = ""

    # ── CORS ───────────────────────────────────────────────────────
    cors_origins: tuple[str, ...] = DEFAULT_CORS_ORIGINS

    @property
    def is_local(self) -> bool:
        return self.environment == "local"

    def validate(self) -> list[str]:
        """Return a list of configuration errors. Empty means valid."""
        errors: list[str] = []
        if self.unit_processing_hours <= 0:
            errors.append("unit_processing_hours must be positive")
        if self.verify_timeout_seconds <= 0:
            errors.append("verify_timeout_seconds must be positive")
        if not self.is_local:
            if not self.supabase_url:
                errors.append(f"{self.environment}: supabase_url is required")
            if not self.supabase_service_role_key:
                errors.append(
                    f"{self.environment}: supabase_service_role_key is required"
                )
            if not self.credential_encryption_key:
                errors.append(
                    f"{self.environment}: credential_encryption_key is required"
                )
            if not self.admin_api_token or len(self.admin_api_token) < 32:
                errors.append(
                    f"{self.environment}: admin_api_token must be >= 32 characters"
                )
        return errors

    @classmethod
    def from_env(cls, env: dict[str, str] | None = None) -> QueueSettings:
        """Build settings from environment variables.

        Tests should construct QueueSettings directly.
        """
        if env is None:
            env = dict(os.environ)

        cors_raw = env.get("CORS_ORIGINS", "")
        cors = (
            tuple(o.strip() for o in cors_raw.split(",") if o.strip())
            if cors_raw
            else DEFAULT_CORS_ORIGINS
        )

        return cls(
            environment=env.get("ENVIRONMENT", "local"),
            supabase_url=env.get("SUPABASE_URL", ""),
            supabase_service_role_key=env.get("SUPABASE_SERVICE_ROLE_KEY", ""),
            credential_encryption_key=env.get("CREDENTIAL_ENCRYPTION_KEY", ""),
            admin_api_token=env.get("ADMIN_API_TOKEN", ""),
            unit_processing_hours=float(
                env.get("UNIT_PROCESSING_HOURS", DEFAULT_UNIT_PROCESSING_HOURS)
            ),
            verify_timeout_seconds=float(
                env.get("VERIFY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
            ),
            probe_table=env.get("PROBE_TABLE", DEFAULT_PROBE_TABLE),
            backend_host_suffix=env.get(
                "BACKEND_HOST_SUFFIX", DEFAULT_BACKEND_HOST_SUFFIX,
            ),
            notification_api_key=env.get("RESEND_API_KEY", ""),
            notification_from=env.get("NOTIFICATION_FROM", DEFAULT_NOTIFICATION_FROM),
            admin_alert_email=env.get("ADMIN_ALERT_EMAIL", ""),
            cors_origins=cors,
        )
