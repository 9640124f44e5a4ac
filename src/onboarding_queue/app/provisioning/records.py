"""Row-level records for the provisioning queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .state_machine import QueueStatus, parse_status


class PlanType(str, Enum):
    FREE = 'free'
    STANDARD = 'standard'
    PROFESSIONAL = 'professional'
    ENTERPRISE = 'enterprise'


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class Customer:
    """Signup record handed over by the signup collaborator. Read-only here."""

    id: str
    plan_type: PlanType
    email: str = ''
    company_name: str = ''
    contact_name: str = ''
    created_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True, slots=True)
class QueueItem:
    """One customer's provisioning job, aligned with provisioning_queue."""

    id: str
    customer_id: str
    status: QueueStatus
    priority: int
    plan_type: PlanType
    created_at: datetime
    updated_at: datetime
    customer_email: str = ''
    contact_name: str = ''
    company_name: str = ''
    requested_features: tuple[str, ...] = ()
    assigned_to: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    failure_reason: str | None = None

    def to_public_dict(self) -> dict[str, Any]:
        """Serialize for API responses. Never includes credentials."""
        return {
            'id': self.id,
            'customer_id': self.customer_id,
            'status': self.status.value,
            'priority': self.priority,
            'plan_type': self.plan_type.value,
            'requested_features': list(self.requested_features),
            'assigned_to': self.assigned_to,
            'failure_reason': self.failure_reason,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'started_at': _iso(self.started_at),
            'completed_at': _iso(self.completed_at),
        }

    def to_row(self) -> dict[str, Any]:
        row = self.to_public_dict()
        row.update(
            customer_email=self.customer_email,
            contact_name=self.contact_name,
            company_name=self.company_name,
        )
        return row

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> QueueItem:
        return cls(
            id=str(row['id']),
            customer_id=str(row['customer_id']),
            status=parse_status(row['status']),
            priority=int(row['priority']),
            plan_type=PlanType(row['plan_type']),
            created_at=_parse_dt(row['created_at']),
            updated_at=_parse_dt(row.get('updated_at') or row['created_at']),
            customer_email=row.get('customer_email') or '',
            contact_name=row.get('contact_name') or '',
            company_name=row.get('company_name') or '',
            requested_features=tuple(row.get('requested_features') or ()),
            assigned_to=row.get('assigned_to'),
            started_at=_parse_optional_dt(row.get('started_at')),
            completed_at=_parse_optional_dt(row.get('completed_at')),
            failure_reason=row.get('failure_reason'),
        )


@dataclass(frozen=True, slots=True)
class CredentialSubmission:
    """Backend credentials as typed by the operator (plaintext, transient)."""

    project_ref: str
    project_url: str
    anon_key: str
    service_role_key: str
    database_password: str | None = None
    region: str = 'us-east-1'
    admin_notes: str | None = None

    def __repr__(self) -> str:
        # Keys must never end up in logs or tracebacks.
        return (
            f'CredentialSubmission(project_ref={self.project_ref!r}, '
            f'project_url={self.project_url!r}, region={self.region!r})'
        )


@dataclass(frozen=True, slots=True)
class StoredCredentials:
    """Accepted credentials, secrets encrypted. Aligned with customer_backends."""

    queue_item_id: str
    customer_id: str
    project_ref: str
    project_url: str
    anon_key_encrypted: str
    service_role_key_encrypted: str
    region: str
    submitted_by: str
    submitted_at: datetime
    database_password_encrypted: str | None = None
    admin_notes: str | None = None

    def to_row(self) -> dict[str, Any]:
        return {
            'queue_item_id': self.queue_item_id,
            'customer_id': self.customer_id,
            'project_ref': self.project_ref,
            'project_url': self.project_url,
            'anon_key': self.anon_key_encrypted,
            'service_role_key': self.service_role_key_encrypted,
            'database_password': self.database_password_encrypted,
            'region': self.region,
            'admin_notes': self.admin_notes,
            'credentials_submitted_by': self.submitted_by,
            'credentials_submitted_at': self.submitted_at.isoformat(),
        }

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> StoredCredentials:
        return cls(
            queue_item_id=str(row['queue_item_id']),
            customer_id=str(row['customer_id']),
            project_ref=row['project_ref'],
            project_url=row['project_url'],
            anon_key_encrypted=row['anon_key'],
            service_role_key_encrypted=row['service_role_key'],
            database_password_encrypted=row.get('database_password'),
            region=row.get('region') or 'us-east-1',
            admin_notes=row.get('admin_notes'),
            submitted_by=row.get('credentials_submitted_by') or '',
            submitted_at=_parse_dt(row['credentials_submitted_at']),
        )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _parse_dt(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        return value
    # PostgREST emits a trailing 'Z' on some columns.
    return datetime.fromisoformat(value.replace('Z', '+00:00'))


def _parse_optional_dt(value: str | datetime | None) -> datetime | None:
    return _parse_dt(value) if value else None
