"""LicenseAudit model — append-only trail of license decisions and changes.

``tenant_id`` and ``module_key`` are stored by value (no foreign keys) so the
trail outlives the license it describes. Severity is never supplied by callers;
it is derived from the event type by :func:`severity_for`.
"""

import json
import uuid
from datetime import datetime
from enum import StrEnum
from typing import Any, assert_never

from sqlalchemy import Index, Text
from sqlmodel import Column, Field, SQLModel

from licensing.models.base import new_uuid, utcnow


class AuditEventType(StrEnum):
    VALIDATION_SUCCESS = "VALIDATION_SUCCESS"
    LICENSE_NOT_FOUND = "LICENSE_NOT_FOUND"
    LICENSE_EXPIRED = "LICENSE_EXPIRED"
    MODULE_DISABLED = "MODULE_DISABLED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"
    LIMIT_WARNING = "LIMIT_WARNING"
    USAGE_TRACKED = "USAGE_TRACKED"
    LICENSE_CREATED = "LICENSE_CREATED"
    LICENSE_UPDATED = "LICENSE_UPDATED"
    MODULE_ACTIVATED = "MODULE_ACTIVATED"
    MODULE_DEACTIVATED = "MODULE_DEACTIVATED"


class AuditSeverity(StrEnum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


def severity_for(event_type: AuditEventType) -> AuditSeverity:
    """Total mapping from event type to severity.

    Every denial or limit breach is critical. A type checker flags a missing
    branch through ``assert_never``.
    """
    match event_type:
        case (
            AuditEventType.LICENSE_NOT_FOUND
            | AuditEventType.LICENSE_EXPIRED
            | AuditEventType.MODULE_DISABLED
            | AuditEventType.LIMIT_EXCEEDED
        ):
            return AuditSeverity.CRITICAL
        case AuditEventType.LIMIT_WARNING | AuditEventType.MODULE_DEACTIVATED:
            return AuditSeverity.WARNING
        case (
            AuditEventType.VALIDATION_SUCCESS
            | AuditEventType.USAGE_TRACKED
            | AuditEventType.LICENSE_CREATED
            | AuditEventType.LICENSE_UPDATED
            | AuditEventType.MODULE_ACTIVATED
        ):
            return AuditSeverity.INFO
        case _:
            assert_never(event_type)


class LicenseAudit(SQLModel, table=True):
    __tablename__ = "license_audits"
    __table_args__ = (
        Index("ix_license_audits_tenant_timestamp", "tenant_id", "timestamp"),
        Index("ix_license_audits_tenant_module_timestamp", "tenant_id", "module_key", "timestamp"),
        Index("ix_license_audits_tenant_event_timestamp", "tenant_id", "event_type", "timestamp"),
    )

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: str = Field(max_length=64, nullable=False, index=True)
    module_key: str = Field(max_length=50, nullable=False, index=True)
    event_type: AuditEventType = Field(nullable=False, index=True)
    severity: AuditSeverity = Field(nullable=False, index=True)
    timestamp: datetime = Field(default_factory=utcnow, nullable=False, index=True)

    # Event-specific payload, JSON encoded (see licensing.models.audit_details)
    details: str = Field(default="{}", sa_column=Column(Text, nullable=False))

    def details_dict(self) -> dict[str, Any]:
        return json.loads(self.details) if self.details else {}


# ── Pydantic schemas ─────────────────────────────────────────

class LicenseAuditRead(SQLModel):
    id: uuid.UUID
    tenant_id: str
    module_key: str
    event_type: AuditEventType
    severity: AuditSeverity
    timestamp: datetime
    details: dict[str, Any]

    @classmethod
    def from_row(cls, row: LicenseAudit) -> "LicenseAuditRead":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            module_key=row.module_key,
            event_type=row.event_type,
            severity=row.severity,
            timestamp=row.timestamp,
            details=row.details_dict(),
        )
