"""License audit trail endpoints."""

from datetime import datetime

from fastapi import APIRouter, Query

from licensing.api.deps import Audit
from licensing.models.license import ModuleKey
from licensing.models.license_audit import AuditEventType, AuditSeverity, LicenseAuditRead
from licensing.services.audit_logger import MAX_PAGE_SIZE, AuditLogFilter, AuditStatistics

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/logs", response_model=list[LicenseAuditRead])
async def list_audit_logs(
    audit: Audit,
    tenant_id: str | None = None,
    module_key: ModuleKey | None = None,
    event_type: AuditEventType | None = None,
    severity: AuditSeverity | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    limit: int = Query(default=100, ge=1, le=MAX_PAGE_SIZE),
    skip: int = Query(default=0, ge=0),
) -> list[LicenseAuditRead]:
    """Newest-first audit rows for one tenant."""
    rows = await audit.query_logs(
        AuditLogFilter(
            tenant_id=tenant_id,
            module_key=module_key,
            event_type=event_type,
            severity=severity,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
            skip=skip,
        )
    )
    return [LicenseAuditRead.from_row(r) for r in rows]


@router.get("/statistics", response_model=AuditStatistics)
async def audit_statistics(
    audit: Audit,
    tenant_id: str,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> AuditStatistics:
    return await audit.get_statistics(tenant_id, start_date, end_date)


@router.get("/violations", response_model=list[LicenseAuditRead])
async def recent_violations(
    audit: Audit,
    tenant_id: str,
    limit: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
) -> list[LicenseAuditRead]:
    """Critical events (denials and limit breaches), newest first."""
    rows = await audit.get_recent_violations(tenant_id, limit)
    return [LicenseAuditRead.from_row(r) for r in rows]


@router.get("/modules/{module_key}", response_model=list[LicenseAuditRead])
async def module_audit_trail(
    audit: Audit,
    module_key: ModuleKey,
    tenant_id: str,
    days: int = Query(default=30, ge=1, le=366),
) -> list[LicenseAuditRead]:
    rows = await audit.get_module_audit_trail(tenant_id, module_key, days)
    return [LicenseAuditRead.from_row(r) for r in rows]
