"""Audit logger — append-only writes and tenant-scoped queries over license_audits."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, Field
from sqlalchemy import func
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from licensing.core.database import store_call
from licensing.core.exceptions import MissingTenant
from licensing.models.audit_details import parse_details
from licensing.models.base import to_naive_utc, utcnow
from licensing.models.license import ModuleKey
from licensing.models.license_audit import (
    AuditEventType,
    AuditSeverity,
    LicenseAudit,
    severity_for,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000


class AuditLogFilter(BaseModel):
    """Filters for :meth:`AuditLogger.query_logs`. All set fields are ANDed."""

    tenant_id: str | None = None
    module_key: ModuleKey | None = None
    event_type: AuditEventType | None = None
    severity: AuditSeverity | None = None
    start_date: datetime | None = None  # inclusive
    end_date: datetime | None = None  # inclusive
    limit: int = Field(default=100, ge=1, le=MAX_PAGE_SIZE)
    skip: int = Field(default=0, ge=0)


class AuditStatistics(BaseModel):
    total_events: int
    by_event_type: dict[str, dict[str, int]]
    by_severity: dict[str, int]


class AuditLogger:
    """Writes ``LicenseAudit`` rows and answers filtered queries.

    Severity is derived from the event type; callers have no way to set it.
    Timestamps from a single logger are strictly increasing so that
    newest-first pagination is stable.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._timeout = timeout
        self._clock = clock
        self._last_timestamp: datetime | None = None

    # ── Writes ───────────────────────────────────────────────

    async def create_log(
        self,
        tenant_id: str,
        module_key: str,
        event_type: AuditEventType,
        details: BaseModel | dict[str, Any] | None = None,
    ) -> LicenseAudit:
        entry = self.build_entry(tenant_id, module_key, event_type, details)
        await store_call(self._insert(entry), timeout=self._timeout, operation="audit.insert")
        self.log_entry(entry)
        return entry

    def build_entry(
        self,
        tenant_id: str,
        module_key: str,
        event_type: AuditEventType,
        details: BaseModel | dict[str, Any] | None = None,
    ) -> LicenseAudit:
        """Validated, unsaved audit row.

        For callers that add the row to their own session so it commits
        together with the change it describes. Call :meth:`log_entry` once
        that commit succeeds.
        """
        if not tenant_id:
            raise MissingTenant()
        event_type = AuditEventType(event_type)
        payload = parse_details(event_type, details)

        return LicenseAudit(
            tenant_id=tenant_id,
            module_key=str(module_key),
            event_type=event_type,
            severity=severity_for(event_type),
            timestamp=self._next_timestamp(),
            details=json.dumps(payload.model_dump(mode="json", exclude_none=True)),
        )

    def log_entry(self, entry: LicenseAudit) -> None:
        log = logger.warning if entry.severity == AuditSeverity.CRITICAL else logger.debug
        log(
            "License audit %s [%s] tenant=%s module=%s",
            entry.event_type, entry.severity, entry.tenant_id, entry.module_key,
        )

    async def _insert(self, entry: LicenseAudit) -> None:
        async with self._session_factory() as session:
            session.add(entry)
            await session.commit()

    def _next_timestamp(self) -> datetime:
        now = self._clock()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    # ── Queries ──────────────────────────────────────────────

    async def query_logs(self, filters: AuditLogFilter) -> list[LicenseAudit]:
        """Newest-first page of audit rows for one tenant."""
        if not filters.tenant_id:
            raise MissingTenant()
        return await store_call(
            self._query(filters), timeout=self._timeout, operation="audit.query"
        )

    async def _query(self, filters: AuditLogFilter) -> list[LicenseAudit]:
        conditions = _conditions(
            filters.tenant_id,
            filters.start_date,
            filters.end_date,
        )
        if filters.module_key is not None:
            conditions.append(LicenseAudit.module_key == filters.module_key.value)
        if filters.event_type is not None:
            conditions.append(LicenseAudit.event_type == filters.event_type)
        if filters.severity is not None:
            conditions.append(LicenseAudit.severity == filters.severity)

        stmt = (
            select(LicenseAudit)
            .where(*conditions)
            .order_by(
                LicenseAudit.timestamp.desc(),  # type: ignore[union-attr]
                LicenseAudit.id.desc(),  # type: ignore[union-attr]
            )
            .offset(filters.skip)
            .limit(filters.limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_statistics(
        self,
        tenant_id: str,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
    ) -> AuditStatistics:
        """Event counts grouped by event type and severity."""
        if not tenant_id:
            raise MissingTenant()

        async def _run() -> AuditStatistics:
            stmt = (
                select(LicenseAudit.event_type, LicenseAudit.severity, func.count())
                .where(*_conditions(tenant_id, start_date, end_date))
                .group_by(LicenseAudit.event_type, LicenseAudit.severity)
            )
            async with self._session_factory() as session:
                rows = (await session.execute(stmt)).all()

            stats = AuditStatistics(
                total_events=0,
                by_event_type={},
                by_severity={s.value: 0 for s in AuditSeverity},
            )
            for event_type, severity, count in rows:
                stats.total_events += count
                stats.by_event_type.setdefault(str(event_type), {})[str(severity)] = count
                stats.by_severity[str(severity)] += count
            return stats

        return await store_call(_run(), timeout=self._timeout, operation="audit.statistics")

    async def get_recent_violations(self, tenant_id: str, limit: int = 50) -> list[LicenseAudit]:
        return await self.query_logs(
            AuditLogFilter(tenant_id=tenant_id, severity=AuditSeverity.CRITICAL, limit=limit)
        )

    async def get_module_audit_trail(
        self, tenant_id: str, module_key: ModuleKey, days: int = 30
    ) -> list[LicenseAudit]:
        return await self.query_logs(
            AuditLogFilter(
                tenant_id=tenant_id,
                module_key=module_key,
                start_date=self._clock() - timedelta(days=days),
                limit=MAX_PAGE_SIZE,
            )
        )


def _conditions(
    tenant_id: str | None,
    start_date: datetime | None,
    end_date: datetime | None,
) -> list:
    conditions = [LicenseAudit.tenant_id == tenant_id]
    if start_date is not None:
        conditions.append(LicenseAudit.timestamp >= to_naive_utc(start_date))
    if end_date is not None:
        conditions.append(LicenseAudit.timestamp <= to_naive_utc(end_date))
    return conditions
