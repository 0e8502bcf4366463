"""Tests for audit writes and tenant-scoped queries."""

import itertools
from datetime import timedelta

import pytest

from licensing.core.exceptions import MissingTenant
from licensing.models.license import ModuleKey
from licensing.models.license_audit import AuditEventType, AuditSeverity
from licensing.services.audit_logger import AuditLogFilter

LIMIT = {"limit_type": "employees", "current_value": 10, "limit_value": 10}
DENIED = {"reason": "No license found for tenant"}


async def _populate(audit, clock) -> None:
    """Interleave events from tenants A and B across modules and days."""
    plan = [
        ("A", ModuleKey.PAYROLL, AuditEventType.VALIDATION_SUCCESS, None),
        ("B", ModuleKey.PAYROLL, AuditEventType.VALIDATION_SUCCESS, None),
        ("A", ModuleKey.LEAVE, AuditEventType.LIMIT_EXCEEDED, LIMIT),
        ("B", ModuleKey.LEAVE, AuditEventType.LICENSE_NOT_FOUND, DENIED),
        ("A", ModuleKey.PAYROLL, AuditEventType.LICENSE_NOT_FOUND, DENIED),
        ("A", ModuleKey.LEAVE, AuditEventType.VALIDATION_SUCCESS, None),
        ("A", ModuleKey.PAYROLL, AuditEventType.LIMIT_WARNING, {**LIMIT, "current_value": 8}),
        ("B", ModuleKey.PAYROLL, AuditEventType.LIMIT_EXCEEDED, LIMIT),
    ]
    for tenant, module, event, details in plan:
        await audit.create_log(tenant, module, event, details)
        clock.advance(days=1)


@pytest.mark.asyncio
async def test_severity_is_derived_from_event_type(audit):
    denied = await audit.create_log("A", "payroll", AuditEventType.LICENSE_EXPIRED, DENIED)
    granted = await audit.create_log("A", "payroll", AuditEventType.VALIDATION_SUCCESS)
    assert denied.severity == AuditSeverity.CRITICAL
    assert granted.severity == AuditSeverity.INFO


@pytest.mark.asyncio
async def test_caller_cannot_smuggle_severity(audit):
    with pytest.raises(ValueError):
        await audit.create_log(
            "A", "payroll", AuditEventType.LICENSE_EXPIRED, {**DENIED, "severity": "info"}
        )


@pytest.mark.asyncio
async def test_query_never_crosses_tenants(audit, clock):
    await _populate(audit, clock)

    for tenant in ("A", "B"):
        rows = await audit.query_logs(AuditLogFilter(tenant_id=tenant))
        assert rows
        assert {r.tenant_id for r in rows} == {tenant}


@pytest.mark.asyncio
async def test_query_requires_tenant(audit):
    with pytest.raises(MissingTenant):
        await audit.query_logs(AuditLogFilter())


@pytest.mark.asyncio
async def test_filters_compose_as_intersection(audit, clock):
    await _populate(audit, clock)
    start = clock.now() - timedelta(days=6)
    single = {
        "module_key": ModuleKey.PAYROLL,
        "event_type": AuditEventType.LICENSE_NOT_FOUND,
        "severity": AuditSeverity.CRITICAL,
        "start_date": start,
    }

    ids_by_filter = {}
    for name, value in single.items():
        rows = await audit.query_logs(AuditLogFilter(tenant_id="A", **{name: value}))
        ids_by_filter[name] = {r.id for r in rows}

    for size in (2, 3, 4):
        for names in itertools.combinations(single, size):
            combined = await audit.query_logs(
                AuditLogFilter(tenant_id="A", **{n: single[n] for n in names})
            )
            expected = set.intersection(*(ids_by_filter[n] for n in names))
            assert {r.id for r in combined} == expected


@pytest.mark.asyncio
async def test_date_range_is_inclusive(audit, clock):
    first = await audit.create_log("A", "payroll", AuditEventType.VALIDATION_SUCCESS)
    clock.advance(hours=1)
    second = await audit.create_log("A", "payroll", AuditEventType.VALIDATION_SUCCESS)

    rows = await audit.query_logs(
        AuditLogFilter(tenant_id="A", start_date=first.timestamp, end_date=second.timestamp)
    )
    assert {r.id for r in rows} == {first.id, second.id}


@pytest.mark.asyncio
async def test_newest_first_and_stable_pagination(audit, clock):
    await _populate(audit, clock)

    rows = await audit.query_logs(AuditLogFilter(tenant_id="A"))
    timestamps = [r.timestamp for r in rows]
    assert timestamps == sorted(timestamps, reverse=True)

    pages = [
        [r.id for r in await audit.query_logs(AuditLogFilter(tenant_id="A", limit=2, skip=skip))]
        for skip in (0, 2, 4)
    ]
    repeat = [
        [r.id for r in await audit.query_logs(AuditLogFilter(tenant_id="A", limit=2, skip=skip))]
        for skip in (0, 2, 4)
    ]
    assert pages == repeat
    assert [i for page in pages for i in page] == [r.id for r in rows]


@pytest.mark.asyncio
async def test_same_instant_events_get_distinct_timestamps(audit):
    first = await audit.create_log("A", "payroll", AuditEventType.VALIDATION_SUCCESS)
    second = await audit.create_log("A", "payroll", AuditEventType.VALIDATION_SUCCESS)
    assert second.timestamp > first.timestamp


def test_page_size_is_bounded():
    with pytest.raises(ValueError):
        AuditLogFilter(tenant_id="A", limit=1001)
    with pytest.raises(ValueError):
        AuditLogFilter(tenant_id="A", skip=-1)


@pytest.mark.asyncio
async def test_statistics(audit, clock):
    await _populate(audit, clock)

    stats = await audit.get_statistics("A")

    assert stats.total_events == 5
    assert stats.by_severity == {"info": 2, "warning": 1, "critical": 2}
    assert stats.by_event_type["VALIDATION_SUCCESS"] == {"info": 2}


@pytest.mark.asyncio
async def test_recent_violations_are_critical_only(audit, clock):
    await _populate(audit, clock)

    rows = await audit.get_recent_violations("A")

    assert [r.event_type for r in rows] == [
        AuditEventType.LICENSE_NOT_FOUND,
        AuditEventType.LIMIT_EXCEEDED,
    ]


@pytest.mark.asyncio
async def test_module_audit_trail_window(audit, clock):
    await _populate(audit, clock)
    # Events sit on days 0-7 and the clock is now on day 8
    rows = await audit.get_module_audit_trail("A", ModuleKey.PAYROLL, days=3)
    assert [r.event_type for r in rows] == [AuditEventType.LIMIT_WARNING]
