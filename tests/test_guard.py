"""Tests for the module license route guards."""

from collections.abc import AsyncGenerator
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from fastapi import Depends, FastAPI, Request
from httpx import ASGITransport, AsyncClient

from licensing.api import deps
from licensing.api.guard import require_module, require_usage_capacity
from licensing.core.exceptions import StoreUnavailable
from licensing.models.license_audit import AuditEventType

guarded = FastAPI()


@guarded.get("/payroll/runs", dependencies=[Depends(require_module("payroll"))])
async def payroll_runs(request: Request) -> dict:
    return {"tier": request.state.module_license.tier}


@guarded.get("/reports", dependencies=[Depends(require_module("reporting", meter_api_calls=True))])
async def reports() -> dict:
    return {"ok": True}


@guarded.post("/documents", dependencies=[Depends(require_usage_capacity("documents", "storage", 500))])
async def upload() -> dict:
    return {"stored": True}


@pytest.fixture
async def guarded_client(validator, tracker) -> AsyncGenerator[AsyncClient, None]:
    guarded.dependency_overrides[deps.get_license_validator] = lambda: validator
    guarded.dependency_overrides[deps.get_usage_tracker] = lambda: tracker
    transport = ASGITransport(app=guarded)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    guarded.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_missing_tenant_is_400(guarded_client):
    resp = await guarded_client.get("/payroll/runs")
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "TENANT_ID_REQUIRED"


@pytest.mark.asyncio
async def test_licensed_tenant_passes(guarded_client, seed_license):
    await seed_license("t1", {"payroll": {"tier": "business"}})

    resp = await guarded_client.get("/payroll/runs", headers={"X-Tenant-ID": "t1"})

    assert resp.status_code == 200
    assert resp.json() == {"tier": "business"}


@pytest.mark.asyncio
async def test_unlicensed_module_is_403_with_upgrade_link(guarded_client, seed_license):
    await seed_license("t1", {"leave": {}})

    resp = await guarded_client.get("/payroll/runs", headers={"X-Tenant-ID": "t1"})

    assert resp.status_code == 403
    detail = resp.json()["detail"]
    assert detail["error"] == "ModuleDisabled"
    assert detail["module_key"] == "payroll"
    assert "/upgrade" in detail["upgrade_url"]


@pytest.mark.asyncio
async def test_expired_module_points_to_renewal(guarded_client, seed_license, clock):
    await seed_license("t1", {"payroll": {"expires_at": clock.now() - timedelta(days=1)}})

    resp = await guarded_client.get("/payroll/runs", headers={"X-Tenant-ID": "t1"})

    detail = resp.json()["detail"]
    assert resp.status_code == 403
    assert detail["error"] == "LicenseExpired"
    assert "/renew" in detail["upgrade_url"]
    assert detail["expires_at"] is not None


@pytest.mark.asyncio
async def test_request_context_reaches_audit(guarded_client, seed_license, audit_rows):
    await seed_license("t1", {"payroll": {}})
    await guarded_client.get(
        "/payroll/runs", headers={"X-Tenant-ID": "t1", "User-Agent": "pytest"}
    )
    row = (await audit_rows("t1", AuditEventType.VALIDATION_SUCCESS))[-1]
    assert '"path":"/payroll/runs"' in row.details.replace(" ", "")
    assert "pytest" in row.details


@pytest.mark.asyncio
async def test_store_outage_fails_closed(validator, tracker):
    broken = AsyncMock()
    broken.validate_module_access = AsyncMock(side_effect=StoreUnavailable("down"))
    guarded.dependency_overrides[deps.get_license_validator] = lambda: broken
    guarded.dependency_overrides[deps.get_usage_tracker] = lambda: tracker
    try:
        transport = ASGITransport(app=guarded)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            resp = await ac.get("/payroll/runs", headers={"X-Tenant-ID": "t1"})
    finally:
        guarded.dependency_overrides.clear()

    assert resp.status_code == 503
    assert resp.json()["detail"]["error"] == "LICENSE_VALIDATION_UNAVAILABLE"


@pytest.mark.asyncio
async def test_metered_route_queues_api_call(guarded_client, seed_license, tracker):
    await seed_license("t1", {"reporting": {}})

    for _ in range(3):
        resp = await guarded_client.get("/reports", headers={"X-Tenant-ID": "t1"})
        assert resp.status_code == 200

    items = tracker.batch_stats()["items"]
    assert items[0]["limit_type"] == "apiCalls"
    assert items[0]["amount"] == 3


@pytest.mark.asyncio
async def test_capacity_guard_returns_429(guarded_client, seed_license, tracker):
    await seed_license("t1", {"documents": {"limits": {"storage": 1000}}})
    headers = {"X-Tenant-ID": "t1"}

    assert (await guarded_client.post("/documents", headers=headers)).status_code == 200

    await tracker.track_usage("t1", "documents", "storage", 600, immediate=True)
    resp = await guarded_client.post("/documents", headers=headers)

    assert resp.status_code == 429
    detail = resp.json()["detail"]
    assert detail["current_usage"] == 600
    assert detail["limit"] == 1000


@pytest.mark.asyncio
async def test_capacity_guard_denies_unlicensed(guarded_client):
    resp = await guarded_client.post("/documents", headers={"X-Tenant-ID": "ghost"})
    assert resp.status_code == 403
