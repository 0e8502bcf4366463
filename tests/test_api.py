"""End-to-end tests for the v1 HTTP endpoints."""

import pytest
from httpx import AsyncClient

# A year past the fake clock start
EXPIRES = "2027-10-15T12:00:00"


async def _create(client: AsyncClient, tenant_id: str, modules: list[dict] | None = None) -> dict:
    resp = await client.post(
        "/v1/licenses",
        json={
            "tenant_id": tenant_id,
            "subscription_id": f"sub-{tenant_id}",
            "modules": modules
            if modules is not None
            else [{"module_key": "attendance", "tier": "starter", "expires_at": EXPIRES}],
        },
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


@pytest.mark.asyncio
async def test_license_crud(client: AsyncClient):
    created = await _create(client, "acme")
    assert created["modules"][0]["limits"]["employees"] == 50

    dup = await client.post(
        "/v1/licenses", json={"tenant_id": "acme", "subscription_id": "again"}
    )
    assert dup.status_code == 409

    resp = await client.get("/v1/licenses/acme")
    assert resp.status_code == 200
    assert resp.json()["tenant_id"] == "acme"

    assert (await client.get("/v1/licenses/nobody")).status_code == 404


@pytest.mark.asyncio
async def test_status_and_module_updates(client: AsyncClient):
    await _create(client, "acme")

    resp = await client.patch(
        "/v1/licenses/acme/status", json={"status": "suspended", "reason": "unpaid"}
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "suspended"

    resp = await client.put(
        "/v1/licenses/acme/modules/attendance",
        json={"tier": "business", "limits": {"employees": 250}},
    )
    assert resp.status_code == 200
    assert resp.json()["modules"][0]["limits"]["employees"] == 250

    resp = await client.patch("/v1/licenses/nobody/status", json={"status": "active"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_validate_endpoint(client: AsyncClient):
    await _create(client, "acme")

    granted = await client.get("/v1/licenses/acme/modules/attendance/validate")
    denied = await client.get("/v1/licenses/acme/modules/payroll/validate")
    cached = await client.get("/v1/licenses/acme/modules/attendance/validate")
    fresh = await client.get("/v1/licenses/acme/modules/attendance/validate?skip_cache=true")

    assert granted.json()["valid"] is True
    assert denied.json()["reason"] == "ModuleDisabled"
    assert cached.json()["cached"] is True
    assert fresh.json()["cached"] is False


@pytest.mark.asyncio
async def test_unknown_module_is_422(client: AsyncClient):
    resp = await client.get("/v1/licenses/acme/modules/crm/validate")
    assert resp.status_code == 422
    assert resp.json()["detail"]["error"] == "INVALID_MODULE"


@pytest.mark.asyncio
async def test_usage_flow(client: AsyncClient):
    await _create(
        client,
        "acme",
        [{"module_key": "attendance", "limits": {"employees": 2}, "expires_at": EXPIRES}],
    )
    body = {"tenant_id": "acme", "module_key": "attendance", "limit_type": "employees"}

    first = await client.post("/v1/usage/track", json={**body, "amount": 2, "immediate": True})
    blocked = await client.post("/v1/usage/track", json={**body, "immediate": True})
    queued = await client.post(
        "/v1/usage/track", json={**body, "limit_type": "apiCalls", "amount": 5}
    )

    assert first.json()["new_value"] == 2
    assert blocked.json()["blocked"] is True
    assert blocked.json()["reason"] == "LimitExceeded"
    assert queued.json()["batched"] is True

    stats = await client.get("/v1/usage/batch/stats")
    assert stats.json()["queue_size"] == 1

    flushed = await client.post("/v1/usage/flush")
    assert flushed.json()["processed"] == 1

    report = await client.get("/v1/usage/acme/attendance")
    assert report.status_code == 200
    assert report.json()["usage"]["employees"]["is_at_limit"] is True
    assert report.json()["usage"]["apiCalls"]["current"] == 5

    tenant = await client.get("/v1/usage/acme")
    assert set(tenant.json()["modules"]) == {"attendance"}

    check = await client.post("/v1/usage/check", json={**body, "requested": 1})
    assert check.json()["allowed"] is False

    assert (await client.get("/v1/usage/acme/payroll")).status_code == 404


@pytest.mark.asyncio
async def test_usage_validation_errors(client: AsyncClient):
    body = {"tenant_id": "acme", "module_key": "attendance"}

    bad_type = await client.post("/v1/usage/track", json={**body, "limit_type": "seats"})
    zero = await client.post(
        "/v1/usage/track", json={**body, "limit_type": "employees", "amount": 0}
    )

    assert bad_type.status_code == 422
    assert bad_type.json()["detail"]["error"] == "INVALID_LIMIT_TYPE"
    assert zero.status_code == 422
    assert zero.json()["detail"]["error"] == "INVALID_USAGE"


@pytest.mark.asyncio
async def test_audit_endpoints(client: AsyncClient):
    await _create(client, "acme")
    await _create(client, "globex")
    await client.get("/v1/licenses/acme/modules/payroll/validate")
    await client.get("/v1/licenses/globex/modules/attendance/validate")

    resp = await client.get("/v1/audit/logs", params={"tenant_id": "acme"})
    assert resp.status_code == 200
    rows = resp.json()
    assert rows
    assert {r["tenant_id"] for r in rows} == {"acme"}
    assert rows[0]["event_type"] == "MODULE_DISABLED"
    assert rows[0]["severity"] == "critical"

    filtered = await client.get(
        "/v1/audit/logs", params={"tenant_id": "acme", "severity": "critical"}
    )
    assert [r["event_type"] for r in filtered.json()] == ["MODULE_DISABLED"]

    violations = await client.get("/v1/audit/violations", params={"tenant_id": "acme"})
    assert len(violations.json()) == 1

    stats = await client.get("/v1/audit/statistics", params={"tenant_id": "acme"})
    assert stats.json()["by_severity"]["critical"] == 1

    trail = await client.get("/v1/audit/modules/attendance", params={"tenant_id": "acme"})
    assert [r["event_type"] for r in trail.json()] == ["MODULE_ACTIVATED"]


@pytest.mark.asyncio
async def test_audit_logs_require_tenant(client: AsyncClient):
    resp = await client.get("/v1/audit/logs")
    assert resp.status_code == 400
    assert resp.json()["detail"]["error"] == "TENANT_ID_REQUIRED"


@pytest.mark.asyncio
async def test_cache_endpoints(client: AsyncClient):
    await _create(client, "acme")
    await client.get("/v1/licenses/acme/modules/attendance/validate")

    stats = await client.get("/v1/cache/stats")
    assert stats.json()["total_entries"] == 1

    cleared = await client.delete("/v1/cache", params={"tenant_id": "acme"})
    assert cleared.json() == {"cleared": 1}
    assert (await client.get("/v1/cache/stats")).json()["total_entries"] == 0
