"""Usage metering endpoints."""

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from licensing.api.deps import Tracker
from licensing.models.usage_tracking import TenantUsageReport, UsageReport
from licensing.services.usage_tracker import FlushResult, LimitCheck, TrackingResult

router = APIRouter(prefix="/usage", tags=["usage"])


# ── Schemas ──────────────────────────────────────────────────

class TrackUsageRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    module_key: str
    limit_type: str
    amount: int = 1
    immediate: bool = False


class CheckLimitRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    module_key: str
    limit_type: str
    requested: int = Field(default=0, ge=0)


# ── Routes ───────────────────────────────────────────────────

@router.post("/track", response_model=TrackingResult)
async def track_usage(body: TrackUsageRequest, tracker: Tracker) -> TrackingResult:
    """Record consumption. A blocked increment is a 200 with ``blocked=true``."""
    return await tracker.track_usage(
        body.tenant_id,
        body.module_key,
        body.limit_type,
        body.amount,
        immediate=body.immediate,
    )


@router.post("/check", response_model=LimitCheck)
async def check_limit(body: CheckLimitRequest, tracker: Tracker) -> LimitCheck:
    return await tracker.check_limit(
        body.tenant_id, body.module_key, body.limit_type, body.requested
    )


@router.post("/flush", response_model=FlushResult)
async def flush_usage(tracker: Tracker) -> FlushResult:
    """Apply queued batched usage now instead of waiting for the interval."""
    return await tracker.flush_batch()


@router.get("/batch/stats")
async def batch_stats(tracker: Tracker) -> dict:
    return tracker.batch_stats()


@router.get("/{tenant_id}", response_model=TenantUsageReport)
async def get_tenant_usage(
    tenant_id: str, tracker: Tracker, period: str | None = None
) -> TenantUsageReport:
    return await tracker.get_tenant_usage(tenant_id, period)


@router.get("/{tenant_id}/{module_key}", response_model=UsageReport)
async def get_module_usage(
    tenant_id: str, module_key: str, tracker: Tracker, period: str | None = None
) -> UsageReport:
    report = await tracker.get_usage(tenant_id, module_key, period)
    if report is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Tenant has no license for module {module_key}",
        )
    return report
