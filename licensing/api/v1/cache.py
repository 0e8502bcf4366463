"""Decision cache administration."""

from fastapi import APIRouter

from licensing.api.deps import Validator

router = APIRouter(prefix="/cache", tags=["cache"])


@router.delete("")
async def clear_cache(validator: Validator, tenant_id: str | None = None) -> dict:
    """Drop cached decisions for one tenant, or all of them."""
    return {"cleared": validator.clear_cache(tenant_id)}


@router.get("/stats")
async def cache_stats(validator: Validator) -> dict:
    return validator.cache_stats()
