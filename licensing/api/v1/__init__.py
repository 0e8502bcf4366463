"""V1 API router aggregation."""

from fastapi import APIRouter

from licensing.api.v1.audit import router as audit_router
from licensing.api.v1.cache import router as cache_router
from licensing.api.v1.licenses import router as licenses_router
from licensing.api.v1.usage import router as usage_router

v1_router = APIRouter(prefix="/v1")
v1_router.include_router(licenses_router)
v1_router.include_router(usage_router)
v1_router.include_router(audit_router)
v1_router.include_router(cache_router)
