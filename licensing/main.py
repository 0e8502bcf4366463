"""FastAPI application entrypoint."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from licensing.api.deps import get_usage_tracker
from licensing.api.v1 import v1_router
from licensing.core.config import get_settings
from licensing.core.database import init_db
from licensing.core.exceptions import (
    InvalidLimitType,
    InvalidModule,
    InvalidUsage,
    LicensingError,
    MissingTenant,
    StoreUnavailable,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncGenerator[None, None]:
    # Startup: ensure tables exist (use Alembic in production)
    await init_db()
    tracker = get_usage_tracker()
    tracker.start()
    yield
    # Shutdown: drain batched usage before the process exits
    await tracker.stop()


app = FastAPI(
    title="Licensing",
    version="0.1.0",
    description="Multi-tenant module licensing, usage metering and audit",
    lifespan=lifespan,
)

# ── CORS ─────────────────────────────────────────────────────
_settings = get_settings()
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _settings.allowed_origins.split(",")],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Error mapping ────────────────────────────────────────────

@app.exception_handler(LicensingError)
async def licensing_error_handler(_request: Request, exc: LicensingError) -> JSONResponse:
    if isinstance(exc, StoreUnavailable):
        code, error = status.HTTP_503_SERVICE_UNAVAILABLE, "STORE_UNAVAILABLE"
    elif isinstance(exc, MissingTenant):
        code, error = status.HTTP_400_BAD_REQUEST, "TENANT_ID_REQUIRED"
    elif isinstance(exc, InvalidModule):
        code, error = status.HTTP_422_UNPROCESSABLE_ENTITY, "INVALID_MODULE"
    elif isinstance(exc, InvalidLimitType):
        code, error = status.HTTP_422_UNPROCESSABLE_ENTITY, "INVALID_LIMIT_TYPE"
    elif isinstance(exc, InvalidUsage):
        code, error = status.HTTP_422_UNPROCESSABLE_ENTITY, "INVALID_USAGE"
    else:
        code, error = status.HTTP_400_BAD_REQUEST, "LICENSING_ERROR"
    if code >= 500:
        logger.error("Request failed closed: %s", exc)
    return JSONResponse(status_code=code, content={"detail": {"error": error, "message": str(exc)}})


# ── API routes ───────────────────────────────────────────────
app.include_router(v1_router)


@app.get("/health", tags=["system"])
async def health_check() -> dict:
    return {"status": "ok"}
