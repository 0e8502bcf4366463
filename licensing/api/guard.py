"""Route guards that gate endpoints on a tenant's module license.

Usage::

    @router.get("/payroll/runs", dependencies=[Depends(require_module("payroll"))])

The tenant comes from ``request.state.tenant_id`` (set by upstream auth) or,
failing that, the ``X-Tenant-ID`` header.
"""

import logging
from collections.abc import Awaitable, Callable

from fastapi import HTTPException, Request, status

from licensing.api.deps import Tracker, Validator
from licensing.core.config import get_settings
from licensing.core.exceptions import DenialReason, StoreUnavailable
from licensing.models.license import LimitType, ModuleKey
from licensing.services.license_validator import ValidationResult, parse_module_key
from licensing.services.usage_tracker import LimitCheck

logger = logging.getLogger(__name__)

TENANT_HEADER = "X-Tenant-ID"


def resolve_tenant_id(request: Request) -> str:
    tenant_id = getattr(request.state, "tenant_id", None) or request.headers.get(TENANT_HEADER)
    if not tenant_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "TENANT_ID_REQUIRED",
                "message": f"Tenant id missing; send the {TENANT_HEADER} header",
            },
        )
    return tenant_id


def _unavailable() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "error": "LICENSE_VALIDATION_UNAVAILABLE",
            "message": "License validation is temporarily unavailable",
        },
    )


def _denial_detail(result: ValidationResult) -> dict:
    billing = get_settings().billing_url.rstrip("/")
    if result.reason == DenialReason.LICENSE_EXPIRED:
        action_url = f"{billing}/renew?module={result.module_key}"
    else:
        action_url = f"{billing}/upgrade?module={result.module_key}"
    return {
        "error": result.reason,
        "message": result.message,
        "module_key": result.module_key,
        "upgrade_url": action_url,
        "expires_at": result.expires_at.isoformat() if result.expires_at else None,
    }


def require_module(
    module_key: ModuleKey | str, *, meter_api_calls: bool = False
) -> Callable[..., Awaitable[ValidationResult]]:
    """Build a dependency that 403s unless the tenant may use ``module_key``."""
    module = parse_module_key(module_key)

    async def _guard(request: Request, validator: Validator, tracker: Tracker) -> ValidationResult:
        tenant_id = resolve_tenant_id(request)
        request_info = {
            "user_id": getattr(request.state, "user_id", None),
            "ip_address": request.client.host if request.client else None,
            "user_agent": request.headers.get("user-agent"),
            "path": request.url.path,
            "method": request.method,
        }
        try:
            result = await validator.validate_module_access(
                tenant_id, module, request_info=request_info
            )
        except StoreUnavailable as exc:
            logger.error("Denying %s for tenant=%s: license store unavailable", module, tenant_id)
            raise _unavailable() from exc

        if not result.valid:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN, detail=_denial_detail(result)
            )

        request.state.module_license = result
        if meter_api_calls:
            await tracker.track_usage(tenant_id, module, LimitType.API_CALLS, 1)
        return result

    return _guard


def require_usage_capacity(
    module_key: ModuleKey | str, limit_type: LimitType | str, amount: int = 1
) -> Callable[..., Awaitable[LimitCheck]]:
    """Build a dependency that 429s when ``amount`` more units would breach the limit."""
    module = parse_module_key(module_key)
    kind = LimitType(limit_type)

    async def _guard(request: Request, tracker: Tracker) -> LimitCheck:
        tenant_id = resolve_tenant_id(request)
        try:
            check = await tracker.check_limit(tenant_id, module, kind, amount)
        except StoreUnavailable as exc:
            raise _unavailable() from exc

        if check.allowed:
            return check
        if check.reason != DenialReason.LIMIT_EXCEEDED:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail={"error": check.reason, "module_key": module},
            )
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={
                "error": "LIMIT_EXCEEDED",
                "message": f"{kind} limit reached for module {module}",
                "limit_type": kind,
                "current_usage": check.current_usage,
                "limit": check.limit,
                "requested": amount,
            },
        )

    return _guard
