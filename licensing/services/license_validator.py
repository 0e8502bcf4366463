"""License validator — per-module access decisions behind a TTL cache.

Store-backed decisions are always audited. Cache hits reuse the stored
decision and are not audited again. Only successful decisions are cached.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

from pydantic import BaseModel

from licensing.core.cache import DecisionCache
from licensing.core.exceptions import DenialReason, InvalidModule, LicensingError, MissingTenant
from licensing.models.audit_details import RequestInfo
from licensing.models.base import utcnow
from licensing.models.license import ModuleKey
from licensing.models.license_audit import AuditEventType
from licensing.services.audit_logger import AuditLogger
from licensing.services.license_store import LicenseStore, check_entitlement

logger = logging.getLogger(__name__)

DENIAL_EVENTS: dict[DenialReason, AuditEventType] = {
    DenialReason.LICENSE_NOT_FOUND: AuditEventType.LICENSE_NOT_FOUND,
    DenialReason.MODULE_DISABLED: AuditEventType.MODULE_DISABLED,
    DenialReason.LICENSE_EXPIRED: AuditEventType.LICENSE_EXPIRED,
    DenialReason.LIMIT_EXCEEDED: AuditEventType.LIMIT_EXCEEDED,
}

DENIAL_MESSAGES: dict[DenialReason, str] = {
    DenialReason.LICENSE_NOT_FOUND: "No license found for tenant",
    DenialReason.MODULE_DISABLED: "Module is not included in the license or is disabled",
    DenialReason.LICENSE_EXPIRED: "License has expired",
    DenialReason.LIMIT_EXCEEDED: "Usage limit exceeded",
}


class ValidationResult(BaseModel):
    valid: bool
    module_key: ModuleKey
    reason: DenialReason | None = None
    message: str | None = None
    tier: str | None = None
    limits: dict[str, int | None] | None = None
    expires_at: datetime | None = None
    bypassed: bool = False
    cached: bool = False


def parse_module_key(module_key: str) -> ModuleKey:
    try:
        return ModuleKey(module_key)
    except ValueError:
        raise InvalidModule(module_key) from None


class LicenseValidator:
    def __init__(
        self,
        store: LicenseStore,
        audit: AuditLogger,
        cache: DecisionCache,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._audit = audit
        self._cache = cache
        self._clock = clock

    async def validate_module_access(
        self,
        tenant_id: str,
        module_key: str,
        *,
        skip_cache: bool = False,
        request_info: RequestInfo | dict[str, Any] | None = None,
    ) -> ValidationResult:
        """Decide whether ``tenant_id`` may use ``module_key`` right now.

        Denials are returned, not raised. Raises ``MissingTenant`` /
        ``InvalidModule`` for malformed input and ``StoreUnavailable`` when the
        license or audit store cannot be reached.
        """
        if not tenant_id:
            raise MissingTenant()
        module = parse_module_key(module_key)
        request = RequestInfo.model_validate(request_info) if request_info else None
        now = self._clock()

        if module == ModuleKey.HR_CORE:
            await self._audit.create_log(
                tenant_id,
                module,
                AuditEventType.VALIDATION_SUCCESS,
                {"reason": "core module", "request": request},
            )
            return ValidationResult(valid=True, module_key=module, bypassed=True)

        if not skip_cache:
            cached: ValidationResult | None = self._cache.get(tenant_id, module)
            if cached is not None and (cached.expires_at is None or cached.expires_at > now):
                logger.debug("License decision cache hit tenant=%s module=%s", tenant_id, module)
                return cached.model_copy(update={"cached": True})

        license = await self._store.get_license(tenant_id)
        denial, entitlement = check_entitlement(license, module, now)

        if denial is not None:
            await self._audit.create_log(
                tenant_id,
                module,
                DENIAL_EVENTS[denial],
                {
                    "reason": DENIAL_MESSAGES[denial],
                    "license_status": str(license.status) if license else None,
                    "expires_at": entitlement.expires_at if entitlement else None,
                    "request": request,
                },
            )
            logger.info("License denied tenant=%s module=%s reason=%s", tenant_id, module, denial)
            return ValidationResult(
                valid=False,
                module_key=module,
                reason=denial,
                message=DENIAL_MESSAGES[denial],
                expires_at=entitlement.expires_at if entitlement else None,
            )

        if entitlement is None:
            raise LicensingError(f"Granted decision for {module!s} has no entitlement")
        result = ValidationResult(
            valid=True,
            module_key=module,
            tier=str(entitlement.tier),
            limits=entitlement.limits,
            expires_at=entitlement.expires_at,
        )
        await self._audit.create_log(
            tenant_id,
            module,
            AuditEventType.VALIDATION_SUCCESS,
            {"tier": str(entitlement.tier), "expires_at": entitlement.expires_at, "request": request},
        )
        self._cache.put(tenant_id, module, result)
        return result

    def invalidate_cache(self, tenant_id: str, module_key: str | None = None) -> int:
        module = parse_module_key(module_key) if module_key is not None else None
        return self._cache.invalidate(tenant_id, module)

    def clear_cache(self, tenant_id: str | None = None) -> int:
        """Drop cached decisions for one tenant, or for everyone."""
        if tenant_id:
            return self._cache.invalidate(tenant_id)
        return self._cache.clear()

    def cache_stats(self) -> dict[str, Any]:
        return self._cache.stats()
