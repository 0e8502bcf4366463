"""License store — reads and lifecycle mutations of tenant licenses.

Every mutation writes a license-change audit row and purges the tenant's cached
decisions, so a validator sharing the same cache never serves a decision older
than the change.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from licensing.core.cache import DecisionCache
from licensing.core.database import store_call
from licensing.core.exceptions import DenialReason, LicensingError
from licensing.core.tiers import resolve_limits
from licensing.models.base import to_naive_utc, utcnow
from licensing.models.license import (
    LIMIT_COLUMNS,
    License,
    LicenseCreate,
    LicenseRead,
    LicenseStatus,
    ModuleKey,
    ModuleLicense,
    ModuleLicenseRead,
    ModuleLicenseUpdate,
)
from licensing.models.license_audit import AuditEventType
from licensing.services.audit_logger import AuditLogger

logger = logging.getLogger(__name__)


class LicenseExists(LicensingError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant {tenant_id!r} already has a license")
        self.tenant_id = tenant_id


class LicenseMissing(LicensingError):
    def __init__(self, tenant_id: str) -> None:
        super().__init__(f"Tenant {tenant_id!r} has no license")
        self.tenant_id = tenant_id


def check_entitlement(
    license: LicenseRead | None, module_key: str, now: datetime
) -> tuple[DenialReason | None, ModuleLicenseRead | None]:
    """Decide whether ``module_key`` is usable under ``license`` at ``now``.

    A non-active license and a past ``expires_at`` both deny as expired.
    """
    if license is None:
        return DenialReason.LICENSE_NOT_FOUND, None
    module = license.module(module_key)
    if module is None or not module.enabled:
        return DenialReason.MODULE_DISABLED, module
    if license.status != LicenseStatus.ACTIVE or module.expires_at <= now:
        return DenialReason.LICENSE_EXPIRED, module
    return None, module


class LicenseStore:
    def __init__(
        self,
        session_factory: sessionmaker,
        audit: AuditLogger,
        cache: DecisionCache | None = None,
        *,
        timeout: float = 5.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._audit = audit
        self._cache = cache
        self._timeout = timeout
        self._clock = clock

    # ── Reads ────────────────────────────────────────────────

    async def get_license(self, tenant_id: str) -> LicenseRead | None:
        """Detached snapshot of a tenant's license, or None."""
        return await store_call(
            self._load(tenant_id), timeout=self._timeout, operation="license.get"
        )

    async def _load(self, tenant_id: str) -> LicenseRead | None:
        async with self._session_factory() as session:
            lic = await _license_row(session, tenant_id)
            if lic is None:
                return None
            modules = await _module_rows(session, lic.id)
            return _to_read(lic, modules)

    # ── Mutations ────────────────────────────────────────────

    async def create_license(self, body: LicenseCreate) -> LicenseRead:
        async def _create() -> LicenseRead:
            now = self._clock()
            async with self._session_factory() as session:
                lic = License(
                    tenant_id=body.tenant_id,
                    subscription_id=body.subscription_id,
                    status=body.status,
                    created_at=now,
                    updated_at=now,
                )
                session.add(lic)
                try:
                    await session.flush()
                except IntegrityError as exc:
                    await session.rollback()
                    raise LicenseExists(body.tenant_id) from exc

                modules = []
                for spec in body.modules:
                    module = ModuleLicense(
                        license_id=lic.id,
                        tenant_id=lic.tenant_id,
                        module_key=spec.module_key,
                        enabled=spec.enabled,
                        tier=spec.tier,
                        activated_at=to_naive_utc(spec.activated_at) if spec.activated_at else now,
                        expires_at=to_naive_utc(spec.expires_at),
                        created_at=now,
                        updated_at=now,
                    )
                    _apply_limits(module, spec.limits)
                    session.add(module)
                    modules.append(module)
                try:
                    await session.commit()
                except IntegrityError as exc:
                    await session.rollback()
                    raise LicenseExists(body.tenant_id) from exc
                return _to_read(lic, modules)

        created = await store_call(_create(), timeout=self._timeout, operation="license.create")
        await self._audit.create_log(
            created.tenant_id,
            ModuleKey.HR_CORE,
            AuditEventType.LICENSE_CREATED,
            {"new_value": created.model_dump(mode="json", include={"subscription_id", "status"})},
        )
        for module in created.modules:
            await self._audit.create_log(
                created.tenant_id,
                module.module_key,
                AuditEventType.MODULE_ACTIVATED if module.enabled else AuditEventType.MODULE_DEACTIVATED,
                {"new_value": module.model_dump(mode="json")},
            )
        self._purge(created.tenant_id)
        logger.info("Created license for tenant %s with %d modules", created.tenant_id, len(created.modules))
        return created

    async def set_status(
        self, tenant_id: str, status: LicenseStatus, reason: str | None = None
    ) -> LicenseRead:
        """Move a license through its lifecycle (renew, suspend, cancel, expire)."""

        async def _update() -> tuple[LicenseStatus, LicenseRead]:
            async with self._session_factory() as session:
                lic = await _license_row(session, tenant_id)
                if lic is None:
                    raise LicenseMissing(tenant_id)
                previous = lic.status
                lic.status = status
                lic.updated_at = self._clock()
                session.add(lic)
                await session.commit()
                return previous, _to_read(lic, await _module_rows(session, lic.id))

        previous, updated = await store_call(
            _update(), timeout=self._timeout, operation="license.set_status"
        )
        self._purge(tenant_id)
        await self._audit.create_log(
            tenant_id,
            ModuleKey.HR_CORE,
            AuditEventType.LICENSE_UPDATED,
            {
                "reason": reason,
                "previous_value": {"status": str(previous)},
                "new_value": {"status": str(status)},
            },
        )
        logger.info("License for tenant %s: %s -> %s", tenant_id, previous, status)
        return updated

    async def update_module(
        self, tenant_id: str, module_key: ModuleKey, changes: ModuleLicenseUpdate
    ) -> LicenseRead:
        """Add or modify one module entitlement (upgrade, downgrade, renew, toggle)."""
        module_key = ModuleKey(module_key)

        async def _update() -> tuple[ModuleLicenseRead | None, LicenseRead]:
            now = self._clock()
            async with self._session_factory() as session:
                lic = await _license_row(session, tenant_id)
                if lic is None:
                    raise LicenseMissing(tenant_id)
                modules = await _module_rows(session, lic.id)
                module = next((m for m in modules if m.module_key == module_key), None)
                previous = _module_read(module) if module is not None else None

                if module is None:
                    if changes.expires_at is None:
                        raise LicensingError(
                            f"expires_at is required to add module {module_key!s}"
                        )
                    module = ModuleLicense(
                        license_id=lic.id,
                        tenant_id=tenant_id,
                        module_key=module_key,
                        activated_at=now,
                        expires_at=to_naive_utc(changes.expires_at),
                        created_at=now,
                    )
                    modules.append(module)
                if changes.enabled is not None:
                    if changes.enabled and not module.enabled:
                        module.activated_at = now
                    module.enabled = changes.enabled
                if changes.tier is not None:
                    module.tier = changes.tier
                if changes.limits is not None:
                    _apply_limits(module, changes.limits)
                if changes.expires_at is not None:
                    module.expires_at = to_naive_utc(changes.expires_at)
                module.updated_at = now
                session.add(module)
                await session.commit()
                return previous, _to_read(lic, modules)

        previous, updated = await store_call(
            _update(), timeout=self._timeout, operation="license.update_module"
        )
        self._purge(tenant_id)

        current = updated.module(module_key)
        if current is None:
            raise LicensingError(f"Module {module_key!s} missing after update")
        was_enabled = previous is not None and previous.enabled
        if current.enabled and not was_enabled:
            event = AuditEventType.MODULE_ACTIVATED
        elif was_enabled and not current.enabled:
            event = AuditEventType.MODULE_DEACTIVATED
        else:
            event = AuditEventType.LICENSE_UPDATED
        await self._audit.create_log(
            tenant_id,
            module_key,
            event,
            {
                "reason": changes.reason,
                "previous_value": previous.model_dump(mode="json") if previous else None,
                "new_value": current.model_dump(mode="json"),
            },
        )
        return updated

    async def expire_overdue(self) -> list[str]:
        """Mark active licenses whose enabled modules have all lapsed as expired."""
        now = self._clock()

        async def _find() -> list[str]:
            async with self._session_factory() as session:
                stmt = select(License).where(License.status == LicenseStatus.ACTIVE)
                licenses = (await session.execute(stmt)).scalars().all()
                overdue = []
                for lic in licenses:
                    enabled = [m for m in await _module_rows(session, lic.id) if m.enabled]
                    if enabled and all(m.expires_at <= now for m in enabled):
                        overdue.append(lic.tenant_id)
                return overdue

        overdue = await store_call(_find(), timeout=self._timeout, operation="license.find_overdue")
        for tenant_id in overdue:
            await self.set_status(tenant_id, LicenseStatus.EXPIRED, reason="All modules expired")
        return overdue

    def _purge(self, tenant_id: str) -> None:
        if self._cache is not None:
            dropped = self._cache.invalidate(tenant_id)
            logger.debug("Purged %d cached decisions for tenant %s", dropped, tenant_id)


# ── Internal helpers ──────────────────────────────────────────

async def _license_row(session: AsyncSession, tenant_id: str) -> License | None:
    result = await session.execute(select(License).where(License.tenant_id == tenant_id))
    return result.scalar_one_or_none()


async def _module_rows(session: AsyncSession, license_id) -> list[ModuleLicense]:
    stmt = (
        select(ModuleLicense)
        .where(ModuleLicense.license_id == license_id)
        .order_by(ModuleLicense.module_key)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


def _apply_limits(module: ModuleLicense, limits: dict) -> None:
    for limit_type, value in limits.items():
        setattr(module, f"limit_{LIMIT_COLUMNS[limit_type]}", value)


def _module_read(module: ModuleLicense) -> ModuleLicenseRead:
    return ModuleLicenseRead(
        module_key=module.module_key,
        enabled=module.enabled,
        tier=module.tier,
        limits=resolve_limits(module.tier, module.limit_overrides()),
        activated_at=module.activated_at,
        expires_at=module.expires_at,
    )


def _to_read(lic: License, modules: list[ModuleLicense]) -> LicenseRead:
    return LicenseRead(
        id=lic.id,
        tenant_id=lic.tenant_id,
        subscription_id=lic.subscription_id,
        status=lic.status,
        modules=[_module_read(m) for m in modules],
        created_at=lic.created_at,
        updated_at=lic.updated_at,
    )
