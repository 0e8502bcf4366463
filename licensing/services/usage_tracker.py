"""Usage tracker — per-period metering with atomic limit enforcement.

Two paths:

* immediate: one conditional ``UPDATE … WHERE value + delta <= limit``; a
  rejected increment leaves the counter untouched and is audited as
  ``LIMIT_EXCEEDED``.
* batched: deltas coalesce in memory and are applied by ``flush_batch`` with
  compare-and-set retries. The part that would cross the limit is dropped at
  flush time and audited as ``LIMIT_EXCEEDED``.

Usage audit rows commit in the same transaction as the counter they describe.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker
from sqlmodel import select

from licensing.core.database import store_call
from licensing.core.exceptions import (
    DenialReason,
    InvalidLimitType,
    InvalidUsage,
    MissingTenant,
    StoreUnavailable,
)
from licensing.core.periods import PeriodFunction, monthly_period
from licensing.core.tiers import LIMIT_TYPES, looser, usage_percentage
from licensing.models.base import utcnow
from licensing.models.license import LIMIT_COLUMNS, LicenseRead, LimitType, ModuleKey
from licensing.models.license_audit import AuditEventType, LicenseAudit
from licensing.models.usage_tracking import (
    TenantUsageReport,
    UsageFigure,
    UsageReport,
    UsageTracking,
)
from licensing.services.audit_logger import AuditLogger
from licensing.services.license_store import LicenseStore, check_entitlement
from licensing.services.license_validator import DENIAL_EVENTS, DENIAL_MESSAGES, parse_module_key

logger = logging.getLogger(__name__)

WARNING_COOLDOWN = timedelta(hours=24)
MAX_CAS_ATTEMPTS = 5


class TrackingResult(BaseModel):
    blocked: bool
    tracked: bool = True
    new_value: int | None = None
    limit: int | None = None
    percentage: int | None = None
    reason: DenialReason | None = None
    batched: bool = False


class LimitCheck(BaseModel):
    allowed: bool
    limit_type: LimitType
    current_usage: int = 0
    limit: int | None = None
    percentage: int | None = None
    projected_usage: int = 0
    is_approaching_limit: bool = False
    reason: DenialReason | None = None


class FlushResult(BaseModel):
    processed: int = 0
    failed: int = 0
    truncated: int = 0
    skipped: bool = False


@dataclass
class PendingUsage:
    tenant_id: str
    module_key: ModuleKey
    limit_type: LimitType
    amount: int
    events: int = 1
    queued_at: float = field(default_factory=time.monotonic)


class UsageTracker:
    def __init__(
        self,
        session_factory: sessionmaker,
        store: LicenseStore,
        audit: AuditLogger,
        *,
        period_fn: PeriodFunction = monthly_period,
        clock: Callable[[], datetime] = utcnow,
        timeout: float = 5.0,
        batch_interval: float = 60.0,
        warning_threshold: int = 80,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._audit = audit
        self._period_fn = period_fn
        self._clock = clock
        self._timeout = timeout
        self.batch_interval = batch_interval
        self.warning_threshold = warning_threshold

        self._queue: dict[tuple[str, ModuleKey, LimitType], PendingUsage] = {}
        self._queue_lock = asyncio.Lock()
        self._flush_lock = asyncio.Lock()
        self._task: asyncio.Task | None = None

    # ── Public API ───────────────────────────────────────────

    def current_period(self) -> str:
        return self._period_fn(self._clock())

    async def track_usage(
        self,
        tenant_id: str,
        module_key: str,
        limit_type: str,
        delta: int = 1,
        *,
        immediate: bool = False,
    ) -> TrackingResult:
        """Record ``delta`` units of ``limit_type`` consumption.

        Limit breaches and entitlement failures come back as
        ``blocked=True``; only malformed input or store faults raise.
        """
        if not tenant_id:
            raise MissingTenant()
        module = parse_module_key(module_key)
        kind = _parse_limit_type(limit_type)
        if delta == 0:
            raise InvalidUsage("Usage delta must be non-zero")

        if module == ModuleKey.HR_CORE:
            return TrackingResult(blocked=False, tracked=False)

        if immediate:
            return await self._apply_immediate(tenant_id, module, kind, delta)

        if delta < 0:
            raise InvalidUsage("Batched usage cannot be negative; use immediate=True")
        async with self._queue_lock:
            key = (tenant_id, module, kind)
            pending = self._queue.get(key)
            if pending is None:
                self._queue[key] = PendingUsage(tenant_id, module, kind, delta)
            else:
                pending.amount += delta
                pending.events += 1
            queue_size = len(self._queue)
        logger.debug(
            "Queued usage tenant=%s module=%s %s+%d (queue=%d)",
            tenant_id, module, kind, delta, queue_size,
        )
        return TrackingResult(blocked=False, batched=True)

    async def check_limit(
        self,
        tenant_id: str,
        module_key: str,
        limit_type: str,
        requested: int = 0,
    ) -> LimitCheck:
        """Read-only projection of ``current + requested`` against the limit.

        A projected breach is audited as ``LIMIT_EXCEEDED``; usage over the
        warning threshold is audited as ``LIMIT_WARNING`` once per cooldown.
        """
        if not tenant_id:
            raise MissingTenant()
        module = parse_module_key(module_key)
        kind = _parse_limit_type(limit_type)
        if module == ModuleKey.HR_CORE:
            return LimitCheck(allowed=True, limit_type=kind)

        now = self._clock()
        license = await self._store.get_license(tenant_id)
        denial = await self._deny_if_unentitled(tenant_id, module, license, now)
        if denial is not None:
            return LimitCheck(allowed=False, limit_type=kind, reason=denial)

        period = self._period_fn(now)
        record = await store_call(
            self._find_record(tenant_id, module, period),
            timeout=self._timeout,
            operation="usage.find",
        )
        entitled_limit = license.module(module).limits[kind]  # type: ignore[union-attr]
        current = record.usage_for(kind) if record else 0
        limit = looser(record.limit_for(kind), entitled_limit) if record else entitled_limit
        projected = current + requested
        percentage = usage_percentage(current, limit)

        if limit is not None and projected > limit:
            await self._audit.create_log(
                tenant_id,
                module,
                AuditEventType.LIMIT_EXCEEDED,
                {
                    "limit_type": kind,
                    "current_value": current,
                    "limit_value": limit,
                    "requested_amount": requested,
                    "percentage": percentage,
                    "period": period,
                },
            )
            return LimitCheck(
                allowed=False,
                limit_type=kind,
                current_usage=current,
                limit=limit,
                percentage=percentage,
                projected_usage=projected,
                is_approaching_limit=True,
                reason=DenialReason.LIMIT_EXCEEDED,
            )

        approaching = percentage is not None and percentage >= self.warning_threshold
        if approaching and record is not None:
            await self._maybe_warn(record, kind, current, limit, percentage, now)
        return LimitCheck(
            allowed=True,
            limit_type=kind,
            current_usage=current,
            limit=limit,
            percentage=percentage,
            projected_usage=projected,
            is_approaching_limit=approaching,
        )

    async def get_usage(
        self, tenant_id: str, module_key: str, period: str | None = None
    ) -> UsageReport | None:
        """Usage figures for one module; None if the tenant is not licensed for it."""
        module = parse_module_key(module_key)
        license = await self._store.get_license(tenant_id)
        entitlement = license.module(module) if license else None
        if entitlement is None:
            return None

        period = period or self.current_period()
        record = await store_call(
            self._find_record(tenant_id, module, period),
            timeout=self._timeout,
            operation="usage.find",
        )
        return UsageReport(
            tenant_id=tenant_id,
            module_key=module,
            period=period,
            usage={
                lt: self._figure(record, lt, entitlement.limits[lt]) for lt in LIMIT_TYPES
            },
        )

    async def get_tenant_usage(self, tenant_id: str, period: str | None = None) -> TenantUsageReport:
        period = period or self.current_period()

        async def _rows() -> list[UsageTracking]:
            async with self._session_factory() as session:
                stmt = select(UsageTracking).where(
                    UsageTracking.tenant_id == tenant_id,
                    UsageTracking.period == period,
                )
                return list((await session.execute(stmt)).scalars().all())

        records = await store_call(_rows(), timeout=self._timeout, operation="usage.tenant")
        return TenantUsageReport(
            tenant_id=tenant_id,
            period=period,
            modules={
                r.module_key: {lt: self._figure(r, lt, r.limit_for(lt)) for lt in LIMIT_TYPES}
                for r in records
            },
        )

    # ── Batch processing ─────────────────────────────────────

    async def flush_batch(self) -> FlushResult:
        """Apply every queued delta. Concurrent flushes are refused."""
        if self._flush_lock.locked():
            logger.warning("Usage flush already in progress, skipping")
            return FlushResult(skipped=True)

        async with self._flush_lock:
            async with self._queue_lock:
                items = list(self._queue.values())
                self._queue.clear()
            if not items:
                return FlushResult()

            started = time.monotonic()
            result = FlushResult()
            for item in items:
                try:
                    dropped = await self._apply_batched(item)
                except StoreUnavailable:
                    logger.exception(
                        "Usage flush failed tenant=%s module=%s %s, requeueing",
                        item.tenant_id, item.module_key, item.limit_type,
                    )
                    await self._requeue(item)
                    result.failed += 1
                    continue
                result.processed += 1
                if dropped:
                    result.truncated += 1

            logger.info(
                "Usage flush: processed=%d truncated=%d failed=%d in %.3fs",
                result.processed, result.truncated, result.failed, time.monotonic() - started,
            )
            return result

    def batch_stats(self) -> dict:
        now = time.monotonic()
        return {
            "queue_size": len(self._queue),
            "is_processing": self._flush_lock.locked(),
            "batch_interval": self.batch_interval,
            "items": [
                {
                    "tenant_id": p.tenant_id,
                    "module_key": str(p.module_key),
                    "limit_type": str(p.limit_type),
                    "amount": p.amount,
                    "events": p.events,
                    "age_seconds": round(now - p.queued_at, 3),
                }
                for p in self._queue.values()
            ],
        }

    def start(self) -> None:
        """Start the periodic background flush."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run_periodic_flush())
            logger.info("Usage batch flush started (interval=%.0fs)", self.batch_interval)

    async def stop(self) -> None:
        """Stop the periodic flush and drain whatever is still queued."""
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.flush_batch()

    async def _run_periodic_flush(self) -> None:
        while True:
            await asyncio.sleep(self.batch_interval)
            try:
                await self.flush_batch()
            except Exception:
                logger.exception("Periodic usage flush crashed")

    async def _requeue(self, item: PendingUsage) -> None:
        async with self._queue_lock:
            key = (item.tenant_id, item.module_key, item.limit_type)
            pending = self._queue.get(key)
            if pending is None:
                self._queue[key] = item
            else:
                pending.amount += item.amount
                pending.events += item.events

    # ── Internals ────────────────────────────────────────────

    async def _deny_if_unentitled(
        self, tenant_id: str, module: ModuleKey, license: LicenseRead | None, now: datetime
    ) -> DenialReason | None:
        denial, entitlement = check_entitlement(license, module, now)
        if denial is None:
            return None
        await self._audit.create_log(
            tenant_id,
            module,
            DENIAL_EVENTS[denial],
            {
                "reason": DENIAL_MESSAGES[denial],
                "license_status": str(license.status) if license else None,
                "expires_at": entitlement.expires_at if entitlement else None,
                "source": "usage",
            },
        )
        return denial

    async def _apply_immediate(
        self, tenant_id: str, module: ModuleKey, kind: LimitType, delta: int
    ) -> TrackingResult:
        now = self._clock()
        license = await self._store.get_license(tenant_id)
        denial = await self._deny_if_unentitled(tenant_id, module, license, now)
        if denial is not None:
            return TrackingResult(blocked=True, tracked=False, reason=denial)

        entitled = license.module(module).limits  # type: ignore[union-attr]
        period = self._period_fn(now)
        applied, value, limit, record = await store_call(
            self._conditional_increment(tenant_id, module, kind, delta, period, entitled, now),
            timeout=self._timeout,
            operation="usage.increment",
        )

        if not applied:
            if delta < 0:
                raise InvalidUsage(
                    f"Cannot release {-delta} {kind}: only {value} in use"
                )
            await self._audit.create_log(
                tenant_id,
                module,
                AuditEventType.LIMIT_EXCEEDED,
                {
                    "limit_type": kind,
                    "current_value": value,
                    "limit_value": limit,
                    "requested_amount": delta,
                    "period": period,
                },
            )
            logger.info(
                "Usage blocked tenant=%s module=%s %s: %d + %d > %s",
                tenant_id, module, kind, value, delta, limit,
            )
            return TrackingResult(
                blocked=True,
                tracked=False,
                new_value=value,
                limit=limit,
                percentage=usage_percentage(value, limit),
                reason=DenialReason.LIMIT_EXCEEDED,
            )

        percentage = usage_percentage(value, limit)
        if delta > 0 and percentage is not None and percentage >= self.warning_threshold:
            # The increment is committed, so the call must not report failure
            try:
                await self._maybe_warn(record, kind, value, limit, percentage, now)
            except StoreUnavailable:
                logger.exception(
                    "Limit warning not recorded tenant=%s module=%s %s", tenant_id, module, kind
                )
        return TrackingResult(blocked=False, new_value=value, limit=limit, percentage=percentage)

    async def _conditional_increment(
        self,
        tenant_id: str,
        module: ModuleKey,
        kind: LimitType,
        delta: int,
        period: str,
        entitled: dict[str, int | None],
        now: datetime,
    ) -> tuple[bool, int, int | None, UsageTracking]:
        """Atomically apply ``delta`` if it keeps usage within ``[0, limit]``.

        The ``USAGE_TRACKED`` row commits in the same transaction as the
        increment. Returns ``(applied, value, limit, record)`` where ``value``
        is the new usage when applied and the untouched current usage otherwise.
        """
        async with self._session_factory() as session:
            record = await self._get_or_create(session, tenant_id, module, period, entitled, now)
            limit = looser(record.limit_for(kind), entitled[kind])
            column = getattr(UsageTracking, LIMIT_COLUMNS[kind])

            conditions = [UsageTracking.id == record.id, column + delta >= 0]
            if limit is not None:
                conditions.append(column + delta <= limit)
            stmt = (
                update(UsageTracking)
                .where(*conditions)
                .values({LIMIT_COLUMNS[kind]: column + delta, "updated_at": now})
                .execution_options(synchronize_session=False)
            )
            result = await session.execute(stmt)
            applied = result.rowcount == 1

            value = (
                await session.execute(select(column).where(UsageTracking.id == record.id))
            ).scalar_one()
            if not applied:
                await session.rollback()
                return False, value, limit, record

            entry = self._audit.build_entry(
                tenant_id,
                module,
                AuditEventType.USAGE_TRACKED,
                {"limit_type": kind, "amount": delta, "new_value": value, "period": period},
            )
            session.add(entry)
            await session.commit()
        self._audit.log_entry(entry)
        return True, value, limit, record

    async def _apply_batched(self, item: PendingUsage) -> int:
        """Apply one coalesced delta, truncating at the limit. Returns the dropped amount."""
        now = self._clock()
        license = await self._store.get_license(item.tenant_id)
        denial = await self._deny_if_unentitled(item.tenant_id, item.module_key, license, now)
        if denial is not None:
            logger.info(
                "Dropping %d batched %s for tenant=%s module=%s: %s",
                item.amount, item.limit_type, item.tenant_id, item.module_key, denial,
            )
            return item.amount

        entitled = license.module(item.module_key).limits  # type: ignore[union-attr]
        period = self._period_fn(now)
        applied, entries = await store_call(
            self._compare_and_set(item, period, entitled, now),
            timeout=self._timeout,
            operation="usage.flush",
        )
        for entry in entries:
            self._audit.log_entry(entry)

        dropped = item.amount - applied
        if dropped:
            logger.warning(
                "Batched usage truncated tenant=%s module=%s %s: dropped %d of %d",
                item.tenant_id, item.module_key, item.limit_type, dropped, item.amount,
            )
        return dropped

    async def _compare_and_set(
        self,
        item: PendingUsage,
        period: str,
        entitled: dict[str, int | None],
        now: datetime,
    ) -> tuple[int, list[LicenseAudit]]:
        """Returns ``(applied_amount, audit_entries)``.

        The audit rows commit together with the counter, so a failed flush
        leaves nothing behind and the item can be retried as a whole.
        """
        async with self._session_factory() as session:
            record = await self._get_or_create(
                session, item.tenant_id, item.module_key, period, entitled, now
            )
            limit = looser(record.limit_for(item.limit_type), entitled[item.limit_type])
            column_name = LIMIT_COLUMNS[item.limit_type]
            column = getattr(UsageTracking, column_name)

            for _ in range(MAX_CAS_ATTEMPTS):
                current = (
                    await session.execute(select(column).where(UsageTracking.id == record.id))
                ).scalar_one()
                headroom = item.amount if limit is None else max(limit - current, 0)
                applied = min(item.amount, headroom)
                if applied == 0:
                    entries = self._flush_entries(item, current, 0, limit, period)
                    session.add_all(entries)
                    await session.commit()
                    return 0, entries

                stmt = (
                    update(UsageTracking)
                    .where(UsageTracking.id == record.id, column == current)
                    .values({column_name: current + applied, "updated_at": now})
                    .execution_options(synchronize_session=False)
                )
                if (await session.execute(stmt)).rowcount == 1:
                    entries = self._flush_entries(item, current, applied, limit, period)
                    session.add_all(entries)
                    await session.commit()
                    return applied, entries
                await session.rollback()

        raise StoreUnavailable(
            f"Usage counter for {item.tenant_id}/{item.module_key} kept changing during flush"
        )

    def _flush_entries(
        self, item: PendingUsage, before: int, applied: int, limit: int | None, period: str
    ) -> list[LicenseAudit]:
        entries = []
        if applied:
            entries.append(
                self._audit.build_entry(
                    item.tenant_id,
                    item.module_key,
                    AuditEventType.USAGE_TRACKED,
                    {
                        "limit_type": item.limit_type,
                        "amount": applied,
                        "new_value": before + applied,
                        "period": period,
                        "batched": True,
                    },
                )
            )
        if applied < item.amount:
            entries.append(
                self._audit.build_entry(
                    item.tenant_id,
                    item.module_key,
                    AuditEventType.LIMIT_EXCEEDED,
                    {
                        "limit_type": item.limit_type,
                        "current_value": before,
                        "limit_value": limit,
                        "requested_amount": item.amount,
                        "dropped_amount": item.amount - applied,
                        "period": period,
                        "batched": True,
                    },
                )
            )
        return entries

    async def _find_record(
        self, tenant_id: str, module: ModuleKey, period: str
    ) -> UsageTracking | None:
        async with self._session_factory() as session:
            return await _select_record(session, tenant_id, module, period)

    async def _get_or_create(
        self,
        session: AsyncSession,
        tenant_id: str,
        module: ModuleKey,
        period: str,
        entitled: dict[str, int | None],
        now: datetime,
    ) -> UsageTracking:
        """Period row for the key, created with a limit snapshot on first use."""
        record = await _select_record(session, tenant_id, module, period)
        if record is not None:
            return record

        record = UsageTracking(
            tenant_id=tenant_id,
            module_key=module.value,
            period=period,
            created_at=now,
            updated_at=now,
            **{f"limit_{LIMIT_COLUMNS[lt]}": entitled[lt] for lt in LIMIT_TYPES},
        )
        session.add(record)
        try:
            await session.commit()
            logger.info("Opened usage period %s for tenant=%s module=%s", period, tenant_id, module)
        except IntegrityError:
            # Another request created the row first
            await session.rollback()
            record = await _select_record(session, tenant_id, module, period)
            if record is None:
                raise StoreUnavailable(f"Usage period {period} for {tenant_id}/{module} vanished")
        return record

    async def _maybe_warn(
        self,
        record: UsageTracking,
        kind: LimitType,
        current: int,
        limit: int | None,
        percentage: int,
        now: datetime,
    ) -> None:
        """Audit LIMIT_WARNING unless one was recorded within the cooldown."""
        if limit is None:
            return
        column_name = f"{LIMIT_COLUMNS[kind]}_warned_at"
        column = getattr(UsageTracking, column_name)
        cutoff = now - WARNING_COOLDOWN

        async def _claim() -> LicenseAudit | None:
            async with self._session_factory() as session:
                stmt = (
                    update(UsageTracking)
                    .where(
                        UsageTracking.id == record.id,
                        (column.is_(None)) | (column < cutoff),
                    )
                    .values({column_name: now})
                    .execution_options(synchronize_session=False)
                )
                if (await session.execute(stmt)).rowcount != 1:
                    await session.rollback()
                    return None
                entry = self._audit.build_entry(
                    record.tenant_id,
                    record.module_key,
                    AuditEventType.LIMIT_WARNING,
                    {
                        "limit_type": kind,
                        "current_value": current,
                        "limit_value": limit,
                        "percentage": percentage,
                        "period": record.period,
                    },
                )
                session.add(entry)
                await session.commit()
                return entry

        entry = await store_call(_claim(), timeout=self._timeout, operation="usage.warn")
        if entry is None:
            return
        self._audit.log_entry(entry)
        logger.warning(
            "Usage approaching limit tenant=%s module=%s %s: %d%%",
            record.tenant_id, record.module_key, kind, percentage,
        )

    def _figure(self, record: UsageTracking | None, kind: str, entitled: int | None) -> UsageFigure:
        current = record.usage_for(kind) if record else 0
        limit = looser(record.limit_for(kind), entitled) if record else entitled
        percentage = usage_percentage(current, limit)
        return UsageFigure(
            current=current,
            limit=limit,
            percentage=percentage,
            is_approaching_limit=percentage is not None and percentage >= self.warning_threshold,
            is_at_limit=limit is not None and current >= limit,
        )


def _parse_limit_type(limit_type: str) -> LimitType:
    try:
        return LimitType(limit_type)
    except ValueError:
        raise InvalidLimitType(limit_type) from None


async def _select_record(
    session: AsyncSession, tenant_id: str, module: ModuleKey, period: str
) -> UsageTracking | None:
    stmt = select(UsageTracking).where(
        UsageTracking.tenant_id == tenant_id,
        UsageTracking.module_key == module.value,
        UsageTracking.period == period,
    )
    return (await session.execute(stmt)).scalar_one_or_none()
