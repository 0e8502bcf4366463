"""FastAPI dependencies wiring the licensing services to the shared engine."""

from functools import lru_cache
from typing import Annotated

from fastapi import Depends

from licensing.core.cache import DecisionCache
from licensing.core.config import get_settings
from licensing.core.database import async_session_factory
from licensing.core.periods import get_period_function
from licensing.services.audit_logger import AuditLogger
from licensing.services.license_store import LicenseStore
from licensing.services.license_validator import LicenseValidator
from licensing.services.usage_tracker import UsageTracker


@lru_cache
def get_decision_cache() -> DecisionCache:
    return DecisionCache(ttl=get_settings().license_cache_ttl)


@lru_cache
def get_audit_logger() -> AuditLogger:
    return AuditLogger(async_session_factory, timeout=get_settings().store_timeout)


@lru_cache
def get_license_store() -> LicenseStore:
    return LicenseStore(
        async_session_factory,
        get_audit_logger(),
        get_decision_cache(),
        timeout=get_settings().store_timeout,
    )


@lru_cache
def get_license_validator() -> LicenseValidator:
    return LicenseValidator(get_license_store(), get_audit_logger(), get_decision_cache())


@lru_cache
def get_usage_tracker() -> UsageTracker:
    settings = get_settings()
    return UsageTracker(
        async_session_factory,
        get_license_store(),
        get_audit_logger(),
        period_fn=get_period_function(settings.usage_period),
        timeout=settings.store_timeout,
        batch_interval=settings.usage_batch_interval,
        warning_threshold=settings.usage_warning_threshold,
    )


# Typed shorthand for use in route signatures
Audit = Annotated[AuditLogger, Depends(get_audit_logger)]
Store = Annotated[LicenseStore, Depends(get_license_store)]
Validator = Annotated[LicenseValidator, Depends(get_license_validator)]
Tracker = Annotated[UsageTracker, Depends(get_usage_tracker)]
