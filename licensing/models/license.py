"""License and per-module entitlement models.

One ``License`` per tenant; one ``ModuleLicense`` row per licensed module.
Rows are mutated on renewal / upgrade / downgrade but never deleted.
"""

import uuid
from datetime import datetime
from enum import StrEnum

from sqlalchemy import BigInteger, UniqueConstraint
from sqlmodel import Field, SQLModel

from licensing.models.base import TimestampMixin, new_uuid


class LicenseStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    SUSPENDED = "suspended"
    CANCELLED = "cancelled"


class ModuleKey(StrEnum):
    HR_CORE = "hr-core"
    ATTENDANCE = "attendance"
    LEAVE = "leave"
    PAYROLL = "payroll"
    DOCUMENTS = "documents"
    COMMUNICATION = "communication"
    REPORTING = "reporting"
    TASKS = "tasks"
    LOGGING = "logging"


class PricingTier(StrEnum):
    STARTER = "starter"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"


class LimitType(StrEnum):
    EMPLOYEES = "employees"
    STORAGE = "storage"  # bytes
    API_CALLS = "apiCalls"  # per period


# Limit type → column suffix used by both entitlement and usage tables
LIMIT_COLUMNS: dict[str, str] = {
    LimitType.EMPLOYEES: "employees",
    LimitType.STORAGE: "storage",
    LimitType.API_CALLS: "api_calls",
}


class License(TimestampMixin, SQLModel, table=True):
    __tablename__ = "licenses"

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: str = Field(max_length=64, unique=True, nullable=False, index=True)
    subscription_id: str = Field(max_length=128, nullable=False)
    status: LicenseStatus = Field(default=LicenseStatus.ACTIVE)


class ModuleLicense(TimestampMixin, SQLModel, table=True):
    __tablename__ = "module_licenses"
    __table_args__ = (
        UniqueConstraint("license_id", "module_key", name="uq_module_licenses_license_module"),
    )

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    license_id: uuid.UUID = Field(foreign_key="licenses.id", nullable=False, index=True)
    tenant_id: str = Field(max_length=64, nullable=False, index=True)
    module_key: ModuleKey = Field(nullable=False)
    enabled: bool = Field(default=True)
    tier: PricingTier = Field(default=PricingTier.STARTER)

    # Explicit ceilings; None falls back to the tier default
    limit_employees: int | None = Field(default=None, sa_type=BigInteger)
    limit_storage: int | None = Field(default=None, sa_type=BigInteger)
    limit_api_calls: int | None = Field(default=None, sa_type=BigInteger)

    activated_at: datetime = Field(nullable=False)
    expires_at: datetime = Field(nullable=False)

    def limit_overrides(self) -> dict[str, int | None]:
        return {lt: getattr(self, f"limit_{col}") for lt, col in LIMIT_COLUMNS.items()}


# ── Pydantic schemas ─────────────────────────────────────────

class ModuleLicenseCreate(SQLModel):
    module_key: ModuleKey
    enabled: bool = True
    tier: PricingTier = PricingTier.STARTER
    limits: dict[LimitType, int | None] = {}
    activated_at: datetime | None = None
    expires_at: datetime


class ModuleLicenseUpdate(SQLModel):
    enabled: bool | None = None
    tier: PricingTier | None = None
    limits: dict[LimitType, int | None] | None = None
    expires_at: datetime | None = None
    reason: str | None = None


class ModuleLicenseRead(SQLModel):
    module_key: ModuleKey
    enabled: bool
    tier: PricingTier
    limits: dict[str, int | None]  # effective ceilings (overrides merged with tier)
    activated_at: datetime
    expires_at: datetime


class LicenseCreate(SQLModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    subscription_id: str = Field(min_length=1, max_length=128)
    status: LicenseStatus = LicenseStatus.ACTIVE
    modules: list[ModuleLicenseCreate] = []


class LicenseStatusUpdate(SQLModel):
    status: LicenseStatus
    reason: str | None = None


class LicenseRead(SQLModel):
    id: uuid.UUID
    tenant_id: str
    subscription_id: str
    status: LicenseStatus
    modules: list[ModuleLicenseRead]
    created_at: datetime
    updated_at: datetime

    def module(self, module_key: str) -> ModuleLicenseRead | None:
        for entry in self.modules:
            if entry.module_key == module_key:
                return entry
        return None
