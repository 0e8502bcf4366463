"""UsageTracking model — per-tenant, per-module, per-period consumption counters."""

import uuid
from datetime import datetime

from sqlalchemy import BigInteger, UniqueConstraint
from sqlmodel import Field, SQLModel

from licensing.models.base import TimestampMixin, new_uuid
from licensing.models.license import LIMIT_COLUMNS


class UsageTracking(TimestampMixin, SQLModel, table=True):
    __tablename__ = "usage_tracking"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "module_key", "period", name="uq_usage_tracking_tenant_module_period"
        ),
    )

    id: uuid.UUID = Field(default_factory=new_uuid, primary_key=True)
    tenant_id: str = Field(max_length=64, nullable=False, index=True)
    module_key: str = Field(max_length=50, nullable=False)
    period: str = Field(max_length=16, nullable=False, index=True)

    # Current consumption
    employees: int = Field(default=0, sa_type=BigInteger, nullable=False)
    storage: int = Field(default=0, sa_type=BigInteger, nullable=False)
    api_calls: int = Field(default=0, sa_type=BigInteger, nullable=False)

    # Limits in effect when the period started (None = unlimited)
    limit_employees: int | None = Field(default=None, sa_type=BigInteger)
    limit_storage: int | None = Field(default=None, sa_type=BigInteger)
    limit_api_calls: int | None = Field(default=None, sa_type=BigInteger)

    # Last LIMIT_WARNING per limit type, used to throttle warnings
    employees_warned_at: datetime | None = Field(default=None)
    storage_warned_at: datetime | None = Field(default=None)
    api_calls_warned_at: datetime | None = Field(default=None)

    def usage_for(self, limit_type: str) -> int:
        return getattr(self, LIMIT_COLUMNS[limit_type])

    def limit_for(self, limit_type: str) -> int | None:
        return getattr(self, f"limit_{LIMIT_COLUMNS[limit_type]}")

    def warned_at(self, limit_type: str) -> datetime | None:
        return getattr(self, f"{LIMIT_COLUMNS[limit_type]}_warned_at")


# ── Pydantic schemas ─────────────────────────────────────────

class UsageFigure(SQLModel):
    current: int
    limit: int | None
    percentage: int | None
    is_approaching_limit: bool
    is_at_limit: bool


class UsageReport(SQLModel):
    tenant_id: str
    module_key: str
    period: str
    usage: dict[str, UsageFigure]


class TenantUsageReport(SQLModel):
    tenant_id: str
    period: str
    modules: dict[str, dict[str, UsageFigure]]
