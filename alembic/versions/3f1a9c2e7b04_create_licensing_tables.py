"""create licenses, module_licenses, usage_tracking and license_audits

Revision ID: 3f1a9c2e7b04
Revises: 
Create Date: 2026-10-19 09:12:44.201733

"""
from collections.abc import Sequence

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = '3f1a9c2e7b04'
down_revision: str | Sequence[str] | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

# SQLAlchemy persists enum member names
_license_status = sa.Enum("ACTIVE", "EXPIRED", "SUSPENDED", "CANCELLED", name="licensestatus")
_module_key = sa.Enum(
    "HR_CORE", "ATTENDANCE", "LEAVE", "PAYROLL", "DOCUMENTS",
    "COMMUNICATION", "REPORTING", "TASKS", "LOGGING",
    name="modulekey",
)
_pricing_tier = sa.Enum("STARTER", "BUSINESS", "ENTERPRISE", name="pricingtier")
_event_type = sa.Enum(
    "VALIDATION_SUCCESS", "LICENSE_NOT_FOUND", "LICENSE_EXPIRED", "MODULE_DISABLED",
    "LIMIT_EXCEEDED", "LIMIT_WARNING", "USAGE_TRACKED", "LICENSE_CREATED",
    "LICENSE_UPDATED", "MODULE_ACTIVATED", "MODULE_DEACTIVATED",
    name="auditeventtype",
)
_severity = sa.Enum("INFO", "WARNING", "CRITICAL", name="auditseverity")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "licenses",
        *_timestamps(),
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("subscription_id", sa.String(128), nullable=False),
        sa.Column("status", _license_status, nullable=False),
    )
    op.create_index("ix_licenses_tenant_id", "licenses", ["tenant_id"], unique=True)

    op.create_table(
        "module_licenses",
        *_timestamps(),
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("license_id", sa.Uuid(), sa.ForeignKey("licenses.id"), nullable=False),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("module_key", _module_key, nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False),
        sa.Column("tier", _pricing_tier, nullable=False),
        sa.Column("limit_employees", sa.BigInteger(), nullable=True),
        sa.Column("limit_storage", sa.BigInteger(), nullable=True),
        sa.Column("limit_api_calls", sa.BigInteger(), nullable=True),
        sa.Column("activated_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("license_id", "module_key", name="uq_module_licenses_license_module"),
    )
    op.create_index("ix_module_licenses_license_id", "module_licenses", ["license_id"])
    op.create_index("ix_module_licenses_tenant_id", "module_licenses", ["tenant_id"])

    op.create_table(
        "usage_tracking",
        *_timestamps(),
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("module_key", sa.String(50), nullable=False),
        sa.Column("period", sa.String(16), nullable=False),
        sa.Column("employees", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("storage", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("api_calls", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("limit_employees", sa.BigInteger(), nullable=True),
        sa.Column("limit_storage", sa.BigInteger(), nullable=True),
        sa.Column("limit_api_calls", sa.BigInteger(), nullable=True),
        sa.Column("employees_warned_at", sa.DateTime(), nullable=True),
        sa.Column("storage_warned_at", sa.DateTime(), nullable=True),
        sa.Column("api_calls_warned_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint(
            "tenant_id", "module_key", "period", name="uq_usage_tracking_tenant_module_period"
        ),
    )
    op.create_index("ix_usage_tracking_tenant_id", "usage_tracking", ["tenant_id"])
    op.create_index("ix_usage_tracking_period", "usage_tracking", ["period"])

    op.create_table(
        "license_audits",
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("tenant_id", sa.String(64), nullable=False),
        sa.Column("module_key", sa.String(50), nullable=False),
        sa.Column("event_type", _event_type, nullable=False),
        sa.Column("severity", _severity, nullable=False),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("details", sa.Text(), nullable=False),
    )
    op.create_index("ix_license_audits_tenant_id", "license_audits", ["tenant_id"])
    op.create_index("ix_license_audits_module_key", "license_audits", ["module_key"])
    op.create_index("ix_license_audits_event_type", "license_audits", ["event_type"])
    op.create_index("ix_license_audits_severity", "license_audits", ["severity"])
    op.create_index("ix_license_audits_timestamp", "license_audits", ["timestamp"])
    op.create_index(
        "ix_license_audits_tenant_timestamp", "license_audits", ["tenant_id", "timestamp"]
    )
    op.create_index(
        "ix_license_audits_tenant_module_timestamp",
        "license_audits",
        ["tenant_id", "module_key", "timestamp"],
    )
    op.create_index(
        "ix_license_audits_tenant_event_timestamp",
        "license_audits",
        ["tenant_id", "event_type", "timestamp"],
    )


def downgrade() -> None:
    op.drop_table("license_audits")
    op.drop_table("usage_tracking")
    op.drop_table("module_licenses")
    op.drop_table("licenses")
    for enum in (_severity, _event_type, _pricing_tier, _module_key, _license_status):
        enum.drop(op.get_bind(), checkfirst=True)
