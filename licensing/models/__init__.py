"""Import all models so SQLModel.metadata picks them up."""

from licensing.models.license import (
    License,
    LicenseCreate,
    LicenseRead,
    LicenseStatus,
    LicenseStatusUpdate,
    LimitType,
    ModuleKey,
    ModuleLicense,
    ModuleLicenseCreate,
    ModuleLicenseRead,
    ModuleLicenseUpdate,
    PricingTier,
)
from licensing.models.license_audit import (
    AuditEventType,
    AuditSeverity,
    LicenseAudit,
    LicenseAuditRead,
    severity_for,
)
from licensing.models.usage_tracking import (
    TenantUsageReport,
    UsageFigure,
    UsageReport,
    UsageTracking,
)

__all__ = [
    "AuditEventType",
    "AuditSeverity",
    "License",
    "LicenseAudit",
    "LicenseAuditRead",
    "LicenseCreate",
    "LicenseRead",
    "LicenseStatus",
    "LicenseStatusUpdate",
    "LimitType",
    "ModuleKey",
    "ModuleLicense",
    "ModuleLicenseCreate",
    "ModuleLicenseRead",
    "ModuleLicenseUpdate",
    "PricingTier",
    "TenantUsageReport",
    "UsageFigure",
    "UsageReport",
    "UsageTracking",
    "severity_for",
]
