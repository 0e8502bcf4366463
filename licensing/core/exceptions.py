"""Error taxonomy for license enforcement.

Denials (no license, module disabled, expired, limit exceeded) are normal
results and are described by :class:`DenialReason`. Exceptions are reserved
for malformed input and infrastructure faults.
"""

from enum import StrEnum


class DenialReason(StrEnum):
    LICENSE_NOT_FOUND = "LicenseNotFound"
    MODULE_DISABLED = "ModuleDisabled"
    LICENSE_EXPIRED = "LicenseExpired"
    LIMIT_EXCEEDED = "LimitExceeded"


class LicensingError(Exception):
    """Base class for all licensing errors."""


class InvalidModule(LicensingError, ValueError):
    """Module key is not part of the closed module enumeration."""

    def __init__(self, module_key: str) -> None:
        super().__init__(f"Unknown module key: {module_key!r}")
        self.module_key = module_key


class InvalidLimitType(LicensingError, ValueError):
    def __init__(self, limit_type: str) -> None:
        super().__init__(f"Unknown limit type: {limit_type!r}")
        self.limit_type = limit_type


class InvalidUsage(LicensingError, ValueError):
    """Usage delta cannot be applied (zero, or would drive usage negative)."""


class MissingTenant(LicensingError, ValueError):
    def __init__(self) -> None:
        super().__init__("A tenant id is required")


class StoreUnavailable(LicensingError):
    """The backing store failed or timed out. Callers must fail closed."""
