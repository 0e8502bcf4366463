"""Tier default limits and limit arithmetic.

Single source of truth for how a module entitlement's ceilings are derived:
explicit per-entitlement limits win, otherwise the tier default from
``Settings.tier_limits`` applies. ``None`` always means unlimited.
"""

from collections.abc import Mapping

from licensing.core.config import get_settings

LIMIT_TYPES: tuple[str, ...] = ("employees", "storage", "apiCalls")

Limits = dict[str, int | None]


def tier_defaults(tier: str, tier_limits: Mapping[str, Mapping[str, int | None]] | None = None) -> Limits:
    """Return the default ceilings for a tier (unknown limit types → unlimited)."""
    table = tier_limits if tier_limits is not None else get_settings().tier_limits
    defaults = table.get(tier, {})
    return {lt: defaults.get(lt) for lt in LIMIT_TYPES}


def resolve_limits(
    tier: str,
    overrides: Mapping[str, int | None],
    tier_limits: Mapping[str, Mapping[str, int | None]] | None = None,
) -> Limits:
    """Merge explicit entitlement limits over the tier defaults."""
    limits = tier_defaults(tier, tier_limits)
    for lt in LIMIT_TYPES:
        if overrides.get(lt) is not None:
            limits[lt] = overrides[lt]
    return limits


def looser(a: int | None, b: int | None) -> int | None:
    """The more permissive of two ceilings."""
    if a is None or b is None:
        return None
    return max(a, b)


def usage_percentage(current: int, limit: int | None) -> int | None:
    if limit is None:
        return None
    if limit <= 0:
        return 100
    return round(current / limit * 100)
