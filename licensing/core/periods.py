"""Billing-period identifiers used to bucket usage counters.

Each function maps a timestamp to an opaque, sortable period string. The
active function is chosen by ``Settings.usage_period``.
"""

from collections.abc import Callable
from datetime import datetime

PeriodFunction = Callable[[datetime], str]


def monthly_period(now: datetime) -> str:
    """Calendar month, e.g. ``2026-10``."""
    return f"{now.year:04d}-{now.month:02d}"


def weekly_period(now: datetime) -> str:
    """ISO week, e.g. ``2026-W42``."""
    year, week, _ = now.isocalendar()
    return f"{year:04d}-W{week:02d}"


def daily_period(now: datetime) -> str:
    return now.strftime("%Y-%m-%d")


PERIOD_FUNCTIONS: dict[str, PeriodFunction] = {
    "month": monthly_period,
    "week": weekly_period,
    "day": daily_period,
}


def get_period_function(name: str) -> PeriodFunction:
    try:
        return PERIOD_FUNCTIONS[name]
    except KeyError:
        raise ValueError(
            f"Unknown usage period {name!r}. Valid: {sorted(PERIOD_FUNCTIONS)}"
        ) from None
