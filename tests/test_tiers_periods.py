"""Unit tests for tier limits and billing periods."""

from datetime import datetime

import pytest

from licensing.core.periods import daily_period, get_period_function, monthly_period, weekly_period
from licensing.core.tiers import looser, resolve_limits, tier_defaults, usage_percentage

TABLE = {
    "starter": {"employees": 50, "storage": 1000, "apiCalls": 10},
    "enterprise": {"employees": None, "storage": 5000, "apiCalls": None},
}


def test_tier_defaults_fill_every_limit_type():
    assert tier_defaults("starter", TABLE) == {"employees": 50, "storage": 1000, "apiCalls": 10}


def test_unknown_tier_is_unlimited():
    assert tier_defaults("platinum", TABLE) == {"employees": None, "storage": None, "apiCalls": None}


def test_explicit_limits_override_tier():
    limits = resolve_limits("starter", {"employees": 75, "storage": None}, TABLE)
    assert limits == {"employees": 75, "storage": 1000, "apiCalls": 10}


def test_looser_prefers_unlimited_then_larger():
    assert looser(None, 5) is None
    assert looser(5, None) is None
    assert looser(5, 10) == 10


def test_usage_percentage():
    assert usage_percentage(40, 50) == 80
    assert usage_percentage(7, None) is None
    assert usage_percentage(0, 0) == 100


def test_period_identifiers():
    moment = datetime(2026, 10, 15, 23, 59)
    assert monthly_period(moment) == "2026-10"
    assert weekly_period(moment) == "2026-W42"
    assert daily_period(moment) == "2026-10-15"


def test_month_rolls_over():
    assert monthly_period(datetime(2026, 10, 31, 23, 59, 59)) != monthly_period(
        datetime(2026, 11, 1, 0, 0, 0)
    )


def test_get_period_function():
    assert get_period_function("week") is weekly_period
    with pytest.raises(ValueError):
        get_period_function("fortnight")
