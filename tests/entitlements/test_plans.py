"""Unit tests for plan normalization and monthly quotas."""

import pytest

from dreamjournal.core.config import get_settings
from dreamjournal.entitlements.plans import (
    UNLIMITED,
    Plan,
    can_ask_followup,
    can_interpret,
    can_run_weekly,
    is_paid_plan,
    monthly_interpretation_quota,
    normalize_plan,
    plan_limits,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "stored, expected",
    [
        ("free", Plan.FREE),
        ("paid", Plan.PAID),
        ("  PAID ", Plan.PAID),
        ("plus", Plan.PAID),
        ("lite", Plan.PAID),
        ("pro", Plan.PAID),
        ("Premium", Plan.PAID),
        ("", Plan.FREE),
        (None, Plan.FREE),
        ("enterprise", Plan.FREE),
    ],
)
def test_normalize_plan(stored, expected) -> None:
    assert normalize_plan(stored) == expected


def test_is_paid_plan() -> None:
    assert is_paid_plan("pro") is True
    assert is_paid_plan("free") is False
    assert is_paid_plan(None) is False


def test_free_interpretation_boundary() -> None:
    """Free users get 5 interpretations: the 5th is allowed, the 6th is not."""
    assert can_interpret("free", 4) is True
    assert can_interpret("free", 5) is False


def test_free_followup_boundary() -> None:
    assert can_ask_followup("free", 2) is True
    assert can_ask_followup("free", 3) is False


def test_free_weekly_report_is_once_a_month() -> None:
    assert can_run_weekly("free", 0) is True
    assert can_run_weekly("free", 1) is False


def test_paid_is_unlimited() -> None:
    assert monthly_interpretation_quota("premium") == UNLIMITED
    assert can_interpret("paid", 10_000) is True
    assert can_ask_followup("pro", 10_000) is True
    assert can_run_weekly("plus", 50) is True


def test_free_quota_follows_settings(monkeypatch) -> None:
    monkeypatch.setenv("FREE_MONTHLY_INTERPRETATIONS", "2")
    get_settings.cache_clear()

    assert monthly_interpretation_quota("free") == 2
    assert can_interpret("free", 2) is False


def test_shipped_defaults() -> None:
    assert plan_limits()[Plan.FREE] == {"interpretations": 5, "followups": 3, "weekly_reports": 1}
    assert all(v == UNLIMITED for v in plan_limits()[Plan.PAID].values())
