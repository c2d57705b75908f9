"""Tests for EntitlementEngine against a real (SQLite) repository."""

from datetime import UTC, date, datetime, timedelta

import pytest

from dreamjournal.core.exceptions import (
    ErrorCategory,
    NotFoundError,
    QuotaExceededError,
    ReportNotAvailableError,
)
from dreamjournal.db import repository
from dreamjournal.entitlements.engine import EntitlementEngine, ReportState

pytestmark = pytest.mark.usefixtures("db")

ADMIN = "999"


@pytest.fixture
def engine(clock) -> EntitlementEngine:
    return EntitlementEngine(clock=clock)


async def _user(external_id: str = "100", **patch):
    user = await repository.get_or_create_user(external_id)
    if patch:
        user = await repository.update_user(external_id, patch)
    return user


# ---------------------------------------------------------------------------
# Interpretations and the monthly reset
# ---------------------------------------------------------------------------


async def test_free_user_blocked_after_five_interpretations(engine) -> None:
    user = await engine.ensure_interpret_allowed("100")
    for _ in range(5):
        await engine.record_interpretation(user.id)

    with pytest.raises(QuotaExceededError) as exc_info:
        await engine.ensure_interpret_allowed("100")

    assert exc_info.value.used == 5
    assert exc_info.value.limit == 5
    assert exc_info.value.category == ErrorCategory.UPGRADE_REQUIRED


async def test_monthly_counters_reset_on_new_utc_month(engine, clock) -> None:
    user = await engine.ensure_interpret_allowed("100")
    for _ in range(5):
        await engine.record_interpretation(user.id)
        await engine.record_followup(user.id)

    clock.now = datetime(2030, 7, 1, 0, 5, tzinfo=UTC)
    user = await engine.ensure_interpret_allowed("100")

    assert user.monthly_count == 0
    assert user.monthly_followups == 0


async def test_monthly_reset_is_noop_within_same_month(clock) -> None:
    user = await _user()

    assert await repository.ensure_monthly_reset(user.id, clock.now) is True
    assert await repository.ensure_monthly_reset(user.id, clock.now + timedelta(days=10)) is False


async def test_admin_bypasses_interpret_quota(engine) -> None:
    user = await engine.ensure_interpret_allowed(ADMIN)
    for _ in range(20):
        await engine.record_interpretation(user.id)

    user = await engine.ensure_interpret_allowed(ADMIN)

    assert user.monthly_count == 20


async def test_paid_user_is_not_limited(engine) -> None:
    await _user("100")
    await engine.activate_plan("100", "pro")
    user = await engine.ensure_interpret_allowed("100")
    for _ in range(30):
        await engine.record_interpretation(user.id)

    await engine.ensure_interpret_allowed("100")


async def test_followup_quota(engine) -> None:
    user = await engine.ensure_followup_allowed("100")
    for _ in range(3):
        await engine.record_followup(user.id)

    with pytest.raises(QuotaExceededError) as exc_info:
        await engine.ensure_followup_allowed("100")

    assert exc_info.value.feature == "followup"


# ---------------------------------------------------------------------------
# Spiritual practice
# ---------------------------------------------------------------------------


async def test_free_practice_once_per_local_month(engine, clock) -> None:
    user = await _user()

    assert await engine.ensure_practice_allowed(user) == "2030-06"
    await engine.record_practice(user)

    with pytest.raises(QuotaExceededError) as exc_info:
        await engine.ensure_practice_allowed(user)
    assert exc_info.value.category == ErrorCategory.UPGRADE_REQUIRED
    assert exc_info.value.period_key == "2030-06"

    clock.now = datetime(2030, 7, 2, 9, 0, tzinfo=UTC)
    assert await engine.ensure_practice_allowed(user) == "2030-07"


async def test_paid_practice_once_per_local_day(engine, clock) -> None:
    await _user()
    user = await engine.activate_plan("100", "paid")

    assert await engine.ensure_practice_allowed(user) == "2030-06-15"
    await engine.record_practice(user)

    with pytest.raises(QuotaExceededError) as exc_info:
        await engine.ensure_practice_allowed(user)
    assert exc_info.value.category == ErrorCategory.PERIOD_LOCKED

    clock.now = clock.now + timedelta(days=1)
    assert await engine.ensure_practice_allowed(user) == "2030-06-16"


async def test_practice_day_follows_user_timezone(engine, clock) -> None:
    await _user(timezone="Asia/Tokyo")
    user = await engine.activate_plan("100", "paid")

    # 10:30 UTC is 19:30 in Tokyo; 16:00 UTC is already the next Tokyo day
    await engine.record_practice(user)
    clock.now = datetime(2030, 6, 15, 16, 0, tzinfo=UTC)

    assert await engine.ensure_practice_allowed(user) == "2030-06-16"


async def test_practice_marks_the_checked_day_when_issued_after_midnight(engine, clock) -> None:
    await _user()
    user = await engine.activate_plan("100", "paid")

    clock.now = datetime(2030, 6, 15, 23, 59, 58, tzinfo=UTC)
    period_key = await engine.ensure_practice_allowed(user)
    clock.now = datetime(2030, 6, 16, 0, 0, 3, tzinfo=UTC)
    await engine.record_practice(user, period_key)

    assert period_key == "2030-06-15"
    assert await engine.ensure_practice_allowed(user) == "2030-06-16"


# ---------------------------------------------------------------------------
# Weekly report availability
# ---------------------------------------------------------------------------


async def test_report_no_dreams_yet(engine) -> None:
    user = await _user()

    availability = await engine.report_availability(user)

    assert availability.state == ReportState.NO_DREAMS_YET
    assert availability.can_generate is False


async def test_report_waiting_for_first_window(engine, clock) -> None:
    user = await _user()
    await repository.create_dream_entry(user.id, "a dream", created_at=clock.now - timedelta(days=3))

    availability = await engine.report_availability(user)

    assert availability.state == ReportState.WAITING_FOR_FIRST_WINDOW
    assert availability.days_progress == 3
    assert availability.days_until_next == 4
    assert availability.total_days == 7


async def test_free_report_once_per_month(engine, clock) -> None:
    user = await _user()
    await repository.create_dream_entry(user.id, "a dream", created_at=clock.now - timedelta(days=8))

    assert (await engine.report_availability(user)).state == ReportState.AVAILABLE

    await engine.record_report(user)
    user = await repository.get_user(user.id)
    availability = await engine.report_availability(user)

    assert availability.state == ReportState.FREE_EXHAUSTED_THIS_MONTH
    assert availability.next_available_on == date(2030, 7, 1)

    clock.now = datetime(2030, 7, 1, 8, 0, tzinfo=UTC)
    assert (await engine.report_availability(user)).state == ReportState.AVAILABLE


async def test_paid_report_cooldown(engine, clock) -> None:
    await _user()
    user = await engine.activate_plan("100", "paid")
    await repository.create_dream_entry(user.id, "a dream", created_at=clock.now - timedelta(days=10))

    await engine.record_report(user)
    user = await repository.get_user(user.id)
    availability = await engine.report_availability(user)

    assert availability.state == ReportState.PAID_COOLDOWN_ACTIVE
    assert availability.days_until_next == 7
    assert availability.next_available_on == date(2030, 6, 22)

    clock.now = clock.now + timedelta(days=7)
    assert (await engine.report_availability(user)).state == ReportState.AVAILABLE


async def test_free_report_marks_the_checked_month_when_finished_next_month(engine, clock) -> None:
    clock.now = datetime(2030, 6, 30, 23, 59, 58, tzinfo=UTC)
    user = await _user()
    await repository.create_dream_entry(user.id, "a dream", created_at=clock.now - timedelta(days=8))

    user, availability = await engine.ensure_report_allowed("100")
    clock.now = datetime(2030, 7, 1, 0, 0, 3, tzinfo=UTC)
    await engine.record_report(user, availability.checked_at)
    user = await repository.get_user(user.id)

    assert user.last_report_month == "2030-06"
    assert (await engine.report_availability(user)).state == ReportState.AVAILABLE


async def test_ensure_report_allowed_raises_when_unavailable(engine) -> None:
    await _user()

    with pytest.raises(ReportNotAvailableError) as exc_info:
        await engine.ensure_report_allowed("100")

    assert exc_info.value.availability.state == ReportState.NO_DREAMS_YET


async def test_admin_report_always_available(engine) -> None:
    user = await _user(ADMIN)

    availability = await engine.report_availability(user)

    assert availability.state == ReportState.AVAILABLE


# ---------------------------------------------------------------------------
# Plan activation
# ---------------------------------------------------------------------------


async def test_activate_plan_sets_expiry(engine) -> None:
    await _user()

    user = await engine.activate_plan("100", "premium", months=3)

    assert user.plan == "paid"
    assert user.plan_until.month == 9
    assert user.plan_until.day == 15


async def test_activate_free_clears_expiry(engine) -> None:
    await _user()
    await engine.activate_plan("100", "paid")

    user = await engine.activate_plan("100", "free")

    assert user.plan == "free"
    assert user.plan_until is None


async def test_activate_plan_unknown_user(engine) -> None:
    with pytest.raises(NotFoundError):
        await engine.activate_plan("404", "paid")
