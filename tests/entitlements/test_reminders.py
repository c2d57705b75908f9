"""Tests for reminder due-checks and bookkeeping."""

from datetime import UTC, datetime, timedelta

import pytest

from dreamjournal.db import repository
from dreamjournal.db.models.user import User
from dreamjournal.entitlements.reminders import (
    ReminderKind,
    due_reminders,
    is_reminder_due,
    mark_reminder_sent,
)

# Saturday
NOW = datetime(2030, 6, 15, 10, 30, tzinfo=UTC)


def _user(**fields) -> User:
    defaults = {
        "id": 1,
        "external_id": "100",
        "timezone": "UTC",
        "reminders_enabled": True,
        "weekly_enabled": False,
    }
    defaults.update(fields)
    return User(**defaults)


# ---------------------------------------------------------------------------
# Morning / evening
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_morning_due_at_exact_minute() -> None:
    user = _user(remind_morning="10:30")

    assert is_reminder_due(user, ReminderKind.MORNING, NOW) is True
    assert is_reminder_due(user, ReminderKind.MORNING, NOW + timedelta(minutes=1)) is False


@pytest.mark.unit
def test_morning_falls_back_to_wake_time() -> None:
    user = _user(remind_morning=None, wake_time="10:30")

    assert is_reminder_due(user, "morning", NOW) is True


@pytest.mark.unit
def test_evening_uses_local_time() -> None:
    # 10:30 UTC is 13:30 in Moscow
    user = _user(timezone="Europe/Moscow", remind_evening="13:30")

    assert is_reminder_due(user, ReminderKind.EVENING, NOW) is True


@pytest.mark.unit
def test_disabled_reminders_are_never_due() -> None:
    user = _user(reminders_enabled=False, remind_morning="10:30")

    assert is_reminder_due(user, ReminderKind.MORNING, NOW) is False


@pytest.mark.unit
def test_morning_sent_once_per_local_day() -> None:
    user = _user(remind_morning="10:30", last_morning_sent=NOW - timedelta(minutes=1))

    assert is_reminder_due(user, ReminderKind.MORNING, NOW) is False

    user.last_morning_sent = NOW - timedelta(days=1)
    assert is_reminder_due(user, ReminderKind.MORNING, NOW) is True


# ---------------------------------------------------------------------------
# Weekly
# ---------------------------------------------------------------------------


@pytest.mark.unit
def test_weekly_due_on_configured_day_and_hour() -> None:
    user = _user(weekly_enabled=True, weekly_day=6, weekly_hour=10)
    on_the_hour = NOW.replace(minute=0)

    assert is_reminder_due(user, ReminderKind.WEEKLY, on_the_hour) is True
    assert is_reminder_due(user, ReminderKind.WEEKLY, NOW) is False
    assert is_reminder_due(user, ReminderKind.WEEKLY, on_the_hour + timedelta(days=1)) is False


@pytest.mark.unit
def test_weekly_day_zero_is_sunday() -> None:
    user = _user(weekly_enabled=True, weekly_day=0, weekly_hour=None)
    sunday_ten = datetime(2030, 6, 16, 10, 0, tzinfo=UTC)

    assert is_reminder_due(user, ReminderKind.WEEKLY, sunday_ten) is True


@pytest.mark.unit
def test_weekly_sent_once_per_iso_week() -> None:
    on_the_hour = NOW.replace(minute=0)
    user = _user(weekly_enabled=True, weekly_day=6, weekly_hour=10, last_weekly_sent=on_the_hour)

    assert is_reminder_due(user, ReminderKind.WEEKLY, on_the_hour) is False
    assert is_reminder_due(user, ReminderKind.WEEKLY, on_the_hour + timedelta(days=7)) is True


# ---------------------------------------------------------------------------
# Scan + mark (database)
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("db")
async def test_due_reminders_scan_and_mark() -> None:
    await repository.get_or_create_user("100")
    await repository.update_user("100", {"reminders_enabled": True, "remind_morning": "10:30", "timezone": "UTC"})
    await repository.get_or_create_user("200")

    due = await due_reminders(NOW)

    assert [(u.external_id, kind) for u, kind in due] == [("100", ReminderKind.MORNING)]

    await mark_reminder_sent(due[0][0], ReminderKind.MORNING, NOW)
    assert await due_reminders(NOW) == []


@pytest.mark.usefixtures("db")
async def test_due_reminders_runs_monthly_reset() -> None:
    user = await repository.get_or_create_user("100")
    await repository.inc_monthly_count(user.id)

    await due_reminders(NOW)

    user = await repository.get_user(user.id)
    assert user.monthly_count == 0
    assert user.last_plan_reset is not None


@pytest.mark.usefixtures("db")
async def test_repository_rejects_unknown_reminder_kind() -> None:
    user = await repository.get_or_create_user("100")

    with pytest.raises(ValueError):
        await repository.mark_reminder_sent(user.id, "hourly", NOW)
