"""Reminder bookkeeping: whether a morning, evening or weekly reminder is due.

Sending is the transport's job; this module only answers "due now?" and
records that a reminder went out so it fires at most once per local day
(morning/evening) or ISO week (weekly).
"""

from datetime import datetime
from enum import Enum

from dreamjournal.db import repository
from dreamjournal.db.models.user import User
from dreamjournal.entitlements.periods import as_utc, local_now, parse_hhmm, resolve_zone

DEFAULT_WEEKLY_HOUR = 10


class ReminderKind(str, Enum):
    MORNING = "morning"
    EVENING = "evening"
    WEEKLY = "weekly"


def _sent_local(user: User, sent: datetime | None):
    if sent is None:
        return None
    return as_utc(sent).astimezone(resolve_zone(user.timezone))


def is_reminder_due(user: User, kind: ReminderKind | str, now: datetime) -> bool:
    kind = ReminderKind(kind)
    local = local_now(user.timezone, now)

    if kind == ReminderKind.WEEKLY:
        if not user.weekly_enabled:
            return False
        # Stored weekday: 0 = Sunday .. 6 = Saturday; isoweekday: 1 = Monday .. 7 = Sunday
        target = user.weekly_day or 0
        target_iso = 7 if target == 0 else target
        hour = user.weekly_hour if user.weekly_hour is not None else DEFAULT_WEEKLY_HOUR
        if local.isoweekday() != target_iso or local.hour != hour or local.minute != 0:
            return False
        last = _sent_local(user, user.last_weekly_sent)
        return last is None or last.isocalendar()[:2] != local.isocalendar()[:2]

    if not user.reminders_enabled:
        return False

    if kind == ReminderKind.MORNING:
        hhmm, sent = user.remind_morning or user.wake_time, user.last_morning_sent
    else:
        hhmm, sent = user.remind_evening or user.sleep_time, user.last_evening_sent

    at = parse_hhmm(hhmm)
    if at is None or (local.hour, local.minute) != at:
        return False
    last = _sent_local(user, sent)
    return last is None or last.date() != local.date()


async def mark_reminder_sent(user: User, kind: ReminderKind | str, now: datetime) -> None:
    await repository.mark_reminder_sent(user.id, ReminderKind(kind).value, now)


async def due_reminders(now: datetime) -> list[tuple[User, ReminderKind]]:
    """Scan all users and list the reminders due at `now`.

    Runs the lazy monthly reset for each user on the way, the same as any
    other access.
    """
    due: list[tuple[User, ReminderKind]] = []
    for user in await repository.get_all_users():
        await repository.ensure_monthly_reset(user.id, now)
        for kind in ReminderKind:
            if is_reminder_due(user, kind, now):
                due.append((user, kind))
    return due
