"""Persistence collaborator used by the entitlement engine and the dream service.

All functions open their own short session via session_scope(), so callers
never hold a session across an LLM call. Returned ORM objects are detached
snapshots (expire_on_commit=False); re-read them to observe later writes.
"""

import json
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Any

import structlog
from sqlalchemy import select, update

from dreamjournal.core.exceptions import NotFoundError
from dreamjournal.db.base import session_scope
from dreamjournal.db.models.dream_entry import DreamEntry
from dreamjournal.db.models.feature_marker import FeatureMarker
from dreamjournal.db.models.user import User
from dreamjournal.entitlements.periods import as_utc, is_same_utc_month, utcnow

logger = structlog.get_logger(__name__)

# Columns update_user() is allowed to touch
_USER_PATCHABLE = frozenset(
    {
        "plan",
        "plan_until",
        "timezone",
        "age_band",
        "chronotype",
        "esoterica_level",
        "sleep_goal",
        "wake_time",
        "sleep_time",
        "stress_level",
        "dream_frequency",
        "first_interpret_done",
        "last_report_at",
        "last_report_month",
        "reminders_enabled",
        "remind_morning",
        "remind_evening",
        "weekly_enabled",
        "weekly_day",
        "weekly_hour",
    }
)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


async def get_or_create_user(external_id: str) -> User:
    """Return the user for an external (Telegram) id, creating a free user if new."""
    external_id = str(external_id)
    async with session_scope() as session:
        result = await session.execute(select(User).where(User.external_id == external_id))
        user = result.scalar_one_or_none()
        if user is not None:
            return user

        user = User(external_id=external_id, plan="free", monthly_count=0, monthly_followups=0)
        session.add(user)
        await session.flush()
        await session.refresh(user)
        logger.info("user_created", external_id=external_id, user_id=user.id)
        return user


async def get_user_by_external_id(external_id: str) -> User | None:
    async with session_scope() as session:
        result = await session.execute(select(User).where(User.external_id == str(external_id)))
        return result.scalar_one_or_none()


async def get_user(user_id: int) -> User | None:
    async with session_scope() as session:
        return await session.get(User, user_id)


async def get_all_users() -> list[User]:
    async with session_scope() as session:
        result = await session.execute(select(User).order_by(User.id))
        return list(result.scalars().all())


async def update_user(external_id: str, patch: dict[str, Any]) -> User:
    """Apply a partial update to a user and return the fresh row.

    Raises:
        ValueError: if patch names a column that is not user-editable.
        NotFoundError: if the user does not exist.
    """
    unknown = set(patch) - _USER_PATCHABLE
    if unknown:
        raise ValueError(f"Cannot patch user fields: {sorted(unknown)}")

    async with session_scope() as session:
        result = await session.execute(select(User).where(User.external_id == str(external_id)))
        user = result.scalar_one_or_none()
        if user is None:
            raise NotFoundError(f"User {external_id} not found", external_id=str(external_id))
        for key, value in patch.items():
            setattr(user, key, value)
        await session.flush()
        await session.refresh(user)
        return user


async def set_plan(external_id: str, plan: str, months: int = 1, now: datetime | None = None) -> User | None:
    """Activate a plan for `months` from now. Returns None for unknown users."""
    now = now or utcnow()
    async with session_scope() as session:
        result = await session.execute(select(User).where(User.external_id == str(external_id)))
        user = result.scalar_one_or_none()
        if user is None:
            return None
        user.plan = plan
        user.plan_until = _add_months(now, months)
        await session.flush()
        await session.refresh(user)
        logger.info("plan_set", external_id=external_id, plan=plan, plan_until=user.plan_until.isoformat())
        return user


def _add_months(moment: datetime, months: int) -> datetime:
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    # Clamp the day to the target month's length (Jan 31 + 1 month -> Feb 28/29)
    next_month_first = datetime(year + (month // 12), month % 12 + 1, 1, tzinfo=moment.tzinfo)
    last_day = (next_month_first - timedelta(days=1)).day
    return moment.replace(year=year, month=month, day=min(moment.day, last_day))


# ---------------------------------------------------------------------------
# Monthly counters
# ---------------------------------------------------------------------------


async def ensure_monthly_reset(user_id: int, now: datetime | None = None) -> bool:
    """Zero the monthly counters if the last reset was in an earlier UTC month.

    Returns True when a reset happened. A second call in the same month is a no-op.
    """
    now = now or utcnow()
    async with session_scope() as session:
        user = await session.get(User, user_id)
        if user is None:
            return False

        last = user.last_plan_reset
        if last is not None and is_same_utc_month(as_utc(last), now):
            return False

        user.monthly_count = 0
        user.monthly_followups = 0
        user.last_plan_reset = now
        logger.info(
            "monthly_counters_reset",
            user_id=user_id,
            previous_reset=as_utc(last).isoformat() if last else None,
        )
        return True


async def inc_monthly_count(user_id: int) -> None:
    async with session_scope() as session:
        await session.execute(
            update(User).where(User.id == user_id).values(monthly_count=User.monthly_count + 1)
        )


async def inc_monthly_followups(user_id: int) -> None:
    async with session_scope() as session:
        await session.execute(
            update(User).where(User.id == user_id).values(monthly_followups=User.monthly_followups + 1)
        )


# ---------------------------------------------------------------------------
# Dream entries
# ---------------------------------------------------------------------------


async def create_dream_entry(
    user_id: int,
    text: str,
    slept_at: datetime | None = None,
    symbols_raw: str | None = None,
    created_at: datetime | None = None,
) -> DreamEntry:
    async with session_scope() as session:
        entry = DreamEntry(
            user_id=user_id,
            text=text,
            slept_at=slept_at,
            symbols_raw=symbols_raw,
            created_at=created_at or utcnow(),
        )
        session.add(entry)
        await session.flush()
        await session.refresh(entry)
        return entry


async def get_dream_entry(entry_id: int) -> DreamEntry | None:
    async with session_scope() as session:
        return await session.get(DreamEntry, entry_id)


async def get_last_dream(user_id: int) -> DreamEntry | None:
    async with session_scope() as session:
        result = await session.execute(
            select(DreamEntry)
            .where(DreamEntry.user_id == user_id)
            .order_by(DreamEntry.created_at.desc(), DreamEntry.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()


async def list_dreams(user_id: int, limit: int = 20) -> list[DreamEntry]:
    async with session_scope() as session:
        result = await session.execute(
            select(DreamEntry)
            .where(DreamEntry.user_id == user_id)
            .order_by(DreamEntry.created_at.desc(), DreamEntry.id.desc())
            .limit(limit)
        )
        return list(result.scalars().all())


async def get_first_dream_date(user_id: int) -> datetime | None:
    async with session_scope() as session:
        result = await session.execute(
            select(DreamEntry.created_at)
            .where(DreamEntry.user_id == user_id)
            .order_by(DreamEntry.created_at.asc())
            .limit(1)
        )
        first = result.scalar_one_or_none()
        return as_utc(first) if first is not None else None


async def get_dreams_since(user_id: int, since: datetime) -> list[DreamEntry]:
    async with session_scope() as session:
        result = await session.execute(
            select(DreamEntry)
            .where(DreamEntry.user_id == user_id, DreamEntry.created_at >= since)
            .order_by(DreamEntry.created_at.asc())
        )
        return list(result.scalars().all())


async def save_interpretation(entry_id: int, llm_json: dict | None, keywords: str | None = None) -> None:
    """Persist the interpretation as JSON text (None clears it)."""
    values: dict[str, Any] = {
        "llm_json_text": json.dumps(llm_json, ensure_ascii=False) if llm_json is not None else None,
    }
    if keywords is not None:
        values["keywords"] = keywords
    async with session_scope() as session:
        await session.execute(update(DreamEntry).where(DreamEntry.id == entry_id).values(**values))


async def save_entry_cost(entry_id: int, tokens_in: int, tokens_out: int, cost_rub: float) -> None:
    async with session_scope() as session:
        await session.execute(
            update(DreamEntry)
            .where(DreamEntry.id == entry_id)
            .values(tokens_in=tokens_in, tokens_out=tokens_out, cost_rub=cost_rub)
        )


# ---------------------------------------------------------------------------
# Keyword tag sets on dream entries
# ---------------------------------------------------------------------------


def parse_tags(keywords: str | None) -> set[str]:
    """Split a comma-joined keyword string into a set of trimmed, non-empty tags."""
    if not keywords:
        return set()
    return {part.strip() for part in keywords.split(",") if part.strip()}


def join_tags(tags: Iterable[str]) -> str:
    return ", ".join(sorted({t.strip() for t in tags if t and t.strip()}))


async def update_dream_entry_keywords(entry_id: int, keywords: str) -> None:
    async with session_scope() as session:
        await session.execute(update(DreamEntry).where(DreamEntry.id == entry_id).values(keywords=keywords))


async def append_keyword(entry_id: int, keyword: str) -> None:
    async with session_scope() as session:
        entry = await session.get(DreamEntry, entry_id)
        if entry is None:
            return
        tags = parse_tags(entry.keywords)
        tags.add(keyword.strip())
        entry.keywords = join_tags(tags)


async def clear_keyword(entry_id: int, keyword: str) -> None:
    async with session_scope() as session:
        entry = await session.get(DreamEntry, entry_id)
        if entry is None:
            return
        tags = parse_tags(entry.keywords)
        tags.discard(keyword.strip())
        entry.keywords = join_tags(tags)


async def add_keyword_to_latest_entry(user_id: int, keyword: str) -> None:
    latest = await get_last_dream(user_id)
    if latest is None:
        return
    await append_keyword(latest.id, keyword)


# ---------------------------------------------------------------------------
# Feature markers
# ---------------------------------------------------------------------------


async def get_feature_marker(user_id: int, feature: str) -> FeatureMarker | None:
    async with session_scope() as session:
        result = await session.execute(
            select(FeatureMarker).where(FeatureMarker.user_id == user_id, FeatureMarker.feature == feature)
        )
        return result.scalar_one_or_none()


async def set_feature_marker(user_id: int, feature: str, period_key: str, now: datetime | None = None) -> None:
    """Record that `feature` was issued in `period_key` (replaces the previous period)."""
    now = now or utcnow()
    async with session_scope() as session:
        result = await session.execute(
            select(FeatureMarker).where(FeatureMarker.user_id == user_id, FeatureMarker.feature == feature)
        )
        marker = result.scalar_one_or_none()
        if marker is None:
            session.add(FeatureMarker(user_id=user_id, feature=feature, period_key=period_key, issued_at=now))
        else:
            marker.period_key = period_key
            marker.issued_at = now


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

_REMINDER_COLUMNS = {
    "morning": "last_morning_sent",
    "evening": "last_evening_sent",
    "weekly": "last_weekly_sent",
}


async def mark_reminder_sent(user_id: int, kind: str, when: datetime | None = None) -> None:
    column = _REMINDER_COLUMNS.get(kind)
    if column is None:
        raise ValueError(f"Unknown reminder kind: {kind}")
    async with session_scope() as session:
        await session.execute(update(User).where(User.id == user_id).values({column: when or utcnow()}))
