"""Entitlement engine: plan quotas, calendar gates and weekly report availability.

Every check reads fresh state from the repository and is recomputed on each
call; nothing here is cached between user actions.
"""

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from enum import Enum

import structlog

from dreamjournal.core.config import Settings, get_settings
from dreamjournal.core.exceptions import (
    ErrorCategory,
    NotFoundError,
    QuotaExceededError,
    ReportNotAvailableError,
)
from dreamjournal.db import repository
from dreamjournal.db.models.user import User
from dreamjournal.entitlements.markers import (
    PRACTICE,
    WEEKLY_REPORT,
    FeatureMarkerStore,
    practice_period_key,
)
from dreamjournal.entitlements.periods import (
    as_utc,
    days_between_local,
    local_now,
    month_key,
    next_month_start,
    utcnow,
)
from dreamjournal.entitlements.plans import (
    Plan,
    can_ask_followup,
    can_interpret,
    can_run_weekly,
    is_paid_plan,
    monthly_followup_quota,
    monthly_interpretation_quota,
    normalize_plan,
)
from dreamjournal.metrics.cloudwatch import emit_business_event

logger = structlog.get_logger(__name__)

# Days of journaling before the first report, and the paid cooldown between reports
REPORT_WINDOW_DAYS = 7


class ReportState(str, Enum):
    """Weekly report availability states."""

    NO_DREAMS_YET = "no_dreams_yet"
    WAITING_FOR_FIRST_WINDOW = "waiting_for_first_window"
    AVAILABLE = "available"
    FREE_EXHAUSTED_THIS_MONTH = "free_exhausted_this_month"
    PAID_COOLDOWN_ACTIVE = "paid_cooldown_active"


@dataclass(frozen=True)
class ReportAvailability:
    state: ReportState
    can_generate: bool
    days_progress: int | None = None
    days_until_next: int | None = None
    next_available_on: date | None = None
    total_days: int = REPORT_WINDOW_DAYS
    # Instant the decision was made at; record_report marks that period
    checked_at: datetime | None = None


class EntitlementEngine:
    """Decides whether a user may use a gated feature right now.

    Args:
        settings: Settings (admin predicate, quotas). Defaults to get_settings().
        clock: Callable returning the current aware datetime (for tests).
        markers: FeatureMarkerStore for period-gated features.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], datetime] | None = None,
        markers: FeatureMarkerStore | None = None,
    ):
        self.settings = settings or get_settings()
        self._clock = clock or utcnow
        self.markers = markers or FeatureMarkerStore()

    def now(self) -> datetime:
        return as_utc(self._clock())

    def is_admin(self, user: User) -> bool:
        return self.settings.is_admin(user.external_id)

    # ------------------------------------------------------------------
    # Interpretations
    # ------------------------------------------------------------------

    async def ensure_interpret_allowed(self, external_id: str) -> User:
        """Reset the monthly counter if due, then check the interpretation quota.

        Returns the freshly read User. Raises QuotaExceededError for free users
        at or over their monthly limit.
        """
        user = await self._fresh_user(external_id)
        if self.is_admin(user):
            return user

        if not can_interpret(user.plan, user.monthly_count):
            limit = monthly_interpretation_quota(user.plan)
            self._blocked(user, "interpret", user.monthly_count, limit)
            raise QuotaExceededError("interpret", user.monthly_count, limit)
        return user

    async def record_interpretation(self, user_id: int) -> None:
        await repository.inc_monthly_count(user_id)

    # ------------------------------------------------------------------
    # Follow-up questions
    # ------------------------------------------------------------------

    async def ensure_followup_allowed(self, external_id: str) -> User:
        user = await self._fresh_user(external_id)
        if self.is_admin(user):
            return user

        if not can_ask_followup(user.plan, user.monthly_followups):
            limit = monthly_followup_quota(user.plan)
            self._blocked(user, "followup", user.monthly_followups, limit)
            raise QuotaExceededError("followup", user.monthly_followups, limit)
        return user

    async def record_followup(self, user_id: int) -> None:
        await repository.inc_monthly_followups(user_id)

    # ------------------------------------------------------------------
    # Spiritual practice (paid: once per local day, free: once per local month)
    # ------------------------------------------------------------------

    async def ensure_practice_allowed(self, user: User) -> str:
        """Return the current practice period key, or raise if already issued in it."""
        key = practice_period_key(user.plan, self.now(), user.timezone)
        if self.is_admin(user):
            return key

        if await self.markers.is_issued(user.id, PRACTICE, key):
            category = ErrorCategory.PERIOD_LOCKED if is_paid_plan(user.plan) else ErrorCategory.UPGRADE_REQUIRED
            self._blocked(user, PRACTICE, 1, 1)
            raise QuotaExceededError(PRACTICE, 1, 1, category=category, period_key=key)
        return key

    async def record_practice(self, user: User, period_key: str | None = None) -> None:
        """Mark practice as issued in `period_key`, the key returned by ensure_practice_allowed."""
        now = self.now()
        key = period_key or practice_period_key(user.plan, now, user.timezone)
        await self.markers.mark_issued(user.id, PRACTICE, key, now)

    # ------------------------------------------------------------------
    # Weekly report
    # ------------------------------------------------------------------

    async def report_availability(self, user: User, now: datetime | None = None) -> ReportAvailability:
        now = now or self.now()
        tz = user.timezone

        if self.is_admin(user):
            return ReportAvailability(ReportState.AVAILABLE, True)

        first = await repository.get_first_dream_date(user.id)
        if first is None:
            return ReportAvailability(ReportState.NO_DREAMS_YET, False)

        days_since_first = days_between_local(first, now, tz)
        if days_since_first < REPORT_WINDOW_DAYS:
            return ReportAvailability(
                ReportState.WAITING_FOR_FIRST_WINDOW,
                False,
                days_progress=max(0, days_since_first),
                days_until_next=REPORT_WINDOW_DAYS - max(0, days_since_first),
            )

        if is_paid_plan(user.plan):
            if user.last_report_at is not None:
                last = as_utc(user.last_report_at)
                days_until = max(0, REPORT_WINDOW_DAYS - days_between_local(last, now, tz))
                if days_until > 0:
                    return ReportAvailability(
                        ReportState.PAID_COOLDOWN_ACTIVE,
                        False,
                        days_until_next=days_until,
                        next_available_on=local_now(tz, now).date() + timedelta(days=days_until),
                    )
            return ReportAvailability(ReportState.AVAILABLE, True)

        current_month = month_key(now, tz)
        issued = user.last_report_month == current_month or await self.markers.is_issued(
            user.id, WEEKLY_REPORT, current_month
        )
        if not can_run_weekly(user.plan, int(issued)):
            return ReportAvailability(
                ReportState.FREE_EXHAUSTED_THIS_MONTH,
                False,
                next_available_on=next_month_start(now, tz),
            )
        return ReportAvailability(ReportState.AVAILABLE, True)

    async def ensure_report_allowed(self, external_id: str) -> tuple[User, ReportAvailability]:
        user = await repository.get_or_create_user(external_id)
        now = self.now()
        availability = replace(await self.report_availability(user, now), checked_at=now)
        if not availability.can_generate:
            logger.info(
                "report_not_available",
                user_id=user.id,
                state=availability.state.value,
                days_until_next=availability.days_until_next,
            )
            emit_business_event("quota_blocked", feature=WEEKLY_REPORT)
            raise ReportNotAvailableError(availability)
        return user, availability

    async def record_report(self, user: User, checked_at: datetime | None = None) -> None:
        """Record a generated report against the period it was allowed in."""
        now = as_utc(checked_at) if checked_at else self.now()
        current_month = month_key(now, user.timezone)
        await repository.update_user(
            user.external_id,
            {"last_report_at": now, "last_report_month": current_month},
        )
        await self.markers.mark_issued(user.id, WEEKLY_REPORT, current_month, now)

    # ------------------------------------------------------------------
    # Plan changes
    # ------------------------------------------------------------------

    async def activate_plan(self, external_id: str, plan: str, months: int = 1) -> User:
        """Switch a user to `plan` for `months`. Called by payment and admin handlers."""
        normalized = normalize_plan(plan)
        if normalized == Plan.FREE:
            user = await repository.update_user(external_id, {"plan": Plan.FREE.value, "plan_until": None})
        else:
            user = await repository.set_plan(external_id, normalized.value, months, self.now())
            if user is None:
                raise NotFoundError(f"User {external_id} not found", external_id=external_id)
        logger.info("plan_activated", user_id=user.id, plan=normalized.value, months=months)
        emit_business_event("plan_activated", feature=normalized.value)
        return user

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _fresh_user(self, external_id: str) -> User:
        user = await repository.get_or_create_user(external_id)
        if await repository.ensure_monthly_reset(user.id, self.now()):
            user = await repository.get_user(user.id)
        return user

    def _blocked(self, user: User, feature: str, used: int, limit: int) -> None:
        logger.info(
            "quota_blocked",
            user_id=user.id,
            feature=feature,
            plan=normalize_plan(user.plan).value,
            used=used,
            limit=limit,
        )
        emit_business_event("quota_blocked", feature=feature)
