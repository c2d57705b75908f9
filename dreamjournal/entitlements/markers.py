"""Per-period issuance markers for calendar-gated features."""

from datetime import datetime

import structlog

from dreamjournal.db import repository
from dreamjournal.entitlements.periods import day_key, month_key
from dreamjournal.entitlements.plans import is_paid_plan

logger = structlog.get_logger(__name__)

PRACTICE = "practice"
WEEKLY_REPORT = "weekly_report"


def practice_period_key(plan: str | None, now: datetime, tz: str | None) -> str:
    """Paid users get one practice per local day, free users one per local month."""
    if is_paid_plan(plan):
        return day_key(now, tz)
    return month_key(now, tz)


class FeatureMarkerStore:
    """Tracks the last period in which a feature was issued to a user.

    A marker equal to the current period key blocks the feature; any other
    value (or none) allows it. Recording overwrites the previous period.
    """

    async def is_issued(self, user_id: int, feature: str, period_key: str) -> bool:
        marker = await repository.get_feature_marker(user_id, feature)
        return marker is not None and marker.period_key == period_key

    async def mark_issued(self, user_id: int, feature: str, period_key: str, now: datetime | None = None) -> None:
        await repository.set_feature_marker(user_id, feature, period_key, now)
        logger.info("feature_marker_set", user_id=user_id, feature=feature, period_key=period_key)
