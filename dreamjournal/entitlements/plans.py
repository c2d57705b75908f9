"""Plan normalization and plan-based quota limits."""

from enum import Enum

from dreamjournal.core.config import get_settings

UNLIMITED = -1


class Plan(str, Enum):
    """Normalized subscription plans."""

    FREE = "free"
    PAID = "paid"


# Legacy plan names still present in stored rows
PLAN_ALIASES = {
    "plus": Plan.PAID,
    "lite": Plan.PAID,
    "pro": Plan.PAID,
    "premium": Plan.PAID,
}


def normalize_plan(plan: str | None) -> Plan:
    """Map a stored plan name to a Plan. Empty or unknown values are free."""
    value = (plan or "").strip().lower()
    if not value:
        return Plan.FREE
    if value in (Plan.FREE.value, Plan.PAID.value):
        return Plan(value)
    return PLAN_ALIASES.get(value, Plan.FREE)


def is_paid_plan(plan: str | None) -> bool:
    return normalize_plan(plan) == Plan.PAID


def plan_limits() -> dict[Plan, dict[str, int]]:
    """Per-plan monthly quotas. UNLIMITED (-1) means no ceiling."""
    settings = get_settings()
    return {
        Plan.FREE: {
            "interpretations": settings.free_monthly_interpretations,
            "followups": settings.free_monthly_followups,
            "weekly_reports": 1,
        },
        Plan.PAID: {
            "interpretations": UNLIMITED,
            "followups": UNLIMITED,
            "weekly_reports": UNLIMITED,
        },
    }


def monthly_interpretation_quota(plan: str | None) -> int:
    return plan_limits()[normalize_plan(plan)]["interpretations"]


def monthly_followup_quota(plan: str | None) -> int:
    return plan_limits()[normalize_plan(plan)]["followups"]


def monthly_report_quota(plan: str | None) -> int:
    return plan_limits()[normalize_plan(plan)]["weekly_reports"]


def _within(limit: int, used: int) -> bool:
    return limit == UNLIMITED or used < limit


def can_interpret(plan: str | None, used: int) -> bool:
    return _within(monthly_interpretation_quota(plan), used)


def can_ask_followup(plan: str | None, used: int) -> bool:
    return _within(monthly_followup_quota(plan), used)


def can_run_weekly(plan: str | None, used_this_month: int) -> bool:
    return _within(monthly_report_quota(plan), used_this_month)
