"""Token usage and daily cost tracking with budget thresholds.

Usage is aggregated per UTC day in process memory:
  - every call appends a UsageRecord to the day's list
  - the day's DailyCostSummary keeps totals and an "operation-model" breakdown
  - after each update check_budget() compares spend with the daily budget

Budget checks are observational (logs + metrics) unless
settings.enforce_daily_budget is set, in which case ensure_within_budget()
raises BudgetExceededError before any further LLM call.
"""

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta
from enum import Enum
from typing import Any

import structlog

from dreamjournal.core.config import Settings, get_settings
from dreamjournal.core.correlation import get_correlation_id
from dreamjournal.core.exceptions import BudgetExceededError
from dreamjournal.metrics.cloudwatch import emit_business_event, emit_token_usage
from dreamjournal.usage.pricing import calculate_token_cost

logger = structlog.get_logger(__name__)


class BudgetLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class UsageRecord:
    prompt_tokens: int
    completion_tokens: int
    model: str
    operation: str
    user_id: str | None
    correlation_id: str | None
    timestamp: datetime
    cost_usd: float

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass
class BreakdownEntry:
    tokens: int = 0
    cost: float = 0.0
    count: int = 0


@dataclass
class DailyCostSummary:
    date: str
    total_tokens: int = 0
    total_cost_usd: float = 0.0
    operation_breakdown: dict[str, BreakdownEntry] = field(default_factory=dict)

    def add(self, record: UsageRecord) -> None:
        self.total_tokens += record.total_tokens
        self.total_cost_usd += record.cost_usd
        entry = self.operation_breakdown.setdefault(f"{record.operation}-{record.model}", BreakdownEntry())
        entry.tokens += record.total_tokens
        entry.cost += record.cost_usd
        entry.count += 1


@dataclass(frozen=True)
class BudgetStatus:
    daily_used: float
    daily_limit: float
    remaining_budget: float
    usage_percent: float
    is_over_budget: bool


def _day(moment: datetime) -> str:
    return moment.astimezone(UTC).date().isoformat()


class UsageTracker:
    """In-process token/cost ledger keyed by UTC day.

    Args:
        settings: budget configuration (defaults to get_settings()).
        clock: returns the current aware datetime (for deterministic tests).
    """

    def __init__(self, settings: Settings | None = None, clock: Callable[[], datetime] | None = None):
        self.settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(UTC))
        self._records: dict[str, list[UsageRecord]] = {}
        self._daily: dict[str, DailyCostSummary] = {}

    def track(
        self,
        model: str,
        prompt_tokens: int,
        completion_tokens: int,
        operation: str,
        user_id: str | None = None,
        correlation_id: str | None = None,
    ) -> UsageRecord:
        now = self._clock()
        record = UsageRecord(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            model=model,
            operation=operation,
            user_id=str(user_id) if user_id is not None else None,
            correlation_id=correlation_id or get_correlation_id(),
            timestamp=now,
            cost_usd=calculate_token_cost(model, prompt_tokens, completion_tokens),
        )

        day = _day(now)
        self._records.setdefault(day, []).append(record)
        self._daily.setdefault(day, DailyCostSummary(date=day)).add(record)

        logger.info(
            "token_usage_tracked",
            user_id=record.user_id,
            model=model,
            operation=operation,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=record.total_tokens,
            cost_usd=round(record.cost_usd, 6),
        )
        emit_token_usage(operation, model, record.total_tokens)

        self.check_budget(day)
        return record

    def check_budget(self, day: str | None = None) -> BudgetLevel:
        day = day or _day(self._clock())
        summary = self._daily.get(day)
        limit = self.settings.daily_budget_usd
        if summary is None or not limit:
            return BudgetLevel.OK

        percent = summary.total_cost_usd / limit * 100
        if percent >= 100:
            logger.error(
                "daily_budget_exceeded",
                date=day,
                total_cost_usd=summary.total_cost_usd,
                daily_limit_usd=limit,
                usage_percent=round(percent, 2),
            )
            emit_business_event("budget_exceeded")
            return BudgetLevel.EXCEEDED
        if percent >= self.settings.budget_warning_threshold:
            logger.warning(
                "daily_budget_warning",
                date=day,
                total_cost_usd=summary.total_cost_usd,
                daily_limit_usd=limit,
                usage_percent=round(percent, 2),
            )
            return BudgetLevel.WARNING
        return BudgetLevel.OK

    def ensure_within_budget(self) -> None:
        """Raise BudgetExceededError if enforcement is on and today's spend hit the limit."""
        if not self.settings.enforce_daily_budget:
            return
        status = self.budget_status()
        if status.daily_limit and status.is_over_budget:
            raise BudgetExceededError(status.daily_used, status.daily_limit)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_daily_usage(self, day: str | None = None) -> DailyCostSummary | None:
        return self._daily.get(day or _day(self._clock()))

    def get_usage_by_user(self, user_id: str, day: str | None = None) -> list[UsageRecord]:
        records = self._records.get(day or _day(self._clock()), [])
        return [r for r in records if r.user_id == str(user_id)]

    def get_usage_by_operation(self, operation: str, day: str | None = None) -> list[UsageRecord]:
        records = self._records.get(day or _day(self._clock()), [])
        return [r for r in records if r.operation == operation]

    def budget_status(self) -> BudgetStatus:
        summary = self.get_daily_usage()
        limit = self.settings.daily_budget_usd or 0.0
        used = summary.total_cost_usd if summary else 0.0
        return BudgetStatus(
            daily_used=used,
            daily_limit=limit,
            remaining_budget=max(0.0, limit - used),
            usage_percent=(used / limit * 100) if limit > 0 else 0.0,
            is_over_budget=used >= limit,
        )

    def export_usage(self, start: date | str, end: date | str) -> dict[str, Any]:
        """Summaries and raw records for days in [start, end] (ISO dates)."""
        start_key = start.isoformat() if isinstance(start, date) else start
        end_key = end.isoformat() if isinstance(end, date) else end
        summary: dict[str, DailyCostSummary] = {}
        detailed: dict[str, list[UsageRecord]] = {}
        for day, costs in sorted(self._daily.items()):
            if start_key <= day <= end_key:
                summary[day] = costs
                detailed[day] = list(self._records.get(day, []))
        return {"summary": summary, "detailed": detailed}

    def cleanup_old_usage(self, retention_days: int | None = None) -> int:
        """Drop days older than the retention window. Returns the number of days removed."""
        retention = retention_days if retention_days is not None else self.settings.usage_retention_days
        cutoff = (self._clock().astimezone(UTC) - timedelta(days=retention)).date().isoformat()
        stale = [day for day in self._records.keys() | self._daily.keys() if day < cutoff]
        for day in stale:
            self._records.pop(day, None)
            self._daily.pop(day, None)
        if stale:
            logger.info("usage_cleanup", removed_days=len(stale), retention_days=retention)
        return len(stale)


_tracker: UsageTracker | None = None


def get_usage_tracker() -> UsageTracker:
    """Process-wide tracker."""
    global _tracker
    if _tracker is None:
        _tracker = UsageTracker()
    return _tracker
