"""DreamService: gated user actions over the LLM operations.

Every gated action runs in the same order:

    rate limit -> entitlement check (with monthly reset) -> budget guard
    -> LLM operation -> persist result and cost -> entitlement counter/marker

Eligibility is re-read from the store right before the LLM call; nothing is
decided from state captured earlier in the conversation.
"""

from collections import Counter
from dataclasses import dataclass, field
from datetime import date, datetime

import structlog

from dreamjournal.core.config import Settings, get_settings
from dreamjournal.core.correlation import correlation_scope, get_correlation_id
from dreamjournal.core.exceptions import BudgetExceededError, NotFoundError
from dreamjournal.db import repository
from dreamjournal.db.models.dream_entry import DreamEntry
from dreamjournal.db.models.user import User
from dreamjournal.entitlements.engine import EntitlementEngine, ReportAvailability
from dreamjournal.entitlements.periods import as_utc, local_week_bounds, resolve_zone
from dreamjournal.entitlements.plans import normalize_plan
from dreamjournal.llm.operations import DreamLLM, Profile, ReportStats, report_fallback
from dreamjournal.llm.schema import Interpretation
from dreamjournal.metrics.cloudwatch import emit_business_event
from dreamjournal.ratelimit.limiter import RateLimiter, build_rate_limiter
from dreamjournal.usage.pricing import estimate_cost_rub
from dreamjournal.usage.tracker import UsageTracker, get_usage_tracker

logger = structlog.get_logger(__name__)

AWAITING_PROFILE_TAG = "awaiting_profile"
TOP_SYMBOLS = 3


def escape_html(text: str) -> str:
    """Escape &, < and > for Telegram HTML parse mode."""
    return str(text).replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def dream_time(dream: DreamEntry) -> datetime:
    """When the dream happened: slept_at if the user gave one, else when it was recorded."""
    return as_utc(dream.slept_at or dream.created_at)


def calculate_dream_streak(dreams: list[DreamEntry], tz: str | None = None) -> int:
    """Longest run of consecutive local days with at least one dream."""
    if not dreams:
        return 0
    zone = resolve_zone(tz)
    days = sorted({dream_time(d).astimezone(zone).date() for d in dreams})

    best = current = 1
    for previous, day in zip(days, days[1:]):
        current = current + 1 if (day - previous).days == 1 else 1
        best = max(best, current)
    return best


def top_symbols(dreams: list[DreamEntry], limit: int = TOP_SYMBOLS) -> list[tuple[str, int]]:
    """Most frequent symbols across detected and user-declared ones, lowercased."""
    counts: Counter[str] = Counter()
    for dream in dreams:
        detected = dream.interpretation.get("symbols_detected")
        symbols = [s for s in detected if isinstance(s, str)] if isinstance(detected, list) else []
        for symbol in symbols + dream.user_symbols:
            key = symbol.strip().lower()
            if key:
                counts[key] += 1
    return counts.most_common(limit)


@dataclass
class InterpretationResult:
    entry_id: int
    interpretation: Interpretation
    tokens_in: int
    tokens_out: int
    cost_rub: float
    attempts: int


@dataclass
class WeeklyReport:
    period_start: date
    period_end: date
    timezone: str
    count_dreams: int
    count_interps: int
    streak_max: int
    top_symbols: list[tuple[str, int]] = field(default_factory=list)
    summary: str | None = None
    timezone_missing: bool = False

    @property
    def is_empty(self) -> bool:
        return self.count_dreams == 0


class DreamService:
    def __init__(
        self,
        llm: DreamLLM | None = None,
        engine: EntitlementEngine | None = None,
        limiter: RateLimiter | None = None,
        tracker: UsageTracker | None = None,
        settings: Settings | None = None,
    ):
        self.settings = settings or get_settings()
        self.tracker = tracker or get_usage_tracker()
        self.llm = llm or DreamLLM(tracker=self.tracker)
        self.engine = engine or EntitlementEngine(self.settings)
        self.limiter = limiter or build_rate_limiter(self.settings)

    # ------------------------------------------------------------------
    # Journal
    # ------------------------------------------------------------------

    async def record_dream(
        self,
        external_id: str,
        text: str,
        slept_at: datetime | None = None,
        symbols_raw: str | None = None,
    ) -> DreamEntry:
        """Store a dream. Entries from users without a profile are tagged awaiting_profile."""
        user = await repository.get_or_create_user(external_id)
        entry = await repository.create_dream_entry(user.id, text.strip(), slept_at, symbols_raw)
        if not user.is_profile_complete:
            await repository.append_keyword(entry.id, AWAITING_PROFILE_TAG)
        logger.info("dream_recorded", user_id=user.id, entry_id=entry.id, text_length=len(text))
        return entry

    # ------------------------------------------------------------------
    # Interpretation
    # ------------------------------------------------------------------

    async def interpret_dream(self, external_id: str, entry_id: int) -> InterpretationResult:
        with correlation_scope(get_correlation_id()):
            user = await repository.get_or_create_user(external_id)
            entry = await self._owned_entry(user, entry_id)

            await self._rate_limit(user, "interpret")
            user = await self.engine.ensure_interpret_allowed(external_id)
            self.tracker.ensure_within_budget()

            if AWAITING_PROFILE_TAG in repository.parse_tags(entry.keywords):
                await repository.clear_keyword(entry.id, AWAITING_PROFILE_TAG)

            outcome = await self.llm.interpret(
                Profile.from_user(user),
                entry.text,
                entry.user_symbols or None,
                user_id=str(external_id),
            )

            tokens_in, tokens_out = outcome.prompt_tokens, outcome.completion_tokens
            cost_rub = estimate_cost_rub(tokens_in, tokens_out)
            await repository.save_interpretation(entry.id, outcome.value.model_dump(exclude_none=True))
            await repository.save_entry_cost(entry.id, tokens_in, tokens_out, cost_rub)
            await self.engine.record_interpretation(user.id)

            if not user.first_interpret_done:
                await repository.update_user(external_id, {"first_interpret_done": True})

            logger.info(
                "interpretation_completed",
                user_id=user.id,
                entry_id=entry.id,
                attempts=outcome.attempts,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                cost_rub=cost_rub,
            )
            emit_business_event("interpretation_completed")
            return InterpretationResult(
                entry_id=entry.id,
                interpretation=outcome.value,
                tokens_in=tokens_in,
                tokens_out=tokens_out,
                cost_rub=cost_rub,
                attempts=outcome.attempts,
            )

    # ------------------------------------------------------------------
    # Follow-up question
    # ------------------------------------------------------------------

    async def answer_followup(self, external_id: str, entry_id: int, question: str) -> str:
        with correlation_scope(get_correlation_id()):
            user = await repository.get_or_create_user(external_id)
            entry = await self._owned_entry(user, entry_id)

            await self._rate_limit(user, "followup")
            user = await self.engine.ensure_followup_allowed(external_id)
            self.tracker.ensure_within_budget()

            outcome = await self.llm.followup_answer(
                Profile.from_user(user), entry.text, question.strip(), user_id=str(external_id)
            )
            await self.engine.record_followup(user.id)
            logger.info("followup_answered", user_id=user.id, entry_id=entry.id, attempts=outcome.attempts)
            return outcome.value

    # ------------------------------------------------------------------
    # Spiritual practice
    # ------------------------------------------------------------------

    async def issue_practice(self, external_id: str, entry_id: int) -> str:
        with correlation_scope(get_correlation_id()):
            user = await repository.get_or_create_user(external_id)
            entry = await self._owned_entry(user, entry_id)

            await self._rate_limit(user, "practice")
            period_key = await self.engine.ensure_practice_allowed(user)
            self.tracker.ensure_within_budget()

            outcome = await self.llm.generate_practice(
                entry.text, entry.llm_json_text or "", user_id=str(external_id)
            )
            await self.engine.record_practice(user, period_key)
            logger.info("practice_issued", user_id=user.id, entry_id=entry.id, period_key=period_key)
            return outcome.value

    # ------------------------------------------------------------------
    # Weekly report
    # ------------------------------------------------------------------

    async def report_availability(self, external_id: str) -> ReportAvailability:
        user = await repository.get_or_create_user(external_id)
        return await self.engine.report_availability(user)

    async def generate_weekly_report(self, external_id: str) -> WeeklyReport:
        """Build the 7-day report.

        A window without dreams yields an empty report and does not consume
        the user's report allowance.
        """
        with correlation_scope(get_correlation_id()):
            user = await repository.get_or_create_user(external_id)
            await self._rate_limit(user, "report")
            user, availability = await self.engine.ensure_report_allowed(external_id)

            tz = user.timezone or "UTC"
            start, end = local_week_bounds(availability.checked_at, tz)
            zone = resolve_zone(tz)
            candidates = await repository.get_dreams_since(user.id, start)
            dreams = [d for d in candidates if start <= dream_time(d) <= end]

            report = WeeklyReport(
                period_start=start.astimezone(zone).date(),
                period_end=end.astimezone(zone).date(),
                timezone=tz,
                count_dreams=len(dreams),
                count_interps=sum(1 for d in dreams if d.is_interpreted),
                streak_max=calculate_dream_streak(dreams, tz),
                top_symbols=top_symbols(dreams),
                timezone_missing=not user.timezone,
            )
            if report.is_empty:
                logger.info("weekly_report_empty", user_id=user.id)
                return report

            stats = ReportStats(
                count_dreams=report.count_dreams,
                count_interps=report.count_interps,
                streak_max=report.streak_max,
                top_symbols=report.top_symbols,
                plan=normalize_plan(user.plan),
                stress_level=user.stress_level,
                sleep_goal=user.sleep_goal,
                chronotype=user.chronotype,
            )
            try:
                self.tracker.ensure_within_budget()
            except BudgetExceededError:
                logger.warning("weekly_report_budget_fallback", user_id=user.id)
                report.summary = report_fallback(stats.top_symbols)
            else:
                report.summary = await self.llm.generate_report_summary(stats, user_id=str(external_id))

            await self.engine.record_report(user, availability.checked_at)
            logger.info(
                "report_generated",
                user_id=user.id,
                count_dreams=report.count_dreams,
                count_interps=report.count_interps,
                streak_max=report.streak_max,
            )
            emit_business_event("report_generated")
            return report

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _owned_entry(self, user: User, entry_id: int) -> DreamEntry:
        entry = await repository.get_dream_entry(entry_id)
        if entry is None or entry.user_id != user.id:
            raise NotFoundError(f"Dream entry {entry_id} not found", entry_id=entry_id, user_id=user.id)
        return entry

    async def _rate_limit(self, user: User, feature: str) -> None:
        await self.limiter.check(
            user.external_id,
            feature,
            plan=normalize_plan(user.plan).value,
            is_admin=self.settings.is_admin(user.external_id),
        )