"""LLM operations: interpret, follow-up answer, practice and report summary.

Every operation runs as one logical call with its own retry state (at most
3 provider calls), records token usage per provider call, logs which prompt
version it used and emits a latency metric. Interpretation output is
validated; the other operations return trimmed text.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import structlog
from pydantic import BaseModel

from dreamjournal.core.correlation import get_correlation_id
from dreamjournal.db.models.user import User
from dreamjournal.entitlements.plans import Plan, normalize_plan
from dreamjournal.llm import prompts
from dreamjournal.llm.prompt_registry import PromptRegistry, get_prompt_registry
from dreamjournal.llm.providers import ChatOptions, ChatProvider, ChatResult, get_provider
from dreamjournal.llm.retry import build_retrying
from dreamjournal.llm.schema import Interpretation, parse_interpretation
from dreamjournal.metrics.cloudwatch import emit_llm_latency
from dreamjournal.usage.tracker import UsageTracker

logger = structlog.get_logger(__name__)

T = TypeVar("T")

INTERPRET_OPTIONS = ChatOptions(temperature=0.35, max_tokens=900)
FOLLOWUP_OPTIONS = ChatOptions(temperature=0.3, max_tokens=300)
PRACTICE_OPTIONS = ChatOptions(temperature=0.6, max_tokens=220)
REPORT_OPTIONS = ChatOptions(temperature=0.6, max_tokens=320)

PAID_REPORT_SENTENCES = 7
FREE_REPORT_SENTENCES = 4


class Profile(BaseModel):
    """User profile as sent to the model."""

    timezone: str | None = None
    age_band: str | None = None
    chronotype: str | None = None
    tone: str = "poetic"
    esoterica_level: int = 50
    sleep_goal: str | None = None
    wake_time: str | None = None
    sleep_time: str | None = None
    stress_level: int | None = None
    dream_frequency: str | None = None

    @classmethod
    def from_user(cls, user: User) -> "Profile":
        return cls(
            timezone=user.timezone,
            age_band=user.age_band,
            chronotype=user.chronotype,
            esoterica_level=user.esoterica_level if user.esoterica_level is not None else 50,
            sleep_goal=user.sleep_goal,
            wake_time=user.wake_time,
            sleep_time=user.sleep_time,
            stress_level=user.stress_level,
            dream_frequency=user.dream_frequency,
        )


@dataclass
class ReportStats:
    count_dreams: int
    count_interps: int
    streak_max: int
    top_symbols: list[tuple[str, int]]
    plan: Plan = Plan.FREE
    period_days: int = 7
    stress_level: int | None = None
    sleep_goal: str | None = None
    chronotype: str | None = None


@dataclass
class LLMOutcome(Generic[T]):
    """Result of one logical LLM operation.

    `calls` holds every successful provider response, including ones whose
    output was rejected on an earlier attempt.
    """

    value: T
    model: str
    attempts: int
    calls: list[ChatResult] = field(default_factory=list)

    @property
    def prompt_tokens(self) -> int:
        return sum(c.prompt_tokens for c in self.calls)

    @property
    def completion_tokens(self) -> int:
        return sum(c.completion_tokens for c in self.calls)


def report_fallback(top_symbols: list[tuple[str, int]] | list[str]) -> str:
    """Deterministic report summary used when the model is unavailable."""
    names = [s[0] if isinstance(s, tuple) else s for s in top_symbols]
    if len(names) >= 2:
        return f"A period under the sign of {names[0]} and {names[1]}: inner stories in motion and a gentle rethinking ✨"
    if len(names) == 1:
        return f"A period under the sign of {names[0]}: this image matters now and asks for attention ✨"
    return "A calm period without recurring images 🙂"


class DreamLLM:
    """Dream-domain LLM operations over one provider.

    Args:
        provider: chat backend (defaults to the process-wide provider).
        tracker: usage tracker; when set, every provider call is recorded.
        registry: prompt registry (defaults to the process-wide one).
        sleep: backoff sleep, injectable for tests.
    """

    def __init__(
        self,
        provider: ChatProvider | None = None,
        tracker: UsageTracker | None = None,
        registry: PromptRegistry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider or get_provider()
        self.tracker = tracker
        self.registry = registry or get_prompt_registry()
        self._sleep = sleep
        self._prompts = {
            prompt_id: self.registry.register(prompt_id, content, {"source": "builtin"})
            for prompt_id, content in prompts.SYSTEM_PROMPTS.items()
        }

    async def interpret(
        self,
        profile: Profile,
        dream_text: str,
        user_symbols: list[str] | None = None,
        user_id: str | None = None,
    ) -> LLMOutcome[Interpretation]:
        user_prompt = prompts.build_interpret_user_prompt(profile.model_dump(), dream_text, user_symbols)
        return await self._run(
            "interpret",
            prompts.INTERPRET_PROMPT_ID,
            user_prompt,
            INTERPRET_OPTIONS,
            parse_interpretation,
            user_id,
        )

    async def followup_answer(
        self,
        profile: Profile,
        dream_text: str,
        question: str,
        user_id: str | None = None,
    ) -> LLMOutcome[str]:
        user_prompt = prompts.build_followup_user_prompt(
            profile.model_dump(exclude_none=True), dream_text, question
        )
        return await self._run(
            "followup",
            prompts.FOLLOWUP_PROMPT_ID,
            user_prompt,
            FOLLOWUP_OPTIONS,
            str.strip,
            user_id,
            tone=profile.tone,
        )

    async def generate_practice(
        self,
        dream_text: str,
        interpretation: str,
        user_id: str | None = None,
    ) -> LLMOutcome[str]:
        user_prompt = prompts.build_practice_user_prompt(dream_text, interpretation)
        return await self._run(
            "practice",
            prompts.PRACTICE_PROMPT_ID,
            user_prompt,
            PRACTICE_OPTIONS,
            str.strip,
            user_id,
        )

    async def generate_report_summary(self, stats: ReportStats, user_id: str | None = None) -> str:
        """Prose summary of the period. Never raises; falls back to report_fallback()."""
        paid = normalize_plan(stats.plan) == Plan.PAID
        user_prompt = prompts.build_report_user_prompt(
            period_days=stats.period_days,
            count_dreams=stats.count_dreams,
            count_interps=stats.count_interps,
            streak_max=stats.streak_max,
            top_symbols=stats.top_symbols,
            sentences=PAID_REPORT_SENTENCES if paid else FREE_REPORT_SENTENCES,
            stress_level=stats.stress_level,
            sleep_goal=stats.sleep_goal,
            chronotype=stats.chronotype,
        )
        try:
            outcome = await self._run(
                "report_summary",
                prompts.REPORT_PROMPT_ID,
                user_prompt,
                REPORT_OPTIONS,
                str.strip,
                user_id,
            )
        except Exception as e:
            logger.warning(
                "report_summary_fallback",
                user_id=user_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return report_fallback(stats.top_symbols)
        return outcome.value

    async def _run(
        self,
        operation: str,
        prompt_id: str,
        user_prompt: str,
        options: ChatOptions,
        parse: Callable[[str], T],
        user_id: str | None,
        **log_context: Any,
    ) -> LLMOutcome[T]:
        version = self._prompts[prompt_id]
        correlation_id = get_correlation_id()
        calls: list[ChatResult] = []
        attempts = 0
        value: T | None = None
        started = time.perf_counter()

        try:
            async for attempt in build_retrying(operation, self._sleep):
                with attempt:
                    attempts += 1
                    result = await self.provider.chat(version.content, user_prompt, options)
                    calls.append(result)
                    self._track(result, operation, user_id, correlation_id)
                    value = parse(result.text)
        finally:
            duration_ms = (time.perf_counter() - started) * 1000
            emit_llm_latency(operation, duration_ms, self.provider.model)

        self.registry.log_usage(
            version,
            operation,
            correlation_id,
            user_id=user_id,
            attempts=attempts,
            duration_ms=round(duration_ms, 1),
            **log_context,
        )
        return LLMOutcome(value=value, model=calls[-1].model, attempts=attempts, calls=calls)

    def _track(self, result: ChatResult, operation: str, user_id: str | None, correlation_id: str | None) -> None:
        if self.tracker is None:
            return
        self.tracker.track(
            model=result.model,
            prompt_tokens=result.prompt_tokens,
            completion_tokens=result.completion_tokens,
            operation=operation,
            user_id=user_id,
            correlation_id=correlation_id,
        )
