"""Tests for DreamLLM operations over a scripted provider."""

import json

import pytest

from dreamjournal.core.exceptions import ParseError, ProviderHttpError, ProviderTimeoutError
from dreamjournal.entitlements.plans import Plan
from dreamjournal.llm import prompts
from dreamjournal.llm.operations import (
    FOLLOWUP_OPTIONS,
    INTERPRET_OPTIONS,
    PRACTICE_OPTIONS,
    REPORT_OPTIONS,
    DreamLLM,
    Profile,
    ReportStats,
    report_fallback,
)
from dreamjournal.llm.prompt_registry import PromptRegistry
from dreamjournal.usage.tracker import UsageTracker

pytestmark = pytest.mark.unit


@pytest.fixture
def tracker(clock):
    return UsageTracker(clock=clock)


def _llm(provider, tracker=None, sleep=None) -> DreamLLM:
    kwargs = {"provider": provider, "tracker": tracker, "registry": PromptRegistry()}
    if sleep is not None:
        kwargs["sleep"] = sleep
    return DreamLLM(**kwargs)


# ============================================================================
# interpret
# ============================================================================


async def test_interpret_returns_validated_model(scripted_provider, valid_interpretation_json, tracker):
    provider = scripted_provider([valid_interpretation_json])
    llm = _llm(provider, tracker)

    outcome = await llm.interpret(Profile(timezone="Europe/Berlin"), "I walked through a house", ["door"], "42")

    assert outcome.value.short_title == "The house with many doors"
    assert outcome.value.symbols_detected == ["house", "door", "water"]
    assert outcome.attempts == 1
    assert (outcome.prompt_tokens, outcome.completion_tokens) == (120, 80)

    system, user, options = provider.calls[0]
    assert system == prompts.INTERPRET_SYSTEM
    assert options == INTERPRET_OPTIONS
    payload = json.loads(user)
    assert payload["dream_text"] == "I walked through a house"
    assert payload["user_symbols"] == ["door"]
    assert payload["profile"]["timezone"] == "Europe/Berlin"

    records = tracker.get_usage_by_user("42")
    assert len(records) == 1
    assert records[0].operation == "interpret"


async def test_interpret_retries_transient_errors(scripted_provider, valid_interpretation_json, sleep_recorder):
    provider = scripted_provider(
        [
            ProviderHttpError("openai", 503, "unavailable"),
            ProviderTimeoutError("openai", 30),
            valid_interpretation_json,
        ]
    )
    llm = _llm(provider, sleep=sleep_recorder)

    outcome = await llm.interpret(Profile(), "dream")

    assert outcome.attempts == 3
    assert len(provider.calls) == 3
    assert sleep_recorder.delays == pytest.approx([0.4, 0.8])


async def test_interpret_invalid_json_is_not_retried(scripted_provider, sleep_recorder, tracker):
    provider = scripted_provider(["I'm sorry, I can't help with that."])
    llm = _llm(provider, tracker, sleep=sleep_recorder)

    with pytest.raises(ParseError):
        await llm.interpret(Profile(), "dream", user_id="7")

    assert len(provider.calls) == 1
    assert sleep_recorder.delays == []
    # The rejected call still consumed tokens
    assert len(tracker.get_usage_by_user("7")) == 1


async def test_interpret_client_error_surfaces_immediately(scripted_provider, sleep_recorder):
    provider = scripted_provider([ProviderHttpError("openai", 401, "invalid key")])
    llm = _llm(provider, sleep=sleep_recorder)

    with pytest.raises(ProviderHttpError):
        await llm.interpret(Profile(), "dream")

    assert len(provider.calls) == 1


# ============================================================================
# text operations
# ============================================================================


async def test_followup_answer_is_trimmed_text(scripted_provider):
    provider = scripted_provider(["  The door is an invitation.  \n"])
    llm = _llm(provider)

    outcome = await llm.followup_answer(Profile(chronotype="owl"), "dream text", "What does the door mean?")

    assert outcome.value == "The door is an invitation."
    system, user, options = provider.calls[0]
    assert system == prompts.FOLLOWUP_SYSTEM
    assert "What does the door mean?" in user
    assert '"chronotype": "owl"' in user
    assert '"tone": "poetic"' in user
    assert options == FOLLOWUP_OPTIONS


async def test_generate_practice_uses_practice_options(scripted_provider):
    provider = scripted_provider(["Practice of the threshold\n1. Breathe\n2. Listen"])
    llm = _llm(provider)

    outcome = await llm.generate_practice("dream text", "the interpretation")

    assert outcome.value.startswith("Practice of the threshold")
    system, _, options = provider.calls[0]
    assert system == prompts.PRACTICE_SYSTEM
    assert options == PRACTICE_OPTIONS


# ============================================================================
# report summary
# ============================================================================


async def test_report_summary_requests_more_sentences_for_paid(scripted_provider):
    provider = scripted_provider(["A luminous week."])
    llm = _llm(provider)
    stats = ReportStats(count_dreams=4, count_interps=2, streak_max=3, top_symbols=[("water", 3)], plan=Plan.PAID)

    summary = await llm.generate_report_summary(stats)

    assert summary == "A luminous week."
    _, user, options = provider.calls[0]
    assert "Length: 7 sentences" in user
    assert "water (3)" in user
    assert options == REPORT_OPTIONS


async def test_report_summary_falls_back_when_provider_unavailable(scripted_provider, sleep_recorder):
    provider = scripted_provider([ProviderHttpError("openai", 503, "down")] * 3)
    llm = _llm(provider, sleep=sleep_recorder)
    stats = ReportStats(count_dreams=3, count_interps=1, streak_max=2, top_symbols=[("water", 2), ("moon", 1)])

    summary = await llm.generate_report_summary(stats)

    assert summary == report_fallback([("water", 2), ("moon", 1)])
    assert len(provider.calls) == 3


def test_report_fallback_variants():
    assert report_fallback([("sea", 3), ("moon", 2)]).startswith("A period under the sign of sea and moon:")
    assert report_fallback(["sea"]).startswith("A period under the sign of sea:")
    assert report_fallback([]) == "A calm period without recurring images 🙂"


def test_system_prompts_are_registered_on_init(scripted_provider):
    registry = PromptRegistry()
    DreamLLM(provider=scripted_provider([]), registry=registry)

    assert set(registry.stats()) == set(prompts.SYSTEM_PROMPTS)
