"""Tests for the retry classification and the tenacity policy."""

import pytest

from dreamjournal.core.exceptions import (
    ParseError,
    ProviderConnectionError,
    ProviderHttpError,
    ProviderResponseError,
    ProviderTimeoutError,
    SchemaValidationError,
)
from dreamjournal.llm.retry import build_retrying, is_retryable

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    "exc",
    [
        ProviderTimeoutError("openai", 30),
        ProviderConnectionError("openai", "reset by peer"),
        ProviderHttpError("openai", 429, "slow down"),
        ProviderHttpError("openai", 500, "boom"),
        ProviderHttpError("yandex", 503, "unavailable"),
        RuntimeError("Request timeout"),
        RuntimeError("The operation was aborted"),
        RuntimeError("TypeError: fetch failed"),
        RuntimeError("upstream said 502"),
    ],
)
def test_transient_errors_are_retryable(exc):
    assert is_retryable(exc) is True


@pytest.mark.parametrize(
    "exc",
    [
        ProviderHttpError("openai", 400, "bad request"),
        ProviderHttpError("openai", 401, "invalid key"),
        ParseError("Model did not return valid JSON"),
        SchemaValidationError("short_title: too long"),
        ProviderResponseError("openai LLM: empty response"),
        ValueError("something else"),
    ],
)
def test_terminal_errors_are_not_retryable(exc):
    assert is_retryable(exc) is False


async def _run(retrying, fn):
    async for attempt in retrying:
        with attempt:
            return await fn()


async def test_retries_transient_failures_with_400_then_800_ms(sleep_recorder):
    calls = []

    async def flaky():
        calls.append(1)
        if len(calls) < 3:
            raise ProviderHttpError("openai", 503, "unavailable")
        return "ok"

    result = await _run(build_retrying("test", sleep=sleep_recorder), flaky)

    assert result == "ok"
    assert len(calls) == 3
    assert sleep_recorder.delays == pytest.approx([0.4, 0.8])


async def test_gives_up_after_three_attempts_and_reraises(sleep_recorder):
    calls = []

    async def always_down():
        calls.append(1)
        raise ProviderTimeoutError("openai", 30)

    with pytest.raises(ProviderTimeoutError):
        await _run(build_retrying("test", sleep=sleep_recorder), always_down)

    assert len(calls) == 3
    assert len(sleep_recorder.delays) == 2


async def test_terminal_error_is_not_retried(sleep_recorder):
    calls = []

    async def bad_output():
        calls.append(1)
        raise ParseError("Model did not return valid JSON")

    with pytest.raises(ParseError):
        await _run(build_retrying("test", sleep=sleep_recorder), bad_output)

    assert len(calls) == 1
    assert sleep_recorder.delays == []
