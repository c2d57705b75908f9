"""Shared test fixtures for all test groups."""

from collections.abc import Iterable
from datetime import UTC, datetime

import pytest

from dreamjournal.core.config import get_settings
from dreamjournal.db.base import close_db, init_db
from dreamjournal.llm.providers import ChatOptions, ChatResult

ADMIN_ID = "999"

VALID_INTERPRETATION_JSON = (
    '{"short_title": "The house with many doors",'
    ' "symbols_detected": ["house", "door", "water"],'
    ' "barnum_insight": "You are standing at the threshold of a choice.",'
    ' "esoteric_interpretation": "Doors speak of passages between states of the soul.",'
    ' "reflective_question": "Which door have you been avoiding?",'
    ' "gentle_advice": ["Write down the dream tonight", "Take a slow walk"]}'
)


@pytest.fixture(autouse=True)
def test_env(monkeypatch):
    """Deterministic settings for every test; the settings cache is reset around each test."""
    monkeypatch.setenv("BOT_TOKEN", "test-bot-token")
    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("ADMIN_IDS", ADMIN_ID)
    monkeypatch.setenv("METRICS_ENABLED", "false")
    monkeypatch.setenv("ENFORCE_DAILY_BUDGET", "false")
    monkeypatch.setenv("RATE_LIMIT_BACKEND", "memory")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
async def db(tmp_path):
    """Fresh SQLite database per test (same async SQLAlchemy stack as production)."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    yield
    await close_db()


class ScriptedProvider:
    """ChatProvider double that replays a script of texts and exceptions."""

    name = "scripted"

    def __init__(self, script: Iterable[str | BaseException], model: str = "gpt-4o-mini"):
        self.script = list(script)
        self.model = model
        self.calls: list[tuple[str, str, ChatOptions | None]] = []

    async def chat(self, system: str, user: str, options: ChatOptions | None = None) -> ChatResult:
        self.calls.append((system, user, options))
        if not self.script:
            raise AssertionError("ScriptedProvider called more times than scripted")
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return ChatResult(text=step, model=self.model, prompt_tokens=120, completion_tokens=80)

    async def aclose(self) -> None:
        pass


class SleepRecorder:
    """Async sleep replacement that records requested delays."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def scripted_provider():
    return ScriptedProvider


@pytest.fixture
def sleep_recorder():
    return SleepRecorder()


@pytest.fixture
def valid_interpretation_json():
    return VALID_INTERPRETATION_JSON


class FixedClock:
    """Mutable clock returning an aware UTC datetime."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def clock():
    return FixedClock(datetime(2030, 6, 15, 10, 30, tzinfo=UTC))
