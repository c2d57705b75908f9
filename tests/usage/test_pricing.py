"""Unit tests for token pricing."""

import pytest

from dreamjournal.core.config import get_settings
from dreamjournal.usage.pricing import calculate_token_cost, estimate_cost_rub

pytestmark = pytest.mark.unit


def test_known_model_cost() -> None:
    # 1000 * 0.00015 / 1000 + 2000 * 0.0006 / 1000
    assert calculate_token_cost("gpt-4o-mini", 1000, 2000) == pytest.approx(0.00135)


def test_yandex_model_uri_is_priced_by_model_name() -> None:
    cost = calculate_token_cost("gpt://b1g/yandexgpt-lite/latest", 1000, 1000)

    assert cost == pytest.approx(0.0044)


def test_unknown_model_costs_nothing() -> None:
    assert calculate_token_cost("mystery-model", 5000, 5000) == 0.0


def test_estimate_cost_rub_uses_flat_rates() -> None:
    # (1000 * 0.0005 + 1000 * 0.0015) / 1000 USD * 95
    assert estimate_cost_rub(1000, 1000) == 0.19


def test_estimate_cost_rub_follows_settings(monkeypatch) -> None:
    monkeypatch.setenv("RUB_PER_USD", "100")
    get_settings.cache_clear()

    assert estimate_cost_rub(2000, 0) == 0.1
