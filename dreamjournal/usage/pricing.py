"""Token pricing.

MODEL_PRICES drives the USD figures behind the daily budget. The RUB
estimate stored on each dream entry uses the flat per-1K rates from settings
so admins see a stable number regardless of provider.
"""

import structlog

from dreamjournal.core.config import get_settings

logger = structlog.get_logger(__name__)

# USD per 1K tokens
MODEL_PRICES: dict[str, dict[str, float]] = {
    "gpt-4": {"input": 0.03, "output": 0.06},
    "gpt-4-turbo": {"input": 0.01, "output": 0.03},
    "gpt-4o": {"input": 0.0025, "output": 0.01},
    "gpt-4o-mini": {"input": 0.00015, "output": 0.0006},
    "gpt-3.5-turbo": {"input": 0.0015, "output": 0.002},
    "claude-3-sonnet": {"input": 0.003, "output": 0.015},
    "claude-3-haiku": {"input": 0.00025, "output": 0.00125},
    "claude-3-haiku-20240307": {"input": 0.00025, "output": 0.00125},
    "yandexgpt-lite": {"input": 0.0022, "output": 0.0022},
    "yandexgpt": {"input": 0.013, "output": 0.013},
}


def _price_key(model: str) -> str:
    # Yandex model URIs look like gpt://<folder>/yandexgpt-lite/latest
    if model.startswith("gpt://"):
        parts = model[len("gpt://") :].split("/")
        if len(parts) >= 2:
            return parts[1]
    return model


def calculate_token_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """USD cost of one call. Unknown models cost 0 and log a warning."""
    pricing = MODEL_PRICES.get(_price_key(model))
    if pricing is None:
        logger.warning("unknown_model_for_cost", model=model)
        return 0.0
    return (prompt_tokens / 1000) * pricing["input"] + (completion_tokens / 1000) * pricing["output"]


def estimate_cost_rub(tokens_in: int, tokens_out: int) -> float:
    """Flat-rate RUB estimate, rounded to kopecks."""
    settings = get_settings()
    usd = (tokens_in / 1000) * settings.usd_per_input_1k + (tokens_out / 1000) * settings.usd_per_output_1k
    return round(usd * settings.rub_per_usd, 2)
