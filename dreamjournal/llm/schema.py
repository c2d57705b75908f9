"""Interpretation schema and the extract -> clamp -> validate pipeline.

Models often wrap JSON in markdown fences or add a sentence around it, and
they routinely overshoot length limits on free-text fields. Strings are
truncated to their bounds before validation; lists over their bound, wrong
types and missing fields are rejected.
"""

import json
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from dreamjournal.core.exceptions import ParseError, SchemaValidationError

logger = structlog.get_logger(__name__)

# Free-text fields truncated before validation
STRING_BOUNDS = {
    "short_title": 60,
    "barnum_insight": 300,
    "esoteric_interpretation": 700,
    "reflective_question": 200,
    "paywall_teaser": 140,
}


class Interpretation(BaseModel):
    """Validated LLM dream interpretation."""

    model_config = ConfigDict(strict=True, extra="ignore")

    short_title: str = Field(max_length=60)
    symbols_detected: list[str] = Field(max_length=12)
    barnum_insight: str = Field(max_length=300)
    esoteric_interpretation: str = Field(max_length=700)
    reflective_question: str = Field(max_length=200)
    gentle_advice: list[str] = Field(default_factory=list, max_length=5)
    risk_flags: list[str] | None = None
    paywall_teaser: str | None = Field(default=None, max_length=140)


def strip_json_fences(content: str) -> str:
    """Remove markdown code fences wrapping JSON output."""
    content = content.strip()
    if content.startswith("```"):
        first_newline = content.find("\n")
        if first_newline != -1:
            content = content[first_newline + 1 :]
        if content.endswith("```"):
            content = content[:-3].rstrip()
    return content


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull one JSON object out of model output.

    Tries, in order: the fence-stripped text as-is, then the substring from
    the first "{" to the last "}".

    Raises:
        ParseError: no JSON could be parsed.
        SchemaValidationError: JSON parsed but is not an object.
    """
    content = strip_json_fences(text or "")
    try:
        value = json.loads(content)
    except ValueError:
        start = content.find("{")
        end = content.rfind("}")
        if start < 0 or end <= start:
            raise ParseError("Model did not return valid JSON", preview=content[:120])
        try:
            value = json.loads(content[start : end + 1])
        except ValueError as e:
            raise ParseError("Model did not return valid JSON", preview=content[:120]) from e

    if not isinstance(value, dict):
        raise SchemaValidationError(f"expected a JSON object, got {type(value).__name__}")
    return value


def clamp_interpretation(obj: dict[str, Any]) -> dict[str, Any]:
    """Return a copy with string-valued free-text fields cut to their bounds."""
    clamped = dict(obj)
    for field, limit in STRING_BOUNDS.items():
        value = clamped.get(field)
        if isinstance(value, str) and len(value) > limit:
            clamped[field] = value[:limit]
    return clamped


def _describe(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first["loc"]) or "<root>"
    return f"{location}: {first['msg']}"


def validate_interpretation(obj: dict[str, Any]) -> Interpretation:
    """Clamp and validate an already-parsed object."""
    try:
        return Interpretation.model_validate(clamp_interpretation(obj))
    except ValidationError as e:
        constraint = _describe(e)
        logger.warning("interpretation_validation_failed", constraint=constraint, error_count=e.error_count())
        raise SchemaValidationError(constraint) from e


def parse_interpretation(text: str) -> Interpretation:
    """extract -> clamp -> validate."""
    return validate_interpretation(extract_json_object(text))
