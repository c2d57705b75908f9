"""Domain exception taxonomy and user-facing message mapping.

Every DreamJournalError carries:
- code: stable machine-readable identifier (used in logs)
- category: how the caller should explain the failure to the user
- user_message: the text shown when the caller has nothing more specific
"""

from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from dreamjournal.entitlements.engine import ReportAvailability

logger = structlog.get_logger(__name__)


class ErrorCategory(str, Enum):
    """How a failure should be explained to the user."""

    TRANSIENT = "transient"                # try again later
    UPGRADE_REQUIRED = "upgrade_required"  # plan-gated
    PERIOD_LOCKED = "period_locked"        # wait until the period resets
    INVALID_OUTPUT = "invalid_output"      # model answered, but unusably
    INTERNAL = "internal"


class DreamJournalError(Exception):
    """Base exception for the dream journal core."""

    code = "INTERNAL_ERROR"
    category = ErrorCategory.INTERNAL
    user_message = "Something went wrong on our side. Please try again later."

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.context = context


# ---------------------------------------------------------------------------
# LLM provider errors
# ---------------------------------------------------------------------------


class ProviderError(DreamJournalError):
    """Base for failures talking to an LLM backend."""

    code = "LLM_PROVIDER_ERROR"
    category = ErrorCategory.TRANSIENT
    user_message = "The interpreter is unavailable right now. Please try again a bit later."


class ProviderHttpError(ProviderError):
    """Non-2xx response from the LLM backend."""

    code = "LLM_HTTP_ERROR"

    def __init__(self, provider: str, status: int, hint: str):
        self.provider = provider
        self.status = status
        self.hint = hint
        super().__init__(f"{provider} LLM HTTP {status}: {hint}", provider=provider, status=status)


class ProviderTimeoutError(ProviderError):
    """The request exceeded the fixed per-call deadline and was cancelled."""

    code = "LLM_TIMEOUT"
    user_message = "The interpreter is thinking for too long. Please try again."

    def __init__(self, provider: str, timeout_seconds: float):
        self.provider = provider
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"{provider} request timeout after {timeout_seconds:g}s",
            provider=provider,
            timeout_seconds=timeout_seconds,
        )


class ProviderConnectionError(ProviderError):
    """Transport-level failure (DNS, refused connection, reset)."""

    code = "LLM_CONNECTION_ERROR"

    def __init__(self, provider: str, reason: str):
        self.provider = provider
        super().__init__(f"{provider} fetch failed: {reason}", provider=provider)


class ProviderResponseError(ProviderError):
    """2xx response whose body is not usable (non-JSON or empty text)."""

    code = "LLM_BAD_RESPONSE"
    category = ErrorCategory.INVALID_OUTPUT


# ---------------------------------------------------------------------------
# Output validation errors
# ---------------------------------------------------------------------------


class ParseError(DreamJournalError):
    """No JSON object could be extracted from the model output."""

    code = "LLM_PARSE_FAILED"
    category = ErrorCategory.INVALID_OUTPUT
    user_message = "Could not process the interpreter's answer. Please try again."


class SchemaValidationError(DreamJournalError):
    """Parsed JSON does not satisfy the interpretation contract."""

    code = "LLM_VALIDATION_FAILED"
    category = ErrorCategory.INVALID_OUTPUT
    user_message = "Could not process the interpreter's answer. Please try again."

    def __init__(self, constraint: str):
        self.constraint = constraint
        super().__init__(f"LLM JSON does not match schema: {constraint}", constraint=constraint)


# ---------------------------------------------------------------------------
# Gating errors
# ---------------------------------------------------------------------------


class QuotaExceededError(DreamJournalError):
    """Entitlement check failed for a plan- or calendar-gated feature."""

    code = "QUOTA_EXCEEDED"
    category = ErrorCategory.UPGRADE_REQUIRED

    def __init__(
        self,
        feature: str,
        used: int,
        limit: int,
        category: ErrorCategory = ErrorCategory.UPGRADE_REQUIRED,
        period_key: str | None = None,
    ):
        self.feature = feature
        self.used = used
        self.limit = limit
        self.category = category
        self.period_key = period_key
        super().__init__(
            f"Quota exceeded for {feature}: {used}/{limit}",
            feature=feature,
            used=used,
            limit=limit,
        )

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.used)

    @property
    def user_message(self) -> str:  # type: ignore[override]
        if self.category == ErrorCategory.PERIOD_LOCKED:
            return f"The {_feature_label(self.feature)} was already issued for this period. Come back when it resets."
        return (
            f"Your monthly limit for {_feature_label(self.feature)} is used up "
            f"({self.used}/{self.limit}). Subscribe to continue."
        )


class RateLimitedError(DreamJournalError):
    """Too many requests for a feature inside its sliding window."""

    code = "RATE_LIMITED"
    category = ErrorCategory.TRANSIENT

    def __init__(self, feature: str, limit: int, window_ms: int, retry_after_ms: int | None = None):
        self.feature = feature
        self.limit = limit
        self.window_ms = window_ms
        self.retry_after_ms = retry_after_ms
        super().__init__(
            f"Rate limit exceeded for {feature}",
            feature=feature,
            limit=limit,
            window_ms=window_ms,
        )

    @property
    def user_message(self) -> str:  # type: ignore[override]
        wait_seconds = (self.retry_after_ms or self.window_ms) // 1000
        if wait_seconds >= 120:
            wait = f"{wait_seconds // 60} min"
        else:
            wait = f"{max(1, wait_seconds)} s"
        return f"Too many requests. Please wait about {wait} and try again."


class BudgetExceededError(DreamJournalError):
    """Daily LLM spend reached the configured limit."""

    code = "BUDGET_EXCEEDED"
    category = ErrorCategory.TRANSIENT
    user_message = "The interpreter is resting for today. Please try again tomorrow."

    def __init__(self, spent_usd: float, limit_usd: float):
        self.spent_usd = spent_usd
        self.limit_usd = limit_usd
        super().__init__(
            f"Daily budget exceeded: ${spent_usd:.4f} of ${limit_usd:.2f}",
            spent_usd=spent_usd,
            limit_usd=limit_usd,
        )


class ReportNotAvailableError(DreamJournalError):
    """Report state machine is not in AVAILABLE."""

    code = "REPORT_NOT_AVAILABLE"
    category = ErrorCategory.PERIOD_LOCKED
    user_message = "The report is not available yet. Check the conditions for getting it."

    def __init__(self, availability: "ReportAvailability"):
        from dreamjournal.entitlements.engine import ReportState

        self.availability = availability
        if availability.state == ReportState.FREE_EXHAUSTED_THIS_MONTH:
            self.category = ErrorCategory.UPGRADE_REQUIRED
        super().__init__(f"Report not available: {availability.state}", state=str(availability.state))


# ---------------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------------


class NotFoundError(DreamJournalError):
    """A referenced record does not exist or belongs to someone else."""

    code = "NOT_FOUND"
    user_message = "That dream entry was not found or is no longer available."


class ConfigurationError(DreamJournalError):
    """Required configuration is missing or invalid."""

    code = "CONFIGURATION_ERROR"

    def __init__(self, message: str, missing: list[str] | None = None):
        self.missing = missing or []
        super().__init__(message, missing=self.missing)


_FEATURE_LABELS = {
    "interpret": "dream interpretations",
    "followup": "follow-up questions",
    "practice": "spiritual practice",
    "weekly_report": "weekly report",
    "report": "weekly report",
}


def _feature_label(feature: str) -> str:
    return _FEATURE_LABELS.get(feature, feature)


def user_message_for(exc: BaseException) -> str:
    """Map any exception to the message shown to the user.

    Domain errors carry their own message. Raw timeouts and network errors
    get a transient message; anything else is logged and gets an apology.
    """
    if isinstance(exc, DreamJournalError):
        return exc.user_message

    text = str(exc).lower()
    if "timeout" in text:
        return "The request timed out. Please try again."
    if "network" in text or "fetch" in text:
        return "Network problems. Please check your connection and try again later."

    logger.error("unmapped_error", error=str(exc), error_type=type(exc).__name__)
    return DreamJournalError.user_message


def category_for(exc: BaseException) -> ErrorCategory:
    """Return the explanation category for an exception."""
    if isinstance(exc, DreamJournalError):
        return exc.category
    return ErrorCategory.INTERNAL
