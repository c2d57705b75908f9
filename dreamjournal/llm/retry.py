"""Retry policy for LLM calls.

At most 3 attempts per logical operation with fixed incremental backoff
(400 ms, then 800 ms, no jitter). Only transient failures are retried;
everything else surfaces on the first attempt.
"""

import asyncio
import re
from collections.abc import Awaitable, Callable

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_incrementing,
)

from dreamjournal.core.exceptions import (
    DreamJournalError,
    ProviderConnectionError,
    ProviderHttpError,
    ProviderTimeoutError,
)

logger = structlog.get_logger(__name__)

MAX_ATTEMPTS = 3
BACKOFF_START_SECONDS = 0.4
BACKOFF_INCREMENT_SECONDS = 0.4

_TRANSIENT_MESSAGE = re.compile(r"timeout|aborted|fetch failed|429|5\d\d", re.IGNORECASE)


def is_retryable(exc: BaseException) -> bool:
    """True for timeouts, transport failures, HTTP 429 and 5xx."""
    if isinstance(exc, (ProviderTimeoutError, ProviderConnectionError)):
        return True
    if isinstance(exc, ProviderHttpError):
        return exc.status == 429 or 500 <= exc.status < 600
    if isinstance(exc, DreamJournalError):
        # Parse/validation/config/gating errors are terminal
        return False
    return bool(_TRANSIENT_MESSAGE.search(str(exc)))


def _log_before_sleep(operation: str) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "llm_call_retrying",
            operation=operation,
            attempt=retry_state.attempt_number,
            sleep_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
            error=str(exc),
            error_type=type(exc).__name__ if exc else None,
        )

    return log


def build_retrying(
    operation: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> AsyncRetrying:
    """Fresh retry controller for one logical operation.

    `sleep` is injectable so tests can record the backoff delays.
    """
    return AsyncRetrying(
        retry=retry_if_exception(is_retryable),
        stop=stop_after_attempt(MAX_ATTEMPTS),
        wait=wait_incrementing(start=BACKOFF_START_SECONDS, increment=BACKOFF_INCREMENT_SECONDS),
        sleep=sleep,
        reraise=True,
        before_sleep=_log_before_sleep(operation),
    )
