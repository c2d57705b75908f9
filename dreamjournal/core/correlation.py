"""Correlation ids for tracing one user interaction across components.

Provides:
- correlation_id context variable (read by the logging processor)
- new_correlation_id() / get_correlation_id() helpers
- correlation_scope() context manager for binding an id around a block
"""

import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

correlation_id: ContextVar[str | None] = ContextVar("correlation_id", default=None)


def new_correlation_id() -> str:
    """Generate a fresh correlation id and bind it to the current context."""
    cid = str(uuid.uuid4())
    correlation_id.set(cid)
    return cid


def get_correlation_id() -> str | None:
    """Return the correlation id bound to the current context, if any."""
    return correlation_id.get()


@contextmanager
def correlation_scope(cid: str | None = None) -> Iterator[str]:
    """Bind a correlation id (new or given) for the duration of the block."""
    value = cid or str(uuid.uuid4())
    token = correlation_id.set(value)
    try:
        yield value
    finally:
        correlation_id.reset(token)


__all__ = ["correlation_id", "correlation_scope", "get_correlation_id", "new_correlation_id"]
