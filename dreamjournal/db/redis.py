"""Process-wide Redis client used to externalize rate-limit windows."""

import redis.asyncio as redis

from dreamjournal.core.config import get_settings

_redis: redis.Redis | None = None


async def init_redis(url: str | None = None, *, ping: bool = True) -> redis.Redis:
    """Create the shared client (idempotent) and optionally check connectivity."""
    global _redis

    if _redis is None:
        _redis = redis.from_url(
            url or get_settings().redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        if ping:
            await _redis.ping()

    return _redis


async def close_redis() -> None:
    global _redis

    if _redis is not None:
        await _redis.aclose()
        _redis = None


def get_redis() -> redis.Redis:
    """Return the shared client; init_redis() must have been awaited first."""
    if _redis is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _redis
