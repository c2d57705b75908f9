"""Sliding-window rate limiting per (user, feature).

Ceilings are per feature, not per plan. Admins bypass every check.
Two interchangeable backends:
- InMemoryRateLimiter: process-local, for a single bot instance
- RedisRateLimiter: one sorted set per (user, feature), shared across instances
"""

import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

import structlog
from redis.asyncio import Redis

from dreamjournal.core.config import Settings, get_settings
from dreamjournal.core.exceptions import RateLimitedError
from dreamjournal.metrics.cloudwatch import emit_business_event

logger = structlog.get_logger(__name__)

MINUTE_MS = 60_000
HOUR_MS = 3_600_000


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_ms: int


@dataclass(frozen=True)
class FeatureStats:
    used: int
    max: int
    remaining: int
    window_ms: int
    resets_at: datetime | None


def rules_from_settings(settings: Settings | None = None) -> dict[str, RateLimitRule]:
    settings = settings or get_settings()
    return {
        "interpret": RateLimitRule(settings.llm_rate_limit_per_minute, MINUTE_MS),
        "followup": RateLimitRule(settings.followup_rate_limit_per_minute, MINUTE_MS),
        "report": RateLimitRule(settings.report_rate_limit_per_hour, HOUR_MS),
        "practice": RateLimitRule(settings.practice_rate_limit_per_hour, HOUR_MS),
        "export": RateLimitRule(settings.export_rate_limit_per_hour, HOUR_MS),
    }


def _now_ms() -> int:
    return int(time.time() * 1000)


def _ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=UTC)


class RateLimiter(Protocol):
    async def check(self, user_id: str, feature: str, *, plan: str = "free", is_admin: bool = False) -> None: ...


class _BaseLimiter:
    def __init__(
        self,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], int] | None = None,
    ):
        self.rules = rules or rules_from_settings()
        self._clock = clock or _now_ms

    def rule(self, feature: str) -> RateLimitRule:
        try:
            return self.rules[feature]
        except KeyError:
            raise ValueError(f"No rate limit rule for feature {feature!r}") from None

    def _reject(self, user_id: str, feature: str, plan: str, used: int, rule: RateLimitRule, oldest_ms: int | None, now: int):
        retry_after = (oldest_ms + rule.window_ms - now) if oldest_ms is not None else rule.window_ms
        logger.warning(
            "rate_limit_exceeded",
            user_id=user_id,
            feature=feature,
            plan=plan,
            current_requests=used,
            max_requests=rule.max_requests,
            window_ms=rule.window_ms,
        )
        emit_business_event("rate_limit_hit", feature=feature)
        return RateLimitedError(feature, rule.max_requests, rule.window_ms, retry_after_ms=max(0, retry_after))


class InMemoryRateLimiter(_BaseLimiter):
    """Process-local sliding window. Timestamps are in milliseconds."""

    def __init__(
        self,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], int] | None = None,
    ):
        super().__init__(rules, clock)
        self._requests: dict[tuple[str, str], list[int]] = {}

    def _live(self, key: tuple[str, str], window_ms: int, now: int) -> list[int]:
        live = [ts for ts in self._requests.get(key, []) if now - ts < window_ms]
        self._requests[key] = live
        return live

    async def check(self, user_id: str, feature: str, *, plan: str = "free", is_admin: bool = False) -> None:
        """Record one request or raise RateLimitedError if the window is full."""
        if is_admin:
            logger.debug("rate_limit_bypassed_admin", user_id=user_id, feature=feature)
            return

        rule = self.rule(feature)
        now = self._clock()
        key = (str(user_id), feature)
        live = self._live(key, rule.window_ms, now)

        if len(live) >= rule.max_requests:
            raise self._reject(str(user_id), feature, plan, len(live), rule, min(live) if live else None, now)

        live.append(now)
        logger.debug(
            "rate_limit_check_passed",
            user_id=user_id,
            feature=feature,
            requests_in_window=len(live),
            max_requests=rule.max_requests,
        )

    def stats(self, user_id: str) -> dict[str, FeatureStats]:
        now = self._clock()
        result: dict[str, FeatureStats] = {}
        for feature, rule in self.rules.items():
            valid = [ts for ts in self._requests.get((str(user_id), feature), []) if now - ts < rule.window_ms]
            result[feature] = FeatureStats(
                used=len(valid),
                max=rule.max_requests,
                remaining=max(0, rule.max_requests - len(valid)),
                window_ms=rule.window_ms,
                resets_at=_ms_to_datetime(min(valid) + rule.window_ms) if valid else None,
            )
        return result

    def cleanup(self) -> int:
        """Drop expired timestamps and empty keys. Returns the number of keys removed."""
        now = self._clock()
        removed = 0
        for key in list(self._requests):
            rule = self.rules.get(key[1])
            window = rule.window_ms if rule else HOUR_MS
            live = [ts for ts in self._requests[key] if now - ts < window]
            if live:
                self._requests[key] = live
            else:
                del self._requests[key]
                removed += 1
        if removed:
            logger.debug("rate_limit_cleanup", removed=removed)
        return removed


class RedisRateLimiter(_BaseLimiter):
    """Sliding window over a Redis sorted set (score = request time in ms)."""

    def __init__(
        self,
        redis: Redis,
        rules: dict[str, RateLimitRule] | None = None,
        clock: Callable[[], int] | None = None,
        prefix: str = "dreamjournal:ratelimit",
    ):
        super().__init__(rules, clock)
        self.redis = redis
        self.prefix = prefix

    def _key(self, user_id: str, feature: str) -> str:
        return f"{self.prefix}:{user_id}:{feature}"

    async def check(self, user_id: str, feature: str, *, plan: str = "free", is_admin: bool = False) -> None:
        if is_admin:
            logger.debug("rate_limit_bypassed_admin", user_id=user_id, feature=feature)
            return

        rule = self.rule(feature)
        now = self._clock()
        key = self._key(str(user_id), feature)

        # Entries with now - ts >= window are expired
        await self.redis.zremrangebyscore(key, "-inf", now - rule.window_ms)
        used = await self.redis.zcard(key)
        if used >= rule.max_requests:
            oldest = await self.redis.zrange(key, 0, 0, withscores=True)
            oldest_ms = int(oldest[0][1]) if oldest else None
            raise self._reject(str(user_id), feature, plan, used, rule, oldest_ms, now)

        await self.redis.zadd(key, {f"{now}:{uuid.uuid4().hex[:8]}": now})
        await self.redis.pexpire(key, rule.window_ms)

    async def stats(self, user_id: str) -> dict[str, FeatureStats]:
        now = self._clock()
        result: dict[str, FeatureStats] = {}
        for feature, rule in self.rules.items():
            key = self._key(str(user_id), feature)
            entries = await self.redis.zrangebyscore(key, now - rule.window_ms + 1, "+inf", withscores=True)
            scores = [int(score) for _, score in entries]
            result[feature] = FeatureStats(
                used=len(scores),
                max=rule.max_requests,
                remaining=max(0, rule.max_requests - len(scores)),
                window_ms=rule.window_ms,
                resets_at=_ms_to_datetime(min(scores) + rule.window_ms) if scores else None,
            )
        return result


def build_rate_limiter(settings: Settings | None = None, redis: Redis | None = None) -> RateLimiter:
    settings = settings or get_settings()
    rules = rules_from_settings(settings)
    if settings.rate_limit_backend == "redis":
        if redis is None:
            from dreamjournal.db.redis import get_redis

            redis = get_redis()
        return RedisRateLimiter(redis, rules)
    return InMemoryRateLimiter(rules)
