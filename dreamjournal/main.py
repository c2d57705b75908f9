"""Dream journal core: process entry point.

Validates configuration, wires logging, the database and (optionally) Redis,
builds the shared DreamService and runs housekeeping until stopped. The chat
transport attaches to `app.service`.
"""

# configure_structlog must run before other dreamjournal imports (structlog caches on first use)
from dreamjournal.core.config import get_settings as _get_settings_early
from dreamjournal.core.logging import configure_structlog

_early_settings = _get_settings_early()
configure_structlog(log_level=_early_settings.log_level, json_logs=_early_settings.json_logs)

import asyncio
import signal
import sys
from dataclasses import dataclass

import structlog

from dreamjournal.core.config import Settings, get_settings
from dreamjournal.db import close_db, close_redis, init_db, init_redis
from dreamjournal.llm.operations import DreamLLM
from dreamjournal.ratelimit.limiter import InMemoryRateLimiter, build_rate_limiter
from dreamjournal.services.dream_service import DreamService
from dreamjournal.usage.tracker import UsageTracker, get_usage_tracker

logger = structlog.get_logger(__name__)

RATE_LIMIT_CLEANUP_SECONDS = 10 * 60
USAGE_CLEANUP_SECONDS = 24 * 60 * 60


@dataclass
class App:
    settings: Settings
    service: DreamService
    tracker: UsageTracker


def check_config(settings: Settings) -> None:
    """Exit with status 1 when required secrets are missing."""
    missing = settings.missing_secrets()
    if missing:
        logger.error("missing_required_config", missing=missing, provider=settings.llm_provider)
        sys.exit(1)


async def startup(settings: Settings | None = None) -> App:
    settings = settings or get_settings()
    logger.info("startup_begin", app_name=settings.app_name, provider=settings.llm_provider)

    await init_db()
    logger.info("db_initialized")

    if settings.rate_limit_backend == "redis":
        await init_redis()
        logger.info("redis_initialized")

    tracker = get_usage_tracker()
    service = DreamService(
        llm=DreamLLM(tracker=tracker),
        limiter=build_rate_limiter(settings),
        tracker=tracker,
        settings=settings,
    )
    logger.info("startup_complete")
    return App(settings=settings, service=service, tracker=tracker)


async def shutdown(app: App) -> None:
    logger.info("shutdown_begin")
    await app.service.llm.provider.aclose()
    await close_redis()
    await close_db()
    logger.info("shutdown_complete")


async def _every(seconds: float, name: str, job) -> None:
    while True:
        await asyncio.sleep(seconds)
        try:
            job()
        except Exception as e:
            logger.error("housekeeping_failed", job=name, error=str(e), error_type=type(e).__name__)


async def run() -> None:
    settings = get_settings()
    check_config(settings)
    app = await startup(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    tasks = [asyncio.create_task(_every(USAGE_CLEANUP_SECONDS, "usage_cleanup", app.tracker.cleanup_old_usage))]
    if isinstance(app.service.limiter, InMemoryRateLimiter):
        tasks.append(
            asyncio.create_task(
                _every(RATE_LIMIT_CLEANUP_SECONDS, "rate_limit_cleanup", app.service.limiter.cleanup)
            )
        )

    try:
        await stop.wait()
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await shutdown(app)


def main() -> None:
    asyncio.run(run())


if __name__ == "__main__":
    main()
