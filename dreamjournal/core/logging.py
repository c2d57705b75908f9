"""structlog setup for the bot process.

Every record, ours or a library's, goes through one stdout handler and one
ProcessorFormatter: JSON lines when json_logs is on, colored console output
otherwise. The active correlation id is attached to each entry.
"""

import logging
import logging.config
from typing import Any

import structlog

from dreamjournal.core.correlation import correlation_id

# Libraries that log every request at INFO
QUIET_LOGGERS = ("httpx", "anthropic", "sqlalchemy.engine", "botocore")


def add_correlation_id(logger, method, event_dict):
    """Add the current correlation_id unless the caller already set one."""
    cid = correlation_id.get(None)
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def shared_processors() -> list:
    """Processors run for both structlog and stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_correlation_id,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def build_logging_config(log_level: str = "INFO", json_logs: bool = True) -> dict[str, Any]:
    """dictConfig routing the root logger through structlog's ProcessorFormatter."""
    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": structlog.stdlib.ProcessorFormatter,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    renderer,
                ],
                "foreign_pre_chain": shared_processors(),
            },
        },
        "handlers": {
            "stdout": {
                "class": "logging.StreamHandler",
                "formatter": "structured",
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"handlers": ["stdout"], "level": log_level.upper()},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    }


def configure_structlog(log_level: str = "INFO", json_logs: bool = True) -> None:
    """Install the logging config. Must run before the first get_logger() call is used.

    structlog caches bound loggers on first use, so a logger created before
    this runs keeps the default processor chain.
    """
    logging.config.dictConfig(build_logging_config(log_level, json_logs))
    structlog.configure(
        processors=shared_processors() + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
