"""CloudWatch custom metrics for LLM latency, token usage and business events.

All emitters are fire-and-forget: failures are logged as warnings and never
reach the caller. boto3 is synchronous, so put_metric_data runs on a small
thread pool instead of the event loop. Nothing is sent unless
settings.metrics_enabled is set.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import boto3
import structlog

from dreamjournal.core.config import get_settings

logger = structlog.get_logger(__name__)

_cw_client = None
_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="cw-metrics")


def _get_client():
    global _cw_client
    if _cw_client is None:
        _cw_client = boto3.client("cloudwatch", region_name=get_settings().aws_region)
    return _cw_client


def _put(namespace_suffix: str, metric: dict) -> None:
    """Synchronous put_metric_data. Runs in the thread pool."""
    namespace = f"{get_settings().metrics_namespace}/{namespace_suffix}"
    metric.setdefault("Timestamp", datetime.now(timezone.utc))
    try:
        _get_client().put_metric_data(Namespace=namespace, MetricData=[metric])
    except Exception as e:
        logger.warning("metric_emit_failed", error=str(e), metric=metric.get("MetricName"), namespace=namespace)


def _submit(namespace_suffix: str, metric: dict) -> None:
    if not get_settings().metrics_enabled:
        return
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        _executor.submit(_put, namespace_suffix, metric)
        return
    loop.run_in_executor(_executor, _put, namespace_suffix, metric)


def emit_llm_latency(operation: str, duration_ms: float, model: str) -> None:
    """Latency of one logical LLM operation (including retries)."""
    _submit(
        "LLM",
        {
            "MetricName": "Latency",
            "Dimensions": [
                {"Name": "Operation", "Value": operation},
                {"Name": "Model", "Value": model},
            ],
            "Value": duration_ms,
            "Unit": "Milliseconds",
        },
    )


def emit_token_usage(operation: str, model: str, total_tokens: int) -> None:
    _submit(
        "LLM",
        {
            "MetricName": "Tokens",
            "Dimensions": [
                {"Name": "Operation", "Value": operation},
                {"Name": "Model", "Value": model},
            ],
            "Value": float(total_tokens),
            "Unit": "Count",
        },
    )


def emit_business_event(event_name: str, feature: str | None = None) -> None:
    """Count a business event (interpretation_completed, quota_blocked, ...)."""
    dimensions = [{"Name": "Event", "Value": event_name}]
    if feature:
        dimensions.append({"Name": "Feature", "Value": feature})
    _submit(
        "Business",
        {
            "MetricName": "EventCount",
            "Dimensions": dimensions,
            "Value": 1.0,
            "Unit": "Count",
        },
    )
