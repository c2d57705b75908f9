"""Tests for the fire-and-forget CloudWatch emitters."""

from unittest.mock import MagicMock, patch

import pytest

from dreamjournal.core.config import get_settings
from dreamjournal.metrics import cloudwatch

pytestmark = pytest.mark.unit


@pytest.fixture
def metrics_on(monkeypatch):
    monkeypatch.setenv("METRICS_ENABLED", "true")
    monkeypatch.setenv("METRICS_NAMESPACE", "DreamJournalTest")
    get_settings.cache_clear()


def test_disabled_metrics_never_touch_boto3() -> None:
    with patch.object(cloudwatch, "_get_client") as get_client:
        cloudwatch.emit_business_event("interpretation_completed")
        cloudwatch.emit_llm_latency("interpret", 812.0, "gpt-4o-mini")

    get_client.assert_not_called()


def test_put_builds_namespace_and_dimensions(metrics_on) -> None:
    client = MagicMock()
    with patch.object(cloudwatch, "_get_client", return_value=client):
        cloudwatch._put(
            "LLM",
            {"MetricName": "Latency", "Dimensions": [{"Name": "Operation", "Value": "interpret"}], "Value": 5.0},
        )

    kwargs = client.put_metric_data.call_args.kwargs
    assert kwargs["Namespace"] == "DreamJournalTest/LLM"
    metric = kwargs["MetricData"][0]
    assert metric["MetricName"] == "Latency"
    assert "Timestamp" in metric


def test_put_swallows_client_errors(metrics_on) -> None:
    client = MagicMock()
    client.put_metric_data.side_effect = RuntimeError("throttled")
    with patch.object(cloudwatch, "_get_client", return_value=client):
        cloudwatch._put("Business", {"MetricName": "EventCount", "Value": 1.0})


def test_business_event_dimensions(metrics_on) -> None:
    with patch.object(cloudwatch, "_submit") as submit:
        cloudwatch.emit_business_event("quota_blocked", feature="interpret")

    suffix, metric = submit.call_args.args
    assert suffix == "Business"
    assert metric["Dimensions"] == [
        {"Name": "Event", "Value": "quota_blocked"},
        {"Name": "Feature", "Value": "interpret"},
    ]


def test_enabled_submit_without_loop_uses_executor(metrics_on) -> None:
    with patch.object(cloudwatch, "_executor") as executor:
        cloudwatch.emit_token_usage("interpret", "gpt-4o-mini", 200)

    fn, suffix, metric = executor.submit.call_args.args
    assert fn is cloudwatch._put
    assert suffix == "LLM"
    assert metric["Value"] == 200.0
