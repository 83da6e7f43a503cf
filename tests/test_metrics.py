"""Tests for dora-sync Prometheus metrics."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from prometheus_client import REGISTRY, Counter, Gauge, Histogram

from dora_sync import metrics
from dora_sync.sync.results import JobResult, Result, SourceOutcome, SyncError

STARTED = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)


def _result(job="commits", ok=True) -> JobResult:
    result = JobResult(job=job, started_at=STARTED)
    result.record("acme/api", Result.success(SourceOutcome(inserted=3, unchanged=2, skipped=1)))
    if not ok:
        result.record("acme/web", Result.failure(SyncError("acme/web", "boom")))
    result.skipped_sources.append("acme/old")
    result.finished_at = STARTED + timedelta(seconds=12)
    return result


def _sample(name, labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


# ==============================================================================
# Definitions
# ==============================================================================


def test_collector_types():
    assert isinstance(metrics.records_total, Counter)
    assert isinstance(metrics.sources_total, Counter)
    assert isinstance(metrics.job_duration_seconds, Histogram)
    assert isinstance(metrics.last_success_timestamp, Gauge)


def test_collector_labels():
    assert metrics.records_total._labelnames == ("job", "action")
    assert metrics.sources_total._labelnames == ("job", "status")
    assert metrics.job_duration_seconds._labelnames == ("job",)


# ==============================================================================
# record_job_result
# ==============================================================================


def test_record_job_result_counts():
    labels = {"job": "metrics_test_counts", "action": "inserted"}
    before = _sample("dora_sync_records_total", labels)
    failed_before = _sample(
        "dora_sync_sources_total", {"job": "metrics_test_counts", "status": "failed"}
    )

    metrics.record_job_result(_result(job="metrics_test_counts", ok=False))

    assert _sample("dora_sync_records_total", labels) - before == 3
    assert (
        _sample("dora_sync_sources_total", {"job": "metrics_test_counts", "status": "failed"})
        - failed_before
        == 1
    )
    assert _sample(
        "dora_sync_sources_total", {"job": "metrics_test_counts", "status": "skipped"}
    ) >= 1


def test_last_success_only_set_when_ok():
    metrics.record_job_result(_result(job="metrics_test_failed", ok=False))
    assert (
        REGISTRY.get_sample_value(
            "dora_sync_last_success_timestamp", {"job": "metrics_test_failed"}
        )
        is None
    )

    metrics.record_job_result(_result(job="metrics_test_ok"))
    assert REGISTRY.get_sample_value(
        "dora_sync_last_success_timestamp", {"job": "metrics_test_ok"}
    ) == (STARTED + timedelta(seconds=12)).timestamp()


def test_duration_observed():
    labels = {"job": "metrics_test_duration"}
    metrics.record_job_result(_result(job="metrics_test_duration"))

    assert REGISTRY.get_sample_value("dora_sync_job_duration_seconds_sum", labels) == 12.0


# ==============================================================================
# Pushgateway
# ==============================================================================


def test_push_groups_by_sync_job():
    with patch("dora_sync.metrics.pushadd_to_gateway") as push:
        metrics.push_job_metrics(_result(), "localhost:29091")

    push.assert_called_once()
    args, kwargs = push.call_args
    assert args == ("localhost:29091",)
    assert kwargs["job"] == "dora_sync"
    assert kwargs["grouping_key"] == {"sync_job": "commits"}
    registry = kwargs["registry"]
    assert registry is not REGISTRY
    assert (
        registry.get_sample_value(
            "dora_sync_records_total", {"sync_job": "commits", "action": "inserted"}
        )
        == 3
    )


def test_push_failure_is_swallowed():
    with patch(
        "dora_sync.metrics.pushadd_to_gateway", side_effect=OSError("connection refused")
    ) as push:
        metrics.push_job_metrics(_result(), "localhost:29091")

    push.assert_called_once()
