"""
Prometheus metrics for dora-sync.

Process-wide collectors are updated after every job run; the long-running
service exposes them in-process, while one-shot CLI runs push a per-run
registry to the Pushgateway instead.

Naming: snake_case, dora_sync_ prefix.
"""

import logging

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.exposition import pushadd_to_gateway

from dora_sync.sync.results import JobResult

logger = logging.getLogger("dora_sync.metrics")

RECORD_ACTIONS = ("inserted", "updated", "unchanged", "skipped", "failed")

# Sync jobs run from sub-second to several minutes on a cold cursor
DURATION_BUCKETS = (0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0)

# ==============================================================================
# COUNTERS
# ==============================================================================

records_total = Counter(
    "dora_sync_records_total",
    "Upstream records processed by sync jobs",
    ["job", "action"],
    # action: inserted, updated, unchanged, skipped, failed
)

sources_total = Counter(
    "dora_sync_sources_total",
    "Sources processed by sync jobs",
    ["job", "status"],
    # status: success, failed, skipped
)

# ==============================================================================
# HISTOGRAMS / GAUGES
# ==============================================================================

job_duration_seconds = Histogram(
    "dora_sync_job_duration_seconds",
    "Wall-clock duration of one job invocation",
    ["job"],
    buckets=DURATION_BUCKETS,
)

last_success_timestamp = Gauge(
    "dora_sync_last_success_timestamp",
    "Unix time of the last job invocation in which every source succeeded",
    ["job"],
)


def _record_counts(result: JobResult, records: Counter, sources: Counter) -> None:
    for action in RECORD_ACTIONS:
        records.labels(result.job, action).inc(getattr(result, action))
    sources.labels(result.job, "success").inc(len(result.succeeded))
    sources.labels(result.job, "failed").inc(len(result.errors))
    sources.labels(result.job, "skipped").inc(len(result.skipped_sources))


def record_job_result(result: JobResult) -> None:
    """Update the process-wide collectors from one job invocation."""
    _record_counts(result, records_total, sources_total)
    job_duration_seconds.labels(job=result.job).observe(result.duration_seconds)
    if result.ok and result.finished_at is not None:
        last_success_timestamp.labels(job=result.job).set(
            result.finished_at.timestamp()
        )


def push_job_metrics(result: JobResult, gateway: str) -> None:
    """Push one job invocation to a Pushgateway.

    Uses a fresh registry per push and pushadd, grouped by ``sync_job``
    (``job`` is the Pushgateway's own grouping label). Push failures are
    logged, never raised.

    Args:
        result: Finished job invocation
        gateway: Pushgateway address (host:port)
    """
    try:
        registry = CollectorRegistry()
        records = Counter(
            "dora_sync_records_total",
            "Upstream records processed by sync jobs",
            ["sync_job", "action"],
            registry=registry,
        )
        sources = Counter(
            "dora_sync_sources_total",
            "Sources processed by sync jobs",
            ["sync_job", "status"],
            registry=registry,
        )
        duration = Gauge(
            "dora_sync_job_duration_seconds",
            "Wall-clock duration of the last job invocation",
            ["sync_job"],
            registry=registry,
        )
        _record_counts(result, records, sources)
        duration.labels(result.job).set(result.duration_seconds)

        pushadd_to_gateway(
            gateway,
            job="dora_sync",
            registry=registry,
            grouping_key={"sync_job": result.job},
        )
    except Exception as e:
        logger.warning(
            "pushgateway_push_failed",
            extra={
                "sync_job": result.job,
                "error": str(e),
                "error_type": type(e).__name__,
            },
        )
