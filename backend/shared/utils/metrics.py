"""
Prometheus metrics for Fixture Hub.
Wraps prometheus_client with async-safe latency helpers.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
PROVIDER_FETCHES = Counter(
    "fh_provider_fetches_total",
    "Provider fetch attempts by outcome",
    ["provider", "status"],
)
TEAM_RESOLUTIONS = Counter(
    "fh_team_resolutions_total",
    "Team resolution outcomes",
    ["provider", "method"],
)
AGGREGATED_MATCHES = Counter(
    "fh_aggregated_matches_total",
    "Canonical matches produced by aggregation",
    ["sport", "providers"],
)
LIFECYCLE_TRANSITIONS = Counter(
    "fh_lifecycle_transitions_total",
    "Lifecycle status transitions applied",
    ["source", "to_status"],
)
LAYER_FAILURES = Counter(
    "fh_layer_failures_total",
    "Per-match lifecycle evaluation failures",
    ["layer"],
)
PERSISTENCE_CONFLICTS = Counter(
    "fh_persistence_conflicts_total",
    "Optimistic write conflicts",
    ["operation"],
)
JOBS_SKIPPED = Counter(
    "fh_jobs_skipped_total",
    "Job runs skipped because another run held the marker",
    ["job"],
)

# ── Histograms ──────────────────────────────────────────────────────────
PROVIDER_LATENCY = Histogram(
    "fh_provider_latency_seconds",
    "Provider fetch latency in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
JOB_DURATION = Histogram(
    "fh_job_duration_seconds",
    "Wall time of scheduled jobs",
    ["job"],
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 15.0, 30.0, 60.0, 300.0),
)

# ── Gauges ──────────────────────────────────────────────────────────────
MATCHES_BY_STATUS = Gauge(
    "fh_matches_by_status",
    "Canonical matches per lifecycle status after the last sync",
    ["sport", "status"],
)
REVIEW_QUEUE_DEPTH = Gauge(
    "fh_review_queue_depth",
    "Entries waiting in the manual review queue",
)


@asynccontextmanager
async def atrack_latency(histogram: Histogram, **labels: str) -> AsyncIterator[None]:
    """Async context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
