"""Prometheus metrics for MAP Watch."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("mapwatch", "MAP Watch application info")
app_info.info({"version": "0.1.0", "name": "mapwatch"})

# Matching run metrics
matching_runs_total = Counter(
    "matching_runs_total",
    "Total number of matching runs",
    ["status"],
)

matching_run_duration_seconds = Histogram(
    "matching_run_duration_seconds",
    "Time spent in a full matching run",
    buckets=[0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0],
)

matching_last_run_timestamp = Gauge(
    "matching_last_run_timestamp",
    "Timestamp of last matching run",
)

matches_created_total = Counter(
    "matches_created_total",
    "Total number of automatic product matches persisted",
)

map_violations_detected_total = Counter(
    "map_violations_detected_total",
    "Total number of MAP violations detected",
    ["source"],
)

match_persist_failures_total = Counter(
    "match_persist_failures_total",
    "Total number of matches that failed to persist",
)

# Embedding provider metrics
embedding_requests_total = Counter(
    "embedding_requests_total",
    "Total number of embedding provider calls",
    ["status"],
)


def record_matching_run(success: bool, duration: float):
    """Record a finished matching run."""
    status = "success" if success else "error"
    matching_runs_total.labels(status=status).inc()
    matching_run_duration_seconds.observe(duration)
    matching_last_run_timestamp.set(time.time())


def record_match_created(source: str, is_violation: bool):
    """Record a persisted match."""
    matches_created_total.inc()
    if is_violation:
        map_violations_detected_total.labels(source=source).inc()


def record_persist_failure():
    """Record a match that could not be stored."""
    match_persist_failures_total.inc()


def record_embedding_request(success: bool):
    """Record an embedding provider call."""
    status = "success" if success else "error"
    embedding_requests_total.labels(status=status).inc()
