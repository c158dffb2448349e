"""
Prometheus metrics registry and helper recorders.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

CLUSTER_RUNS_TOTAL = Counter(
    "discovery_cluster_runs_total",
    "Similarity-cluster refresh runs by outcome.",
    ["outcome"],
)
CLUSTER_RUN_DURATION_SECONDS = Histogram(
    "discovery_cluster_run_duration_seconds",
    "Wall-clock duration of similarity-cluster refresh runs.",
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 60.0, 300.0, 900.0),
)
CLUSTER_ITERATIONS = Histogram(
    "discovery_cluster_iterations",
    "Centroid refinement iterations used per clustering run.",
    buckets=(1, 2, 5, 10, 20, 30, 40, 50, 100),
)
CLUSTERS_PUBLISHED = Gauge(
    "discovery_clusters_published",
    "Number of similarity clusters in the currently published snapshot.",
)
CLUSTERED_USERS = Gauge(
    "discovery_clustered_users",
    "Distinct users considered by the most recent clustering run.",
)
MALFORMED_RECORDS_TOTAL = Counter(
    "discovery_malformed_records_total",
    "Description records skipped as malformed by reason.",
    ["reason"],
)
DISCOVERY_FALLBACKS_TOTAL = Counter(
    "discovery_fallbacks_total",
    "Public discovery calls that degraded to an empty default by operation and error type.",
    ["operation", "error_type"],
)
WORKER_ERRORS_TOTAL = Counter(
    "worker_errors_total",
    "Worker task failures by task name.",
    ["task_name"],
)


def record_cluster_run(
    *,
    outcome: str,
    duration_seconds: float,
    iterations: int = 0,
    clusters: int | None = None,
    total_users: int | None = None,
) -> None:
    normalized_outcome = outcome.strip() or "unknown"
    CLUSTER_RUNS_TOTAL.labels(outcome=normalized_outcome).inc()
    CLUSTER_RUN_DURATION_SECONDS.observe(max(0.0, duration_seconds))
    if iterations > 0:
        CLUSTER_ITERATIONS.observe(iterations)
    if clusters is not None:
        CLUSTERS_PUBLISHED.set(max(0, clusters))
    if total_users is not None:
        CLUSTERED_USERS.set(max(0, total_users))


def record_malformed_record(*, reason: str) -> None:
    MALFORMED_RECORDS_TOTAL.labels(reason=reason.strip() or "unknown").inc()


def record_discovery_fallback(*, operation: str, error_type: str) -> None:
    DISCOVERY_FALLBACKS_TOTAL.labels(operation=operation, error_type=error_type).inc()


def record_worker_error(task_name: str) -> None:
    WORKER_ERRORS_TOTAL.labels(task_name=task_name).inc()
