from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from src.core.observability import (
    record_cluster_run,
    record_discovery_fallback,
    record_malformed_record,
    record_worker_error,
)

pytestmark = pytest.mark.unit


def _sample(name: str, labels: dict[str, str] | None = None) -> float:
    value = REGISTRY.get_sample_value(name, labels or {})
    return float(value or 0.0)


def test_record_cluster_run_updates_counters_and_gauges() -> None:
    before_runs = _sample("discovery_cluster_runs_total", {"outcome": "ok"})
    before_iterations = _sample("discovery_cluster_iterations_count")

    record_cluster_run(
        outcome="ok",
        duration_seconds=1.25,
        iterations=7,
        clusters=4,
        total_users=31,
    )

    assert _sample("discovery_cluster_runs_total", {"outcome": "ok"}) == before_runs + 1
    assert _sample("discovery_cluster_iterations_count") == before_iterations + 1
    assert _sample("discovery_clusters_published") == 4
    assert _sample("discovery_clustered_users") == 31


def test_record_cluster_run_leaves_gauges_for_failed_runs() -> None:
    record_cluster_run(outcome="ok", duration_seconds=0.5, clusters=2, total_users=9)
    before_failed = _sample("discovery_cluster_runs_total", {"outcome": "failed"})

    record_cluster_run(outcome="failed", duration_seconds=0.1)

    assert _sample("discovery_cluster_runs_total", {"outcome": "failed"}) == before_failed + 1
    assert _sample("discovery_clusters_published") == 2


def test_fallback_malformed_and_worker_counters_increment() -> None:
    fallback_labels = {"operation": "find_similar_users", "error_type": "ExternalStoreError"}
    before_fallback = _sample("discovery_fallbacks_total", fallback_labels)
    before_malformed = _sample("discovery_malformed_records_total", {"reason": "dimension"})
    before_worker = _sample("worker_errors_total", {"task_name": "workers.update_user_clusters"})

    record_discovery_fallback(operation="find_similar_users", error_type="ExternalStoreError")
    record_malformed_record(reason="dimension")
    record_worker_error("workers.update_user_clusters")

    assert _sample("discovery_fallbacks_total", fallback_labels) == before_fallback + 1
    assert (
        _sample("discovery_malformed_records_total", {"reason": "dimension"})
        == before_malformed + 1
    )
    assert (
        _sample("worker_errors_total", {"task_name": "workers.update_user_clusters"})
        == before_worker + 1
    )
