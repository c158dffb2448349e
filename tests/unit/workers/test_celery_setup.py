from __future__ import annotations

import importlib
import json
from datetime import timedelta
from typing import Any
from unittest.mock import MagicMock

import pytest

import src.workers.tasks as tasks_module
from src.processing.discovery_types import RunStats

celery_app_module = importlib.import_module("src.workers.celery_app")
_real_record_worker_activity = tasks_module._record_worker_activity

pytestmark = pytest.mark.unit


@pytest.fixture(autouse=True)
def disable_worker_heartbeat(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(tasks_module, "_record_worker_activity", lambda **_: None)


def test_build_beat_schedule_includes_cluster_refresh(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(celery_app_module.settings, "ENABLE_CLUSTER_REFRESH", True)
    monkeypatch.setattr(celery_app_module.settings, "DISCOVERY_CLUSTER_INTERVAL_MINUTES", 90)

    schedule = celery_app_module._build_beat_schedule()

    assert schedule["update-user-clusters"]["task"] == "workers.update_user_clusters"
    assert schedule["update-user-clusters"]["schedule"] == timedelta(minutes=90)


def test_build_beat_schedule_omits_disabled_refresh(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(celery_app_module.settings, "ENABLE_CLUSTER_REFRESH", False)

    assert celery_app_module._build_beat_schedule() == {}


def test_celery_routes_cluster_refresh_to_discovery_queue() -> None:
    routes = celery_app_module.celery_app.conf.task_routes
    assert routes["workers.update_user_clusters"]["queue"] == "discovery"
    assert routes["workers.ping"]["queue"] == "default"


def test_cluster_task_hard_limit_stays_inside_lease_ttl(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(celery_app_module.settings, "DISCOVERY_CLUSTER_LEASE_TTL_SECONDS", 1800)

    limits = celery_app_module._cluster_task_limits()

    assert limits["time_limit"] < 1800
    assert limits["soft_time_limit"] < limits["time_limit"]


def test_beat_entry_expires_after_one_interval(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(celery_app_module.settings, "ENABLE_CLUSTER_REFRESH", True)
    monkeypatch.setattr(celery_app_module.settings, "DISCOVERY_CLUSTER_INTERVAL_MINUTES", 30)

    entry = celery_app_module._build_beat_schedule()["update-user-clusters"]

    assert entry["options"]["expires"] == 1800.0


HeartbeatCall = tuple[str, str, str | None]


@pytest.fixture
def heartbeat_calls(monkeypatch: pytest.MonkeyPatch) -> list[HeartbeatCall]:
    calls: list[HeartbeatCall] = []

    def fake_record(*, task_name: str, status: str, error: str | None = None) -> None:
        calls.append((task_name, status, error))

    monkeypatch.setattr(tasks_module, "_record_worker_activity", fake_record)
    return calls


@pytest.mark.parametrize(
    ("result", "expected_status"),
    [
        ({"status": "ok"}, "ok"),
        ({"succeeded": True, "skipped": False, "error": None}, "ok"),
        ({"succeeded": False, "skipped": True, "error": "busy"}, "ok"),
        ({"succeeded": False, "skipped": False, "error": "ExternalStoreError: down"}, "degraded"),
    ],
)
def test_run_task_with_heartbeat_reports_completion_status(
    heartbeat_calls: list[HeartbeatCall],
    result: dict[str, Any],
    expected_status: str,
) -> None:
    returned = tasks_module._run_task_with_heartbeat(
        task_name="workers.sample",
        runner=lambda: result,
    )

    assert returned is result
    assert heartbeat_calls[0] == ("workers.sample", "started", None)
    assert heartbeat_calls[1] == ("workers.sample", expected_status, result.get("error"))


def test_run_task_with_heartbeat_records_failure(heartbeat_calls: list[HeartbeatCall]) -> None:
    def failing_runner() -> dict[str, Any]:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        tasks_module._run_task_with_heartbeat(task_name="workers.sample", runner=failing_runner)

    assert heartbeat_calls == [
        ("workers.sample", "started", None),
        ("workers.sample", "failed", "boom"),
    ]


def test_record_worker_activity_writes_truncated_payload(monkeypatch: pytest.MonkeyPatch) -> None:
    fake_redis = MagicMock()
    monkeypatch.setattr(tasks_module.redis, "from_url", MagicMock(return_value=fake_redis))

    _real_record_worker_activity(task_name="workers.sample", status="degraded", error="x" * 900)

    key, payload = fake_redis.set.call_args.args
    assert key == tasks_module.settings.WORKER_HEARTBEAT_REDIS_KEY
    decoded = json.loads(payload)
    assert decoded["status"] == "degraded"
    assert len(decoded["error"]) == tasks_module.HEARTBEAT_ERROR_MAX_CHARS
    fake_redis.close.assert_called_once()


def _patch_run_result(monkeypatch: pytest.MonkeyPatch, stats: RunStats) -> list[Any]:
    seen: list[Any] = []

    def fake_run_async(coro: Any) -> dict[str, Any]:
        seen.append(coro)
        coro.close()
        return stats.to_dict()

    monkeypatch.setattr(tasks_module, "_run_async", fake_run_async)
    return seen


def test_update_user_clusters_task_returns_run_stats(monkeypatch: pytest.MonkeyPatch) -> None:
    seen = _patch_run_result(
        monkeypatch,
        RunStats(clusters_created=3, clusters_removed=2, total_users=12, iterations=6),
    )
    worker_errors = MagicMock()
    monkeypatch.setattr(tasks_module, "record_worker_error", worker_errors)

    result = tasks_module.update_user_clusters.run()

    assert len(seen) == 1
    assert result["succeeded"] is True
    assert result["clusters_created"] == 3
    assert result["clusters_removed"] == 2
    worker_errors.assert_not_called()


def test_update_user_clusters_task_reports_failed_run(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_run_result(monkeypatch, RunStats(error="ExternalStoreError: down"))
    worker_errors = MagicMock()
    monkeypatch.setattr(tasks_module, "record_worker_error", worker_errors)

    result = tasks_module.update_user_clusters.run()

    assert result["succeeded"] is False
    worker_errors.assert_called_once_with(task_name="workers.update_user_clusters")


def test_update_user_clusters_task_treats_held_lease_as_skip(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    _patch_run_result(
        monkeypatch,
        RunStats(error="cluster run already in progress", skipped=True),
    )
    worker_errors = MagicMock()
    monkeypatch.setattr(tasks_module, "record_worker_error", worker_errors)

    result = tasks_module.update_user_clusters.run()

    assert result["skipped"] is True
    worker_errors.assert_not_called()


def test_task_failure_handler_pushes_dead_letter(monkeypatch: pytest.MonkeyPatch) -> None:
    pushed: list[dict[str, Any]] = []
    monkeypatch.setattr(tasks_module, "_push_dead_letter", pushed.append)
    monkeypatch.setattr(tasks_module, "record_worker_error", MagicMock())
    sender = MagicMock()
    sender.name = "workers.update_user_clusters"
    sender.max_retries = None
    sender.request.retries = 0

    tasks_module._handle_task_failure(
        sender=sender,
        task_id="task-1",
        exception=RuntimeError("boom"),
    )

    assert pushed[0]["task_name"] == "workers.update_user_clusters"
    assert pushed[0]["exception_type"] == "RuntimeError"
    assert pushed[0]["exception_message"] == "boom"


def test_push_dead_letter_to_redis(monkeypatch: pytest.MonkeyPatch) -> None:
    fake_redis = MagicMock()
    monkeypatch.setattr(tasks_module.redis, "from_url", MagicMock(return_value=fake_redis))

    tasks_module._push_dead_letter({"task_name": "workers.update_user_clusters"})

    fake_redis.lpush.assert_called_once()
    key, payload = fake_redis.lpush.call_args.args
    assert key == tasks_module.DEAD_LETTER_KEY
    assert json.loads(payload)["task_name"] == "workers.update_user_clusters"
    fake_redis.ltrim.assert_called_once_with(
        tasks_module.DEAD_LETTER_KEY,
        0,
        tasks_module.DEAD_LETTER_MAX_ITEMS - 1,
    )
    fake_redis.close.assert_called_once()


def test_ping_task_returns_ok() -> None:
    result = tasks_module.ping.run()
    assert result["status"] == "ok"
    assert "timestamp" in result
