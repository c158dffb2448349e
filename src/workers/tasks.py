"""
Celery tasks for periodic similarity-cluster refresh.

Each task records a heartbeat in Redis when it starts and when it ends so
operators can tell a stalled worker from one that is simply idle.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Coroutine, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any, TypeVar, cast

import redis
import structlog
from celery import shared_task
from celery.signals import task_failure

from src.core.config import settings
from src.core.observability import record_worker_error
from src.processing.cluster_lease import RedisClusterLease
from src.processing.discovery_engine import DiscoveryEngine
from src.storage.database import engine as db_engine
from src.workers.celery_app import CLUSTER_REFRESH_TASK, PING_TASK

logger = structlog.get_logger(__name__)

DEAD_LETTER_KEY = "celery:dead_letter"
DEAD_LETTER_MAX_ITEMS = 1000
HEARTBEAT_ERROR_MAX_CHARS = 500

TaskFunc = TypeVar("TaskFunc", bound=Callable[..., Any])


def typed_shared_task(*task_args: Any, **task_kwargs: Any) -> Callable[[TaskFunc], TaskFunc]:
    """Typed wrapper around Celery's untyped ``shared_task`` decorator."""
    decorator = shared_task(*task_args, **task_kwargs)
    return cast("Callable[[TaskFunc], TaskFunc]", decorator)


def _run_async(coro: Coroutine[Any, Any, dict[str, Any]]) -> dict[str, Any]:
    return asyncio.run(coro)


@contextmanager
def _redis_client() -> Iterator[redis.Redis[str]]:
    client: redis.Redis[str] = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        yield client
    finally:
        client.close()


def _push_dead_letter(payload: dict[str, Any]) -> None:
    try:
        with _redis_client() as client:
            client.lpush(DEAD_LETTER_KEY, json.dumps(payload, default=str))
            client.ltrim(DEAD_LETTER_KEY, 0, DEAD_LETTER_MAX_ITEMS - 1)
    except redis.RedisError:
        logger.exception("Failed to push dead letter payload", task_name=payload.get("task_name"))


def _record_worker_activity(
    *,
    task_name: str,
    status: str,
    error: str | None = None,
) -> None:
    payload = {
        "task": task_name,
        "status": status,
        "timestamp": datetime.now(tz=UTC).isoformat(),
    }
    if error:
        payload["error"] = error[:HEARTBEAT_ERROR_MAX_CHARS]
    try:
        with _redis_client() as client:
            client.set(
                settings.WORKER_HEARTBEAT_REDIS_KEY,
                json.dumps(payload),
                ex=max(60, settings.WORKER_HEARTBEAT_TTL_SECONDS),
            )
    except redis.RedisError:
        logger.exception("Failed to record worker heartbeat", task_name=task_name, status=status)


def _completion_status(result: dict[str, Any]) -> str:
    # A run that found the lease held did nothing wrong.
    if result.get("skipped") or result.get("succeeded", True):
        return "ok"
    return "degraded"


def _run_task_with_heartbeat(
    *,
    task_name: str,
    runner: Callable[[], dict[str, Any]],
) -> dict[str, Any]:
    _record_worker_activity(task_name=task_name, status="started")
    try:
        result = runner()
    except Exception as exc:
        _record_worker_activity(task_name=task_name, status="failed", error=str(exc))
        raise
    _record_worker_activity(
        task_name=task_name,
        status=_completion_status(result),
        error=result.get("error"),
    )
    return result


def _handle_task_failure(
    sender: Any = None,
    task_id: str | None = None,
    exception: BaseException | None = None,
    args: tuple[Any, ...] | None = None,
    kwargs: dict[str, Any] | None = None,
    **_extra: Any,
) -> None:
    retries = int(getattr(getattr(sender, "request", None), "retries", 0))
    max_retries = getattr(sender, "max_retries", None)
    if isinstance(max_retries, int) and retries < max_retries:
        return

    task_name = str(getattr(sender, "name", "unknown"))
    record_worker_error(task_name=task_name)
    _push_dead_letter(
        {
            "task_name": task_name,
            "task_id": task_id,
            "exception_type": type(exception).__name__ if exception is not None else "unknown",
            "exception_message": str(exception) if exception is not None else "",
            "args": args or (),
            "kwargs": kwargs or {},
            "retries": retries,
            "failed_at": datetime.now(tz=UTC).isoformat(),
        }
    )


task_failure.connect(_handle_task_failure)


async def _update_user_clusters_async() -> dict[str, Any]:
    discovery = DiscoveryEngine(lease=RedisClusterLease())
    try:
        stats = await discovery.update_user_clusters()
    finally:
        # Pooled connections are bound to this event loop.
        await db_engine.dispose()
    return stats.to_dict()


def _refresh_clusters() -> dict[str, Any]:
    logger.info("Starting similarity cluster refresh task")
    result = _run_async(_update_user_clusters_async())
    if result["skipped"]:
        logger.info("Similarity cluster refresh skipped; another run is active")
    elif not result["succeeded"]:
        # Not retried inline; the next scheduled run tries again.
        record_worker_error(task_name=CLUSTER_REFRESH_TASK)
        logger.warning("Similarity cluster refresh did not complete", error=result["error"])
    else:
        logger.info(
            "Finished similarity cluster refresh task",
            clusters_created=result["clusters_created"],
            clusters_removed=result["clusters_removed"],
            total_users=result["total_users"],
            iterations=result["iterations"],
            converged=result["converged"],
            processing_time_ms=result["processing_time_ms"],
        )
    return result


@typed_shared_task(name=CLUSTER_REFRESH_TASK)
def update_user_clusters() -> dict[str, Any]:
    """Recompute and publish similarity clusters over the full description corpus."""
    return _run_task_with_heartbeat(task_name=CLUSTER_REFRESH_TASK, runner=_refresh_clusters)


@typed_shared_task(name=PING_TASK)
def ping() -> dict[str, Any]:
    """Verify a worker is consuming the default queue."""
    return _run_task_with_heartbeat(
        task_name=PING_TASK,
        runner=lambda: {"status": "ok", "timestamp": datetime.now(tz=UTC).isoformat()},
    )
