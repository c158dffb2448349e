"""
Celery application for the periodic similarity-cluster refresh.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from celery import Celery, signals

from src.core.config import settings
from src.core.logging_setup import configure_logging

CLUSTER_REFRESH_TASK = "workers.update_user_clusters"
PING_TASK = "workers.ping"


def _build_beat_schedule() -> dict[str, dict[str, Any]]:
    if not settings.ENABLE_CLUSTER_REFRESH:
        return {}
    interval = timedelta(minutes=max(1, settings.DISCOVERY_CLUSTER_INTERVAL_MINUTES))
    return {
        "update-user-clusters": {
            "task": CLUSTER_REFRESH_TASK,
            "schedule": interval,
            # A refresh older than one interval is superseded by the next one.
            "options": {"expires": interval.total_seconds()},
        },
    }


def _cluster_task_limits() -> dict[str, int]:
    # The hard limit stays inside the lease TTL so a hung run is killed
    # before another worker may take the lease over.
    hard_limit = max(30, settings.DISCOVERY_CLUSTER_LEASE_TTL_SECONDS - 30)
    return {
        "time_limit": hard_limit,
        "soft_time_limit": max(15, hard_limit - 60),
    }


@signals.setup_logging.connect
def _configure_worker_logging(**_: Any) -> None:
    configure_logging()


celery_app = Celery("diary_discovery")
celery_app.conf.update(
    broker_url=settings.CELERY_BROKER_URL,
    result_backend=settings.CELERY_RESULT_BACKEND,
    result_expires=timedelta(days=1),
    timezone="UTC",
    enable_utc=True,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_track_started=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_default_queue="default",
    task_routes={
        CLUSTER_REFRESH_TASK: {"queue": "discovery"},
        PING_TASK: {"queue": "default"},
    },
    task_annotations={CLUSTER_REFRESH_TASK: _cluster_task_limits()},
    broker_connection_retry_on_startup=True,
    worker_prefetch_multiplier=1,
    beat_schedule=_build_beat_schedule(),
)

celery_app.autodiscover_tasks(["src.workers"])
