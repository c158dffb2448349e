"""
Discovery engine facade.

Public methods are fail-open: discovery is an enhancement, so any failure
is logged and degraded to an empty result instead of reaching the caller.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import datetime
from typing import TYPE_CHECKING

import structlog

from src.core.config import settings
from src.core.observability import record_cluster_run, record_discovery_fallback
from src.processing.cluster_engine import ClusterEngine
from src.processing.cluster_lease import ClusterRunLease, LocalClusterLease
from src.processing.cluster_snapshot import ClusterSnapshotHolder
from src.processing.discovery_types import (
    GeoPoint,
    Recommendation,
    RunStats,
    SimilarUserMatch,
    TimeWindow,
    UserPreferences,
)
from src.processing.diversifier import diversify
from src.processing.errors import ClusterRunInProgressError
from src.processing.recommendation_builder import RecommendationBuilder

if TYPE_CHECKING:
    from src.storage.description_store import DescriptionStore

logger = structlog.get_logger(__name__)


class DiscoveryEngine:
    """Entry point for similar-user discovery, recommendations and cluster refresh."""

    def __init__(
        self,
        store: DescriptionStore | None = None,
        *,
        snapshots: ClusterSnapshotHolder | None = None,
        lease: ClusterRunLease | None = None,
        cluster_engine: ClusterEngine | None = None,
        builder: RecommendationBuilder | None = None,
        store_timeout_seconds: float | None = None,
        perf_counter: Callable[[], float] | None = None,
    ) -> None:
        # Storage imports processing types, so it is imported here rather than at module load.
        from src.storage.description_store import SqlDescriptionStore, TimeoutDescriptionStore

        if store is None:
            store = SqlDescriptionStore()
        self.store = TimeoutDescriptionStore(
            store,
            timeout_seconds=(
                settings.DISCOVERY_STORE_TIMEOUT_SECONDS
                if store_timeout_seconds is None
                else store_timeout_seconds
            ),
        )
        self.snapshots = snapshots or ClusterSnapshotHolder()
        self.lease = lease or LocalClusterLease()
        self.cluster_engine = cluster_engine or ClusterEngine(
            embedding_dimensions=settings.DISCOVERY_EMBEDDING_DIMENSIONS,
        )
        self.builder = builder or RecommendationBuilder(self.store, self.snapshots)
        self._perf_counter = perf_counter or time.perf_counter

    async def find_similar_users(
        self,
        target_embeddings: Sequence[Sequence[float]],
        *,
        max_results: int = 10,
        time_window: TimeWindow | None = None,
        exclude_user_id: str | None = None,
        target_themes: Sequence[str] = (),
        target_locations: Sequence[GeoPoint] = (),
        target_timestamps: Sequence[datetime] = (),
    ) -> list[SimilarUserMatch]:
        try:
            return await self.builder.find_similar_users(
                target_embeddings,
                max_results=max_results,
                time_window=time_window,
                exclude_user_id=exclude_user_id,
                target_themes=target_themes,
                target_locations=target_locations,
                target_timestamps=target_timestamps,
            )
        except Exception as exc:
            self._log_fallback("find_similar_users", exc)
            return []

    async def generate_recommendations(
        self,
        similar_users: Sequence[SimilarUserMatch],
        preferences: UserPreferences | None = None,
        *,
        exclude_locations: Sequence[GeoPoint] = (),
    ) -> list[Recommendation]:
        resolved_preferences = preferences or UserPreferences(
            location_radius_km=settings.DISCOVERY_LOCATION_RADIUS_KM,
        )
        try:
            candidates = await self.builder.generate_recommendations(
                similar_users,
                resolved_preferences,
                exclude_locations=exclude_locations,
            )
            return diversify(candidates, resolved_preferences)
        except Exception as exc:
            self._log_fallback("generate_recommendations", exc)
            return []

    async def calculate_discovery_score(self, user_a: str, user_b: str) -> float:
        try:
            return await self.builder.calculate_discovery_score(user_a, user_b)
        except Exception as exc:
            self._log_fallback("calculate_discovery_score", exc)
            return 0.0

    async def update_user_clusters(self) -> RunStats:
        """
        Recompute clusters over the whole corpus and publish them.

        Only one run may be active at a time. A failed run returns zeroed
        statistics with ``error`` set; retrying is left to the scheduler.
        """
        started = self._perf_counter()
        try:
            async with self.lease.acquire():
                stats = await self._run_clustering()
        except ClusterRunInProgressError as exc:
            logger.info("Skipping cluster refresh; another run holds the lease")
            stats = RunStats(error=str(exc), skipped=True)
            outcome = "skipped"
        except Exception as exc:
            logger.exception("Cluster refresh failed")
            record_discovery_fallback(
                operation="update_user_clusters",
                error_type=type(exc).__name__,
            )
            stats = RunStats(error=f"{type(exc).__name__}: {exc}")
            outcome = "failed"
        else:
            outcome = "ok"

        elapsed = self._perf_counter() - started
        stats.processing_time_ms = round(elapsed * 1000, 3)
        record_cluster_run(
            outcome=outcome,
            duration_seconds=elapsed,
            iterations=stats.iterations,
            clusters=stats.clusters_created if outcome == "ok" else None,
            total_users=stats.total_users if outcome == "ok" else None,
        )
        return stats

    async def _run_clustering(self) -> RunStats:
        records = await self.store.get_all_user_descriptions()
        # Clustering is CPU-bound; keep the event loop responsive.
        result = await asyncio.to_thread(self.cluster_engine.run, records)
        superseded = await self.store.replace_similarity_clusters(result.clusters)
        snapshot = self.snapshots.publish(result.clusters)
        logger.info(
            "Published similarity clusters",
            snapshot_version=snapshot.version,
            clusters=len(result.clusters),
            superseded=superseded,
            total_users=result.total_users,
        )
        return RunStats(
            clusters_created=len(result.clusters),
            clusters_removed=superseded,
            total_users=result.total_users,
            iterations=result.iterations,
            converged=result.converged,
            snapshot_version=snapshot.version,
            skipped_records=result.skipped_records,
        )

    @staticmethod
    def _log_fallback(operation: str, exc: Exception) -> None:
        record_discovery_fallback(operation=operation, error_type=type(exc).__name__)
        logger.exception("Discovery call failed; returning empty result", operation=operation)
