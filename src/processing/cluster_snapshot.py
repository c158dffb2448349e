"""
Versioned, atomically swapped view of the published similarity clusters.
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime

from src.processing.discovery_types import SimilarityCluster


@dataclass(slots=True, frozen=True)
class ClusterSnapshot:
    """Immutable cluster set produced by one complete clustering run."""

    version: int
    clusters: tuple[SimilarityCluster, ...]
    published_at: datetime

    def member_user_ids(self) -> list[str]:
        """Distinct members across all clusters, in cluster order then id order."""
        seen: set[str] = set()
        ordered: list[str] = []
        for cluster in self.clusters:
            for user_id in sorted(cluster.member_user_ids):
                if user_id in seen:
                    continue
                seen.add(user_id)
                ordered.append(user_id)
        return ordered


class ClusterSnapshotHolder:
    """
    Holds the current snapshot for readers.

    Readers take one reference via ``current()`` and work against it; writers
    replace the reference wholesale, so a reader never sees a mix of two runs.
    """

    def __init__(self, clock: Callable[[], datetime] | None = None) -> None:
        self._lock = threading.Lock()
        self._snapshot: ClusterSnapshot | None = None
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def current(self) -> ClusterSnapshot | None:
        return self._snapshot

    def now(self) -> datetime:
        return self._clock()

    def publish(self, clusters: Iterable[SimilarityCluster]) -> ClusterSnapshot:
        """Publish the output of a completed clustering run."""
        with self._lock:
            return self._swap(clusters)

    def publish_loaded(
        self,
        clusters: Iterable[SimilarityCluster],
        *,
        stale_before: datetime | None = None,
    ) -> ClusterSnapshot:
        """
        Publish a store-loaded cluster set unless a fresher snapshot exists.

        A run finishing while the store read was in flight wins over the
        loaded set.
        """
        with self._lock:
            current = self._snapshot
            if current is not None and (stale_before is None or current.published_at >= stale_before):
                return current
            return self._swap(clusters)

    def _swap(self, clusters: Iterable[SimilarityCluster]) -> ClusterSnapshot:
        previous_version = self._snapshot.version if self._snapshot is not None else 0
        snapshot = ClusterSnapshot(
            version=previous_version + 1,
            clusters=tuple(clusters),
            published_at=self._clock(),
        )
        self._snapshot = snapshot
        return snapshot
