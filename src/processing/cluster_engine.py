"""
K-means style clustering of users by their diary embeddings.

Each user contributes one point: the component-wise mean of their entry
embeddings. Centroids are seeded by sampling distinct users from a random
source created afresh for every run, so a fixed seed reproduces every run
of a long-lived engine. They are then refined until the aggregate centroid shift
drops below the convergence threshold or the iteration cap is reached.
"""

from __future__ import annotations

import math
import random
from collections import Counter, defaultdict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import uuid4

import structlog

from src.core.config import settings
from src.core.observability import record_malformed_record
from src.processing.discovery_types import (
    EmbeddingRecord,
    GeoPoint,
    LocationCluster,
    SimilarityCluster,
)
from src.processing.errors import MalformedRecordError
from src.processing.vector_similarity import euclidean_distance, haversine_km, mean_vector

logger = structlog.get_logger(__name__)

Centroid = tuple[float, ...]


@dataclass(slots=True, frozen=True)
class UserPoint:
    """One user's aggregated position in embedding space."""

    user_id: str
    vector: Centroid
    themes: tuple[str, ...]
    locations: tuple[GeoPoint, ...]


@dataclass(slots=True)
class ClusterRunResult:
    """Result of one clustering pass over the corpus."""

    clusters: list[SimilarityCluster] = field(default_factory=list)
    k: int = 0
    candidate_groups: int = 0
    iterations: int = 0
    converged: bool = False
    total_users: int = 0
    skipped_records: int = 0


class ClusterEngine:
    """Partition users into similarity clusters via iterative centroid refinement."""

    def __init__(
        self,
        *,
        min_cluster_size: int | None = None,
        max_iterations: int | None = None,
        convergence_threshold: float | None = None,
        min_k: int | None = None,
        top_themes: int | None = None,
        embedding_dimensions: int | None = None,
        seed: int | None = None,
        rng_factory: Callable[[], random.Random] | None = None,
        clock: Callable[[], datetime] | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.min_cluster_size = max(
            1,
            settings.DISCOVERY_MIN_CLUSTER_SIZE if min_cluster_size is None else min_cluster_size,
        )
        self.max_iterations = max(
            1,
            settings.DISCOVERY_CLUSTER_MAX_ITERATIONS if max_iterations is None else max_iterations,
        )
        self.convergence_threshold = (
            settings.DISCOVERY_CLUSTER_CONVERGENCE_THRESHOLD
            if convergence_threshold is None
            else convergence_threshold
        )
        self.min_k = max(1, settings.DISCOVERY_CLUSTER_MIN_K if min_k is None else min_k)
        self.top_themes = max(
            1,
            settings.DISCOVERY_CLUSTER_TOP_THEMES if top_themes is None else top_themes,
        )
        self.embedding_dimensions = embedding_dimensions
        # No seed means a fresh OS-seeded generator per run.
        self.seed = settings.DISCOVERY_CLUSTER_RANDOM_SEED if seed is None else seed
        self._rng_factory = rng_factory or (lambda: random.Random(self.seed))
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._id_factory = id_factory or (lambda: str(uuid4()))

    @staticmethod
    def choose_k(user_count: int, *, min_k: int = 3) -> int:
        """Number of centroids for a corpus of ``user_count`` users."""
        return max(min_k, math.floor(math.sqrt(max(0, user_count) / 2)))

    def run(self, records: Iterable[EmbeddingRecord]) -> ClusterRunResult:
        """Cluster the given corpus; never persists anything."""
        points, skipped = self.build_user_points(records)
        result = ClusterRunResult(total_users=len(points), skipped_records=skipped)
        if len(points) < self.min_cluster_size:
            logger.info(
                "Corpus too small to cluster",
                total_users=len(points),
                min_cluster_size=self.min_cluster_size,
            )
            return result

        k = self.choose_k(len(points), min_k=self.min_k)
        centroids = self._initialize_centroids(points, k, self._rng_factory())
        assignments: list[list[int]] = [[] for _ in centroids]

        for iteration in range(self.max_iterations):
            assignments = self.assign(points, centroids)
            new_centroids = self.update_centroids(points, assignments, centroids)
            shift = self.centroid_shift(centroids, new_centroids)
            centroids = new_centroids
            result.iterations = iteration + 1
            if shift < self.convergence_threshold:
                result.converged = True
                break

        groups = [group for group in assignments if group]
        result.k = k
        result.candidate_groups = len(groups)
        result.clusters = self._materialize(points, assignments, centroids)
        logger.info(
            "Clustering finished",
            total_users=len(points),
            k=k,
            iterations=result.iterations,
            converged=result.converged,
            candidate_groups=result.candidate_groups,
            clusters=len(result.clusters),
        )
        return result

    def build_user_points(
        self,
        records: Iterable[EmbeddingRecord],
    ) -> tuple[list[UserPoint], int]:
        """Group records per user, dropping those whose dimension does not fit the corpus."""
        materialized = list(records)
        expected = self.embedding_dimensions or self._dominant_dimension(materialized)
        by_user: dict[str, list[EmbeddingRecord]] = defaultdict(list)
        skipped = 0
        for record in materialized:
            try:
                self._validate_record(record, expected)
            except MalformedRecordError as exc:
                skipped += 1
                record_malformed_record(reason="dimension" if record.embedding else "empty")
                logger.warning(
                    "Skipping malformed description record",
                    user_id=record.user_id,
                    record_id=record.record_id,
                    error=str(exc),
                )
                continue
            by_user[record.user_id].append(record)

        points = [
            UserPoint(
                user_id=user_id,
                vector=mean_vector([record.embedding for record in user_records]),
                themes=tuple(theme for record in user_records for theme in record.themes),
                locations=tuple(
                    record.location for record in user_records if record.location is not None
                ),
            )
            for user_id, user_records in sorted(by_user.items())
        ]
        return points, skipped

    @staticmethod
    def _initialize_centroids(
        points: Sequence[UserPoint],
        k: int,
        rng: random.Random,
    ) -> list[Centroid]:
        indices = rng.sample(range(len(points)), min(k, len(points)))
        return [points[index].vector for index in indices]

    @staticmethod
    def assign(points: Sequence[UserPoint], centroids: Sequence[Centroid]) -> list[list[int]]:
        """Map each point to its nearest centroid; ties go to the lowest index."""
        assignments: list[list[int]] = [[] for _ in centroids]
        for point_index, point in enumerate(points):
            nearest = 0
            nearest_distance = euclidean_distance(point.vector, centroids[0])
            for centroid_index in range(1, len(centroids)):
                distance = euclidean_distance(point.vector, centroids[centroid_index])
                if distance < nearest_distance:
                    nearest = centroid_index
                    nearest_distance = distance
            assignments[nearest].append(point_index)
        return assignments

    @staticmethod
    def update_centroids(
        points: Sequence[UserPoint],
        assignments: Sequence[Sequence[int]],
        previous: Sequence[Centroid],
    ) -> list[Centroid]:
        """Recompute centroids as member means; empty groups keep their old position."""
        return [
            mean_vector([points[index].vector for index in group]) if group else previous[slot]
            for slot, group in enumerate(assignments)
        ]

    @staticmethod
    def centroid_shift(old: Sequence[Centroid], new: Sequence[Centroid]) -> float:
        """Sum of per-centroid displacement between two iterations."""
        return sum(euclidean_distance(before, after) for before, after in zip(old, new, strict=True))

    def _materialize(
        self,
        points: Sequence[UserPoint],
        assignments: Sequence[Sequence[int]],
        centroids: Sequence[Centroid],
    ) -> list[SimilarityCluster]:
        now = self._clock()
        clusters: list[SimilarityCluster] = []
        for slot, group in enumerate(assignments):
            if not group:
                continue
            members = [points[index] for index in group]
            if len(members) < self.min_cluster_size:
                logger.debug(
                    "Discarding undersized cluster group",
                    size=len(members),
                    min_cluster_size=self.min_cluster_size,
                )
                continue
            clusters.append(
                SimilarityCluster(
                    cluster_id=self._id_factory(),
                    centroid=tuple(centroids[slot]),
                    member_user_ids=frozenset(member.user_id for member in members),
                    common_themes=self.common_themes(members, limit=self.top_themes),
                    location_cluster=self.location_cluster(members),
                    last_updated=now,
                )
            )
        return clusters

    @staticmethod
    def common_themes(members: Sequence[UserPoint], *, limit: int = 5) -> tuple[str, ...]:
        """Most frequent themes across members; ties keep first-seen order."""
        counts = Counter(theme for member in members for theme in member.themes)
        return tuple(theme for theme, _count in counts.most_common(limit))

    @staticmethod
    def location_cluster(members: Sequence[UserPoint]) -> LocationCluster:
        """Mean member location and the farthest member location from it."""
        locations = [location for member in members for location in member.locations]
        if not locations:
            return LocationCluster()
        center_lat = sum(location.lat for location in locations) / len(locations)
        center_lng = sum(location.lng for location in locations) / len(locations)
        radius_km = max(
            haversine_km(center_lat, center_lng, location.lat, location.lng)
            for location in locations
        )
        return LocationCluster(center_lat=center_lat, center_lng=center_lng, radius_km=radius_km)

    @staticmethod
    def _dominant_dimension(records: Sequence[EmbeddingRecord]) -> int:
        counts = Counter(record.dimensions for record in records if record.dimensions > 0)
        if not counts:
            return 0
        return counts.most_common(1)[0][0]

    @staticmethod
    def _validate_record(record: EmbeddingRecord, expected_dimensions: int) -> None:
        if not record.embedding:
            msg = "Description record has an empty embedding"
            raise MalformedRecordError(msg)
        if record.dimensions != expected_dimensions:
            msg = (
                f"Embedding has {record.dimensions} dimensions; "
                f"corpus uses {expected_dimensions}"
            )
            raise MalformedRecordError(msg)
