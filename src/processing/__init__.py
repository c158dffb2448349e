"""Discovery and clustering services."""

from src.processing.cluster_engine import ClusterEngine, ClusterRunResult
from src.processing.cluster_snapshot import ClusterSnapshot, ClusterSnapshotHolder
from src.processing.discovery_engine import DiscoveryEngine
from src.processing.discovery_types import (
    EmbeddingRecord,
    GeoPoint,
    LocationCluster,
    Recommendation,
    RecommendationType,
    RunStats,
    SimilarityCluster,
    SimilarUserMatch,
    TimeWindow,
    UserPreferences,
)
from src.processing.diversifier import diversify
from src.processing.recommendation_builder import RecommendationBuilder

__all__ = [
    "ClusterEngine",
    "ClusterRunResult",
    "ClusterSnapshot",
    "ClusterSnapshotHolder",
    "DiscoveryEngine",
    "EmbeddingRecord",
    "GeoPoint",
    "LocationCluster",
    "Recommendation",
    "RecommendationBuilder",
    "RecommendationType",
    "RunStats",
    "SimilarUserMatch",
    "SimilarityCluster",
    "TimeWindow",
    "UserPreferences",
    "diversify",
]
