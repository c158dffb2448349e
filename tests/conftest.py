"""
Pytest configuration and shared fixtures.

This module provides:
- An in-memory description store for unit tests
- Builders for description records and similarity clusters
- Mock fixtures for database sessions
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from src.processing.discovery_types import (
    EmbeddingRecord,
    GeoPoint,
    LocationCluster,
    SimilarityCluster,
    TimeWindow,
)

BASE_TIME = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)


# =============================================================================
# In-memory Store
# =============================================================================


class FakeDescriptionStore:
    """In-memory DescriptionStore with call tracking and failure injection."""

    def __init__(
        self,
        records: Sequence[EmbeddingRecord] = (),
        clusters: Sequence[SimilarityCluster] = (),
    ) -> None:
        self.records: list[EmbeddingRecord] = list(records)
        self.clusters: list[SimilarityCluster] = list(clusters)
        self.calls: list[str] = []
        self.fail_with: Exception | None = None

    def _track(self, operation: str) -> None:
        self.calls.append(operation)
        if self.fail_with is not None:
            raise self.fail_with

    async def get_user_descriptions(
        self,
        user_id: str,
        time_window: TimeWindow | None = None,
    ) -> list[EmbeddingRecord]:
        self._track("get_user_descriptions")
        return [
            record
            for record in self.records
            if record.user_id == user_id
            and (time_window is None or time_window.contains(record.timestamp))
        ]

    async def get_all_user_descriptions(self) -> list[EmbeddingRecord]:
        self._track("get_all_user_descriptions")
        return list(self.records)

    async def list_similarity_clusters(self, limit: int) -> list[SimilarityCluster]:
        self._track("list_similarity_clusters")
        return self.clusters[:limit]

    async def create_similarity_cluster(self, cluster: SimilarityCluster) -> None:
        self._track("create_similarity_cluster")
        self.clusters.append(cluster)

    async def replace_similarity_clusters(self, clusters: Sequence[SimilarityCluster]) -> int:
        self._track("replace_similarity_clusters")
        superseded = len(self.clusters)
        self.clusters = list(clusters)
        return superseded


# =============================================================================
# Builders
# =============================================================================


def build_record(
    user_id: str,
    embedding: Sequence[float],
    *,
    themes: Sequence[str] = (),
    timestamp: datetime = BASE_TIME,
    location: GeoPoint | None = None,
    content: str = "",
) -> EmbeddingRecord:
    return EmbeddingRecord(
        user_id=user_id,
        embedding=tuple(float(value) for value in embedding),
        themes=tuple(themes),
        timestamp=timestamp,
        location=location,
        record_id=str(uuid4()),
        content=content,
    )


def build_cluster(
    member_user_ids: Sequence[str],
    *,
    centroid: Sequence[float] = (1.0, 0.0),
    common_themes: Sequence[str] = (),
    last_updated: datetime = BASE_TIME,
) -> SimilarityCluster:
    return SimilarityCluster(
        cluster_id=str(uuid4()),
        centroid=tuple(centroid),
        member_user_ids=frozenset(member_user_ids),
        common_themes=tuple(common_themes),
        location_cluster=LocationCluster(),
        last_updated=last_updated,
    )


@pytest.fixture
def make_record() -> Callable[..., EmbeddingRecord]:
    return build_record


@pytest.fixture
def make_cluster() -> Callable[..., SimilarityCluster]:
    return build_cluster


@pytest.fixture
def fake_store() -> FakeDescriptionStore:
    return FakeDescriptionStore()


# =============================================================================
# Mock Fixtures
# =============================================================================


@pytest.fixture
def mock_db_session() -> AsyncMock:
    """Create a mock database session for unit tests."""
    session = AsyncMock()
    session.add = MagicMock()
    session.add_all = MagicMock()
    session.commit = AsyncMock()
    session.execute = AsyncMock()
    session.scalar = AsyncMock()
    session.scalars = AsyncMock()

    @asynccontextmanager
    async def _transaction():
        yield

    session.begin = MagicMock(side_effect=lambda: _transaction())
    return session


@pytest.fixture
def mock_session_factory(mock_db_session: AsyncMock) -> MagicMock:
    """Session factory whose context manager yields ``mock_db_session``."""

    @asynccontextmanager
    async def _session():
        yield mock_db_session

    return MagicMock(side_effect=lambda: _session())
