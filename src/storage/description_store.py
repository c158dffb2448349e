"""
Description and similarity-cluster store backed by PostgreSQL + pgvector.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Sequence
from typing import Protocol, TypeVar
from uuid import UUID

import structlog
from sqlalchemy import Select, delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.observability import record_malformed_record
from src.processing.discovery_types import (
    EmbeddingRecord,
    GeoPoint,
    LocationCluster,
    SimilarityCluster,
    TimeWindow,
)
from src.processing.errors import ExternalStoreError, MalformedRecordError
from src.storage.models import DiaryDescription, SimilarityClusterRow

logger = structlog.get_logger(__name__)

_T = TypeVar("_T")


class DescriptionStore(Protocol):
    """Read/write surface the discovery engine needs from persistence."""

    async def get_user_descriptions(
        self,
        user_id: str,
        time_window: TimeWindow | None = None,
    ) -> list[EmbeddingRecord]: ...

    async def get_all_user_descriptions(self) -> list[EmbeddingRecord]: ...

    async def list_similarity_clusters(self, limit: int) -> list[SimilarityCluster]: ...

    async def create_similarity_cluster(self, cluster: SimilarityCluster) -> None: ...

    async def replace_similarity_clusters(self, clusters: Sequence[SimilarityCluster]) -> int: ...


class SqlDescriptionStore:
    """SQLAlchemy implementation of :class:`DescriptionStore`."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        if session_factory is None:
            from src.storage.database import async_session_maker

            session_factory = async_session_maker
        self._session_factory = session_factory

    async def get_user_descriptions(
        self,
        user_id: str,
        time_window: TimeWindow | None = None,
    ) -> list[EmbeddingRecord]:
        query = select(DiaryDescription).where(DiaryDescription.user_id == user_id)
        if time_window is not None:
            query = query.where(
                DiaryDescription.recorded_at >= time_window.start,
                DiaryDescription.recorded_at <= time_window.end,
            )
        query = query.order_by(DiaryDescription.recorded_at.asc())
        rows = await self._fetch_descriptions(query, operation="get_user_descriptions")
        return self._to_records(rows)

    async def get_all_user_descriptions(self) -> list[EmbeddingRecord]:
        query = select(DiaryDescription).order_by(
            DiaryDescription.user_id.asc(),
            DiaryDescription.recorded_at.asc(),
        )
        rows = await self._fetch_descriptions(query, operation="get_all_user_descriptions")
        return self._to_records(rows)

    async def list_similarity_clusters(self, limit: int) -> list[SimilarityCluster]:
        query = (
            select(SimilarityClusterRow)
            .order_by(
                SimilarityClusterRow.member_count.desc(),
                SimilarityClusterRow.last_updated.desc(),
            )
            .limit(max(1, limit))
        )
        try:
            async with self._session_factory() as session:
                rows = (await session.scalars(query)).all()
        except SQLAlchemyError as exc:
            msg = "Failed to list similarity clusters"
            raise ExternalStoreError(msg) from exc
        return [self._to_cluster(row) for row in rows]

    async def create_similarity_cluster(self, cluster: SimilarityCluster) -> None:
        row = self._to_cluster_row(cluster)
        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
        except SQLAlchemyError as exc:
            msg = f"Failed to store similarity cluster {cluster.cluster_id}"
            raise ExternalStoreError(msg) from exc

    async def replace_similarity_clusters(self, clusters: Sequence[SimilarityCluster]) -> int:
        """Swap the whole cluster set in one transaction; return how many were superseded."""
        rows = [self._to_cluster_row(cluster) for cluster in clusters]
        try:
            async with self._session_factory() as session, session.begin():
                superseded = await session.scalar(
                    select(func.count()).select_from(SimilarityClusterRow)
                )
                await session.execute(delete(SimilarityClusterRow))
                session.add_all(rows)
        except SQLAlchemyError as exc:
            msg = "Failed to replace similarity clusters"
            raise ExternalStoreError(msg) from exc
        return int(superseded or 0)

    async def _fetch_descriptions(
        self,
        query: Select[tuple[DiaryDescription]],
        *,
        operation: str,
    ) -> Sequence[DiaryDescription]:
        try:
            async with self._session_factory() as session:
                return (await session.scalars(query)).all()
        except SQLAlchemyError as exc:
            msg = f"Description store read failed ({operation})"
            raise ExternalStoreError(msg) from exc

    @staticmethod
    def _to_records(rows: Sequence[DiaryDescription]) -> list[EmbeddingRecord]:
        records: list[EmbeddingRecord] = []
        for row in rows:
            try:
                records.append(SqlDescriptionStore._to_record(row))
            except MalformedRecordError as exc:
                record_malformed_record(reason="row")
                logger.warning(
                    "Skipping malformed description row",
                    record_id=str(row.id),
                    user_id=row.user_id,
                    error=str(exc),
                )
        return records

    @staticmethod
    def _to_record(row: DiaryDescription) -> EmbeddingRecord:
        location = None
        if row.latitude is not None and row.longitude is not None:
            location = GeoPoint(lat=row.latitude, lng=row.longitude, place_name=row.place_name)
        if row.embedding is None or len(row.embedding) == 0:
            msg = "Description row has no embedding"
            raise MalformedRecordError(msg)
        return EmbeddingRecord(
            user_id=row.user_id,
            embedding=tuple(float(value) for value in row.embedding),
            themes=tuple(row.themes or ()),
            timestamp=row.recorded_at,
            location=location,
            record_id=str(row.id),
            content=row.content or "",
        )

    @staticmethod
    def _to_cluster(row: SimilarityClusterRow) -> SimilarityCluster:
        return SimilarityCluster(
            cluster_id=str(row.id),
            centroid=tuple(float(value) for value in row.centroid),
            member_user_ids=frozenset(row.member_user_ids or ()),
            common_themes=tuple(row.common_themes or ()),
            location_cluster=LocationCluster(
                center_lat=row.center_lat,
                center_lng=row.center_lng,
                radius_km=row.radius_km,
            ),
            last_updated=row.last_updated,
        )

    @staticmethod
    def _to_cluster_row(cluster: SimilarityCluster) -> SimilarityClusterRow:
        try:
            cluster_uuid = UUID(cluster.cluster_id)
        except ValueError as exc:
            msg = f"Cluster id {cluster.cluster_id!r} is not a UUID"
            raise MalformedRecordError(msg) from exc
        return SimilarityClusterRow(
            id=cluster_uuid,
            centroid=list(cluster.centroid),
            member_user_ids=sorted(cluster.member_user_ids),
            member_count=cluster.size,
            common_themes=list(cluster.common_themes),
            center_lat=cluster.location_cluster.center_lat,
            center_lng=cluster.location_cluster.center_lng,
            radius_km=cluster.location_cluster.radius_km,
            last_updated=cluster.last_updated,
        )


class TimeoutDescriptionStore:
    """Bound every call on a wrapped store by a timeout."""

    def __init__(self, inner: DescriptionStore, *, timeout_seconds: float) -> None:
        self.inner = inner
        self.timeout_seconds = timeout_seconds

    async def _bounded(self, operation: str, awaitable: Awaitable[_T]) -> _T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout_seconds)
        except TimeoutError as exc:
            msg = f"Store call {operation} timed out after {self.timeout_seconds}s"
            raise ExternalStoreError(msg) from exc

    async def get_user_descriptions(
        self,
        user_id: str,
        time_window: TimeWindow | None = None,
    ) -> list[EmbeddingRecord]:
        return await self._bounded(
            "get_user_descriptions",
            self.inner.get_user_descriptions(user_id, time_window),
        )

    async def get_all_user_descriptions(self) -> list[EmbeddingRecord]:
        return await self._bounded(
            "get_all_user_descriptions",
            self.inner.get_all_user_descriptions(),
        )

    async def list_similarity_clusters(self, limit: int) -> list[SimilarityCluster]:
        return await self._bounded(
            "list_similarity_clusters",
            self.inner.list_similarity_clusters(limit),
        )

    async def create_similarity_cluster(self, cluster: SimilarityCluster) -> None:
        await self._bounded(
            "create_similarity_cluster",
            self.inner.create_similarity_cluster(cluster),
        )

    async def replace_similarity_clusters(self, clusters: Sequence[SimilarityCluster]) -> int:
        return await self._bounded(
            "replace_similarity_clusters",
            self.inner.replace_similarity_clusters(clusters),
        )
