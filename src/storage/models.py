"""
Database models for the diary discovery engine.

This module defines the SQLAlchemy ORM models backing the description
corpus and the published similarity clusters.
Uses async SQLAlchemy 2.0 patterns.
"""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from src.core.config import SCHEMA_EMBEDDING_DIMENSIONS

EMBEDDING_DIMENSIONS = SCHEMA_EMBEDDING_DIMENSIONS

# =============================================================================
# Base Configuration
# =============================================================================


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        list[str]: ARRAY(String),
        UUID: PGUUID(as_uuid=True),
    }


# =============================================================================
# Description Models
# =============================================================================


class DiaryDescription(Base):
    """
    An analysed diary entry as produced by the external analysis service.

    Attributes:
        id: Unique identifier
        user_id: Pseudonymous user reference
        content: AI-generated description of the entry
        embedding: Fixed-length description embedding
        themes: Extracted themes/topics
        latitude/longitude/place_name: Optional entry location
        recorded_at: When the diary entry was written
    """

    __tablename__ = "diary_descriptions"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    embedding: Mapped[list[float]] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    themes: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, default=list)
    latitude: Mapped[float | None] = mapped_column(Float)
    longitude: Mapped[float | None] = mapped_column(Float)
    place_name: Mapped[str | None] = mapped_column(String(255))
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_diary_descriptions_user_recorded", "user_id", "recorded_at"),
        CheckConstraint(
            "(latitude IS NULL) = (longitude IS NULL)",
            name="ck_diary_descriptions_location_pair",
        ),
    )


# =============================================================================
# Cluster Models
# =============================================================================


class SimilarityClusterRow(Base):
    """
    A published similarity cluster.

    The full set is replaced in one transaction by each clustering run.
    """

    __tablename__ = "similarity_clusters"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
    )
    centroid: Mapped[list[float]] = mapped_column(Vector(EMBEDDING_DIMENSIONS), nullable=False)
    member_user_ids: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False)
    member_count: Mapped[int] = mapped_column(Integer, nullable=False)
    common_themes: Mapped[list[str]] = mapped_column(ARRAY(String), nullable=False, default=list)
    center_lat: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    center_lng: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    radius_km: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    last_updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("idx_similarity_clusters_members", "member_user_ids", postgresql_using="gin"),
        CheckConstraint("member_count >= 1", name="ck_similarity_clusters_member_count"),
    )
