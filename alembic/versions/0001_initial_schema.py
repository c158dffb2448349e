"""Initial database schema.

Revision ID: 0001_initial_schema
Revises: None
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from pgvector.sqlalchemy import Vector
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_initial_schema"
down_revision = None
branch_labels = None
depends_on = None

EMBEDDING_DIMENSIONS = 256


def upgrade() -> None:
    op.execute("CREATE EXTENSION IF NOT EXISTS vector;")

    # ---------------------------------------------------------------------
    # Description corpus
    # ---------------------------------------------------------------------
    op.create_table(
        "diary_descriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("user_id", sa.String(length=128), nullable=False),
        sa.Column("content", sa.Text(), nullable=False, server_default=""),
        sa.Column("embedding", Vector(EMBEDDING_DIMENSIONS), nullable=False),
        sa.Column(
            "themes",
            postgresql.ARRAY(sa.String()),
            nullable=False,
            server_default=sa.text("'{}'::varchar[]"),
        ),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("place_name", sa.String(length=255), nullable=True),
        sa.Column("recorded_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint(
            "(latitude IS NULL) = (longitude IS NULL)",
            name="ck_diary_descriptions_location_pair",
        ),
    )
    op.create_index(
        "idx_diary_descriptions_user_recorded",
        "diary_descriptions",
        ["user_id", "recorded_at"],
    )

    # ---------------------------------------------------------------------
    # Published clusters
    # ---------------------------------------------------------------------
    op.create_table(
        "similarity_clusters",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("centroid", Vector(EMBEDDING_DIMENSIONS), nullable=False),
        sa.Column("member_user_ids", postgresql.ARRAY(sa.String()), nullable=False),
        sa.Column("member_count", sa.Integer(), nullable=False),
        sa.Column(
            "common_themes",
            postgresql.ARRAY(sa.String()),
            nullable=False,
            server_default=sa.text("'{}'::varchar[]"),
        ),
        sa.Column("center_lat", sa.Float(), nullable=False, server_default="0"),
        sa.Column("center_lng", sa.Float(), nullable=False, server_default="0"),
        sa.Column("radius_km", sa.Float(), nullable=False, server_default="0"),
        sa.Column(
            "last_updated",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.CheckConstraint("member_count >= 1", name="ck_similarity_clusters_member_count"),
    )
    op.create_index(
        "idx_similarity_clusters_members",
        "similarity_clusters",
        ["member_user_ids"],
        postgresql_using="gin",
    )


def downgrade() -> None:
    op.drop_index("idx_similarity_clusters_members", table_name="similarity_clusters")
    op.drop_table("similarity_clusters")
    op.drop_index("idx_diary_descriptions_user_recorded", table_name="diary_descriptions")
    op.drop_table("diary_descriptions")
