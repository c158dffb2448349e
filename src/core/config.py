"""
Application configuration using Pydantic Settings.

Loads configuration from environment variables and .env files.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# pgvector columns are created with this width by the initial migration.
SCHEMA_EMBEDDING_DIMENSIONS = 256


def _read_secret_file(path: str) -> str:
    try:
        content = Path(path).expanduser().read_text(encoding="utf-8").strip()
    except OSError as exc:
        msg = f"Could not read secret file '{path}'"
        raise ValueError(msg) from exc
    if not content:
        msg = f"Secret file '{path}' is empty"
        raise ValueError(msg)
    return content


class Settings(BaseSettings):
    """
    Application settings.

    All settings can be overridden via environment variables.
    For example, DISCOVERY_SIMILARITY_THRESHOLD env var sets the
    similarity cut-off used by similar-user search.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # Database
    # =========================================================================
    DATABASE_URL: str = Field(
        default="postgresql+asyncpg://postgres@localhost:5432/diary",
        description="Async PostgreSQL connection string",
    )
    DATABASE_URL_FILE: str | None = Field(
        default=None,
        description="Path to file containing DATABASE_URL",
    )
    DATABASE_URL_SYNC: str = Field(
        default="",
        description="Sync PostgreSQL connection string (for Alembic); derived if empty",
    )
    DATABASE_POOL_SIZE: int = Field(default=10, ge=1, le=100)
    DATABASE_MAX_OVERFLOW: int = Field(default=20, ge=0, le=100)
    DATABASE_POOL_TIMEOUT_SECONDS: int = Field(
        default=30,
        ge=1,
        le=600,
        description="Seconds to wait for a DB connection from pool before timing out",
    )
    INTEGRATION_DB_TRUNCATE_ALLOWED: bool = Field(
        default=False,
        description="Allow integration tests to truncate a database not named like *_test",
    )
    INTEGRATION_DB_TRUNCATE_ALLOW_REMOTE: bool = Field(
        default=False,
        description="Allow integration tests to truncate a database on a non-local host",
    )

    @model_validator(mode="after")
    def _load_secret_file_values(self) -> Settings:
        secret_mappings = {
            "DATABASE_URL": self.DATABASE_URL_FILE,
            "REDIS_URL": self.REDIS_URL_FILE,
            "CELERY_BROKER_URL": self.CELERY_BROKER_URL_FILE,
            "CELERY_RESULT_BACKEND": self.CELERY_RESULT_BACKEND_FILE,
        }
        for target_field, file_path in secret_mappings.items():
            if not file_path:
                continue
            setattr(self, target_field, _read_secret_file(file_path))
        return self

    @model_validator(mode="after")
    def _derive_database_url_sync(self) -> Settings:
        if self.DATABASE_URL.startswith("postgresql://"):
            # Runtime engines use asyncpg; normalize common sync-style URLs.
            self.DATABASE_URL = self.DATABASE_URL.replace(
                "postgresql://",
                "postgresql+asyncpg://",
                1,
            )
        if not self.DATABASE_URL_SYNC.strip():
            self.DATABASE_URL_SYNC = self.DATABASE_URL.replace("postgresql+asyncpg", "postgresql")
        return self

    @model_validator(mode="after")
    def _validate_cluster_bounds(self) -> Settings:
        if self.DISCOVERY_CLUSTER_MIN_K < 1:
            msg = "DISCOVERY_CLUSTER_MIN_K must be >= 1"
            raise ValueError(msg)
        if self.DISCOVERY_MIN_CLUSTER_SIZE > self.DISCOVERY_MAX_CLUSTER_MEMBERS_SCANNED:
            msg = "DISCOVERY_MIN_CLUSTER_SIZE must be <= DISCOVERY_MAX_CLUSTER_MEMBERS_SCANNED"
            raise ValueError(msg)
        return self

    @model_validator(mode="after")
    def _validate_embedding_dimensions(self) -> Settings:
        if self.DISCOVERY_EMBEDDING_DIMENSIONS != SCHEMA_EMBEDDING_DIMENSIONS:
            msg = (
                "DISCOVERY_EMBEDDING_DIMENSIONS must equal the stored vector width "
                f"({SCHEMA_EMBEDDING_DIMENSIONS}); changing it requires a schema migration"
            )
            raise ValueError(msg)
        return self

    # =========================================================================
    # Redis
    # =========================================================================
    REDIS_URL: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL",
    )
    REDIS_URL_FILE: str | None = Field(
        default=None,
        description="Path to file containing REDIS_URL",
    )

    # =========================================================================
    # Celery
    # =========================================================================
    CELERY_BROKER_URL: str = Field(default="redis://localhost:6379/1")
    CELERY_BROKER_URL_FILE: str | None = Field(
        default=None,
        description="Path to file containing CELERY_BROKER_URL",
    )
    CELERY_RESULT_BACKEND: str = Field(default="redis://localhost:6379/2")
    CELERY_RESULT_BACKEND_FILE: str | None = Field(
        default=None,
        description="Path to file containing CELERY_RESULT_BACKEND",
    )
    WORKER_HEARTBEAT_REDIS_KEY: str = Field(
        default="diary:worker:last_activity",
        description="Redis key storing the latest worker activity heartbeat payload",
    )
    WORKER_HEARTBEAT_TTL_SECONDS: int = Field(
        default=3600,
        ge=60,
        description="Redis TTL for worker heartbeat payload key",
    )

    # =========================================================================
    # Feature Flags
    # =========================================================================
    ENABLE_CLUSTER_REFRESH: bool = Field(
        default=True,
        description="Schedule the periodic similarity-cluster refresh task",
    )

    # =========================================================================
    # Application
    # =========================================================================
    ENVIRONMENT: str = Field(
        default="development",
        description="Environment: development, staging, production",
    )
    SQL_ECHO: bool = Field(
        default=False,
        description="Log SQL statements from SQLAlchemy engine",
    )
    LOG_LEVEL: str = Field(default="INFO")
    LOG_FORMAT: str = Field(default="json", description="json or console")

    # =========================================================================
    # Discovery
    # =========================================================================
    DISCOVERY_EMBEDDING_DIMENSIONS: int = Field(
        default=SCHEMA_EMBEDDING_DIMENSIONS,
        ge=1,
        description=(
            "Fixed embedding length of the description corpus; pinned to the vector column width"
        ),
    )
    DISCOVERY_SIMILARITY_THRESHOLD: float = Field(
        default=0.7,
        ge=0,
        le=1,
        description="Minimum mean cosine similarity for a user to count as similar",
    )
    DISCOVERY_LOCATION_RADIUS_KM: float = Field(
        default=50.0,
        gt=0,
        description="Default radius used for location overlap and preference filtering",
    )
    DISCOVERY_MIN_CLUSTER_SIZE: int = Field(
        default=3,
        ge=1,
        description="Clusters with fewer members are discarded rather than persisted",
    )
    DISCOVERY_MAX_RECOMMENDATIONS: int = Field(
        default=20,
        ge=1,
        le=200,
        description="Maximum recommendation candidates returned per request",
    )
    DISCOVERY_CONFIDENCE_DISCOUNT: float = Field(
        default=0.8,
        gt=0,
        le=1,
        description="Multiplier applied to similarity when deriving recommendation confidence",
    )
    DISCOVERY_CLUSTER_MAX_ITERATIONS: int = Field(
        default=50,
        ge=1,
        le=1000,
        description="Upper bound on centroid refinement iterations per clustering run",
    )
    DISCOVERY_CLUSTER_CONVERGENCE_THRESHOLD: float = Field(
        default=0.01,
        ge=0,
        description="Aggregate centroid shift below which clustering stops early",
    )
    DISCOVERY_CLUSTER_MIN_K: int = Field(
        default=3,
        description="Lower bound on the number of centroids seeded per run",
    )
    DISCOVERY_CLUSTER_RANDOM_SEED: int | None = Field(
        default=None,
        description="Seed for centroid initialization; unset means a fresh seed per run",
    )
    DISCOVERY_CLUSTER_TOP_THEMES: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Number of most frequent themes kept per cluster",
    )
    DISCOVERY_CLUSTER_LIST_LIMIT: int = Field(
        default=10,
        ge=1,
        le=1000,
        description="Clusters loaded from the store when no snapshot is published yet",
    )
    DISCOVERY_SNAPSHOT_MAX_AGE_SECONDS: float = Field(
        default=900.0,
        gt=0,
        description="Age after which readers reload the published clusters from the store",
    )
    DISCOVERY_MAX_CLUSTER_MEMBERS_SCANNED: int = Field(
        default=500,
        ge=1,
        description="Upper bound on candidate users scored per similar-user search",
    )
    DISCOVERY_STORE_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        gt=0,
        le=600,
        description="Timeout applied to each description/cluster store call",
    )
    DISCOVERY_CLUSTER_INTERVAL_MINUTES: int = Field(
        default=360,
        ge=1,
        description="Minutes between scheduled similarity-cluster refresh runs",
    )
    DISCOVERY_CLUSTER_LEASE_KEY: str = Field(
        default="diary:discovery:cluster_lease",
        description="Redis key guarding the single active clustering run",
    )
    DISCOVERY_CLUSTER_LEASE_TTL_SECONDS: int = Field(
        default=1800,
        ge=30,
        description="Lease expiry so a crashed run cannot block later runs forever",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


# Convenience instance
settings = get_settings()
