"""
Typed records exchanged by the discovery engine and its store.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Mapping
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

from src.processing.errors import MalformedRecordError


class RecommendationType(str, enum.Enum):
    """Kinds of recommendation the engine can emit."""

    LOCATION = "location"
    THEME = "theme"
    ACTIVITY = "activity"


@dataclass(slots=True, frozen=True)
class GeoPoint:
    """A latitude/longitude pair with an optional human-readable place name."""

    lat: float
    lng: float
    place_name: str | None = None

    def __post_init__(self) -> None:
        if not -90.0 <= self.lat <= 90.0 or not -180.0 <= self.lng <= 180.0:
            msg = f"Coordinates out of range: ({self.lat}, {self.lng})"
            raise MalformedRecordError(msg)


@dataclass(slots=True, frozen=True)
class TimeWindow:
    """Inclusive time range used to restrict description reads."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.end < self.start:
            msg = "TimeWindow end must not precede start"
            raise ValueError(msg)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(slots=True, frozen=True)
class EmbeddingRecord:
    """One analysed diary entry: its embedding, themes and optional location."""

    user_id: str
    embedding: tuple[float, ...]
    themes: tuple[str, ...]
    timestamp: datetime
    location: GeoPoint | None = None
    record_id: str | None = None
    content: str = ""

    @property
    def dimensions(self) -> int:
        return len(self.embedding)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> EmbeddingRecord:
        """
        Build a record from a loosely-typed document.

        Raises MalformedRecordError when required fields are missing or invalid.
        """
        user_id = raw.get("user_id") or raw.get("userId")
        if not isinstance(user_id, str) or not user_id.strip():
            msg = "Description record is missing user_id"
            raise MalformedRecordError(msg)

        raw_embedding = raw.get("embedding")
        if not isinstance(raw_embedding, (list, tuple)) or not raw_embedding:
            msg = f"Description record for {user_id} has no embedding"
            raise MalformedRecordError(msg)
        try:
            embedding = tuple(float(value) for value in raw_embedding)
        except (TypeError, ValueError) as exc:
            msg = f"Description record for {user_id} has a non-numeric embedding"
            raise MalformedRecordError(msg) from exc
        if not all(math.isfinite(value) for value in embedding):
            msg = f"Description record for {user_id} has a non-finite embedding value"
            raise MalformedRecordError(msg)

        timestamp = _parse_timestamp(raw.get("timestamp"), user_id=user_id)
        themes = tuple(
            str(theme).strip() for theme in raw.get("themes") or () if str(theme).strip()
        )
        return cls(
            user_id=user_id.strip(),
            embedding=embedding,
            themes=themes,
            timestamp=timestamp,
            location=_parse_location(raw.get("location")),
            record_id=_optional_str(raw.get("record_id") or raw.get("id")),
            content=str(raw.get("content") or ""),
        )


@dataclass(slots=True, frozen=True)
class LocationCluster:
    """Geographic summary of a cluster's member locations."""

    center_lat: float = 0.0
    center_lng: float = 0.0
    radius_km: float = 0.0


@dataclass(slots=True, frozen=True)
class SimilarityCluster:
    """A persisted group of users whose diary embeddings are close together."""

    cluster_id: str
    centroid: tuple[float, ...]
    member_user_ids: frozenset[str]
    common_themes: tuple[str, ...]
    location_cluster: LocationCluster
    last_updated: datetime

    @property
    def size(self) -> int:
        return len(self.member_user_ids)


@dataclass(slots=True, frozen=True)
class SimilarUserMatch:
    """A candidate user judged similar to the requesting user."""

    anonymized_id: str
    similarity_score: float
    common_themes: tuple[str, ...] = ()
    location_overlap: float = 0.0
    time_pattern_similarity: float = 0.0


@dataclass(slots=True, frozen=True)
class Recommendation:
    """A ranked, typed suggestion derived from similar users' entries."""

    recommendation_id: str
    type: RecommendationType
    title: str
    description: str
    confidence_score: float
    based_on_user_ids: tuple[str, ...]
    themes: tuple[str, ...]
    estimated_interest: float
    location: GeoPoint | None = None


@dataclass(slots=True, frozen=True)
class UserPreferences:
    """Caller-supplied preferences that bias filtering and diversification."""

    preferred_themes: tuple[str, ...] = ()
    avoided_themes: tuple[str, ...] = ()
    location_radius_km: float = 50.0
    novelty_preference: float = 0.7
    social_level: float = 0.5
    home_location: GeoPoint | None = None

    def __post_init__(self) -> None:
        for name in ("novelty_preference", "social_level"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                msg = f"{name} must be between 0 and 1"
                raise ValueError(msg)
        if self.location_radius_km <= 0:
            msg = "location_radius_km must be > 0"
            raise ValueError(msg)

    @classmethod
    def from_settings(cls, user_settings: Mapping[str, Any] | None) -> UserPreferences:
        """Extract preferences from a user-settings document, applying defaults."""
        raw = (user_settings or {}).get("preferences") or {}
        return cls(
            preferred_themes=tuple(raw.get("preferredThemes") or ()),
            avoided_themes=tuple(raw.get("avoidedThemes") or ()),
            location_radius_km=float(raw.get("locationRadius") or 50.0),
            novelty_preference=float(raw.get("noveltyPreference") or 0.7),
            social_level=float(raw.get("socialLevel") or 0.5),
            home_location=_parse_location(raw.get("homeLocation")),
        )


@dataclass(slots=True)
class RunStats:
    """Outcome of one similarity-cluster refresh run."""

    clusters_created: int = 0
    clusters_updated: int = 0
    clusters_removed: int = 0
    total_users: int = 0
    processing_time_ms: float = 0.0
    iterations: int = 0
    converged: bool = False
    snapshot_version: int | None = None
    error: str | None = None
    skipped_records: int = 0
    skipped: bool = False

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["succeeded"] = self.succeeded
        return payload


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    normalized = str(value).strip()
    return normalized or None


def _parse_timestamp(value: Any, *, user_id: str) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Millisecond epoch values are what the diary client stores.
        return datetime.fromtimestamp(float(value) / 1000.0, tz=UTC)
    if isinstance(value, str) and value.strip():
        normalized = value.strip()
        if normalized.endswith("Z"):
            normalized = normalized[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(normalized)
        except ValueError as exc:
            msg = f"Description record for {user_id} has an invalid timestamp"
            raise MalformedRecordError(msg) from exc
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    msg = f"Description record for {user_id} is missing timestamp"
    raise MalformedRecordError(msg)


def _parse_location(value: Any) -> GeoPoint | None:
    if not isinstance(value, Mapping):
        return None
    lat = value.get("lat", value.get("latitude"))
    lng = value.get("lng", value.get("longitude"))
    if lat is None or lng is None:
        return None
    try:
        return GeoPoint(
            lat=float(lat),
            lng=float(lng),
            place_name=_optional_str(value.get("place_name") or value.get("placeName")),
        )
    except (TypeError, ValueError) as exc:
        msg = "Location must carry numeric lat/lng"
        raise MalformedRecordError(msg) from exc
