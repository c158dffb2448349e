"""
Similar-user search and recommendation candidate generation.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING
from uuid import uuid4

import structlog

from src.core.config import settings
from src.processing.cluster_snapshot import ClusterSnapshot, ClusterSnapshotHolder
from src.processing.discovery_types import (
    EmbeddingRecord,
    GeoPoint,
    Recommendation,
    RecommendationType,
    SimilarUserMatch,
    TimeWindow,
    UserPreferences,
)
from src.processing.errors import MalformedRecordError
from src.processing.vector_similarity import (
    haversine_km,
    location_overlap,
    time_pattern_similarity,
    user_similarity,
)

if TYPE_CHECKING:
    from src.storage.description_store import DescriptionStore

logger = structlog.get_logger(__name__)

ACTIVITY_KEYWORDS = ("walking", "running", "eating", "shopping", "reading", "working", "studying")
BASE_ESTIMATED_INTEREST = 0.7
PREFERRED_THEME_BONUS = 0.1
NOVELTY_WEIGHT = 0.2
VISITED_RADIUS_KM = 0.1
MIN_THEME_SUPPORTERS = 2
DEFAULT_PLACE_TITLE = "Interesting Place"


@dataclass(slots=True)
class _ThemeSupport:
    label: str
    user_ids: list[str] = field(default_factory=list)
    scores: list[float] = field(default_factory=list)

    def add(self, user_id: str, score: float) -> None:
        if user_id in self.user_ids:
            return
        self.user_ids.append(user_id)
        self.scores.append(score)

    @property
    def mean_score(self) -> float:
        return sum(self.scores) / len(self.scores) if self.scores else 0.0


def is_activity_theme(theme: str) -> bool:
    normalized = theme.lower()
    return any(keyword in normalized for keyword in ACTIVITY_KEYWORDS)


def format_title(label: str) -> str:
    text = label.strip().replace("_", " ")
    return text[:1].upper() + text[1:]


class RecommendationBuilder:
    """Find similar users in the published clusters and derive recommendations from them."""

    def __init__(
        self,
        store: DescriptionStore,
        snapshots: ClusterSnapshotHolder,
        *,
        similarity_threshold: float | None = None,
        max_recommendations: int | None = None,
        confidence_discount: float | None = None,
        location_radius_km: float | None = None,
        cluster_list_limit: int | None = None,
        max_candidates: int | None = None,
        snapshot_max_age_seconds: float | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self.store = store
        self.snapshots = snapshots
        self.similarity_threshold = (
            settings.DISCOVERY_SIMILARITY_THRESHOLD
            if similarity_threshold is None
            else similarity_threshold
        )
        self.max_recommendations = max(
            1,
            settings.DISCOVERY_MAX_RECOMMENDATIONS
            if max_recommendations is None
            else max_recommendations,
        )
        self.confidence_discount = (
            settings.DISCOVERY_CONFIDENCE_DISCOUNT
            if confidence_discount is None
            else confidence_discount
        )
        self.location_radius_km = (
            settings.DISCOVERY_LOCATION_RADIUS_KM
            if location_radius_km is None
            else location_radius_km
        )
        self.cluster_list_limit = (
            settings.DISCOVERY_CLUSTER_LIST_LIMIT if cluster_list_limit is None else cluster_list_limit
        )
        self.max_candidates = (
            settings.DISCOVERY_MAX_CLUSTER_MEMBERS_SCANNED
            if max_candidates is None
            else max_candidates
        )
        self.snapshot_max_age_seconds = (
            settings.DISCOVERY_SNAPSHOT_MAX_AGE_SECONDS
            if snapshot_max_age_seconds is None
            else snapshot_max_age_seconds
        )
        self._id_factory = id_factory or (lambda: str(uuid4()))

    # ------------------------------------------------------------------
    # Similar users
    # ------------------------------------------------------------------

    async def find_similar_users(
        self,
        target_embeddings: Sequence[Sequence[float]],
        *,
        max_results: int,
        time_window: TimeWindow | None = None,
        exclude_user_id: str | None = None,
        target_themes: Sequence[str] = (),
        target_locations: Sequence[GeoPoint] = (),
        target_timestamps: Sequence[datetime] = (),
    ) -> list[SimilarUserMatch]:
        """Score cluster members against the target and keep those above the threshold."""
        if max_results < 1 or not target_embeddings:
            return []

        snapshot = await self.load_snapshot()
        candidates = [
            user_id for user_id in snapshot.member_user_ids() if user_id != exclude_user_id
        ][: self.max_candidates]

        matches: list[SimilarUserMatch] = []
        for user_id in candidates:
            records = await self.store.get_user_descriptions(user_id, time_window)
            if not records:
                continue
            try:
                score = user_similarity(
                    target_embeddings,
                    [record.embedding for record in records],
                )
            except MalformedRecordError as exc:
                logger.warning(
                    "Skipping candidate with incompatible embeddings",
                    user_id=user_id,
                    error=str(exc),
                )
                continue
            if score < self.similarity_threshold:
                continue
            matches.append(
                SimilarUserMatch(
                    anonymized_id=user_id,
                    similarity_score=score,
                    common_themes=self._common_themes(target_themes, records),
                    location_overlap=location_overlap(
                        list(target_locations),
                        [record.location for record in records if record.location is not None],
                        radius_km=self.location_radius_km,
                    ),
                    time_pattern_similarity=time_pattern_similarity(
                        list(target_timestamps),
                        [record.timestamp for record in records],
                    ),
                )
            )

        matches.sort(key=lambda match: (-match.similarity_score, match.anonymized_id))
        logger.debug(
            "Similar-user search finished",
            snapshot_version=snapshot.version,
            scanned=len(candidates),
            matched=len(matches),
        )
        return matches[:max_results]

    async def load_snapshot(self) -> ClusterSnapshot:
        """Return the published snapshot, reloading it from the store when missing or stale."""
        stale_before = self.snapshots.now() - timedelta(seconds=self.snapshot_max_age_seconds)
        snapshot = self.snapshots.current()
        if snapshot is not None and snapshot.published_at >= stale_before:
            return snapshot
        clusters = await self.store.list_similarity_clusters(self.cluster_list_limit)
        return self.snapshots.publish_loaded(clusters, stale_before=stale_before)

    @staticmethod
    def _common_themes(
        target_themes: Sequence[str],
        records: Sequence[EmbeddingRecord],
        *,
        limit: int = 5,
    ) -> tuple[str, ...]:
        counts: dict[str, int] = defaultdict(int)
        labels: dict[str, str] = {}
        for record in records:
            for theme in record.themes:
                key = theme.strip().lower()
                if not key:
                    continue
                counts[key] += 1
                labels.setdefault(key, theme.strip())

        wanted = {theme.strip().lower() for theme in target_themes if theme.strip()}
        keys = [key for key in counts if key in wanted] if wanted else list(counts)
        keys.sort(key=lambda key: -counts[key])
        return tuple(labels[key] for key in keys[:limit])

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    async def generate_recommendations(
        self,
        similar_users: Sequence[SimilarUserMatch],
        preferences: UserPreferences,
        *,
        exclude_locations: Sequence[GeoPoint] = (),
    ) -> list[Recommendation]:
        """
        Build location, activity and theme candidates from similar users' entries.

        The result is ranked by confidence and capped at ``max_recommendations``;
        diversification happens afterwards.
        """
        avoided = {theme.strip().lower() for theme in preferences.avoided_themes}
        candidates: list[Recommendation] = []
        activities: dict[str, _ThemeSupport] = {}
        themes: dict[str, _ThemeSupport] = {}

        for match in similar_users:
            records = await self.store.get_user_descriptions(match.anonymized_id)
            for record in records:
                if avoided & {theme.strip().lower() for theme in record.themes}:
                    continue
                for theme in record.themes:
                    key = theme.strip().lower()
                    if not key:
                        continue
                    bucket = activities if is_activity_theme(key) else themes
                    bucket.setdefault(key, _ThemeSupport(label=theme.strip())).add(
                        match.anonymized_id,
                        match.similarity_score,
                    )
                if record.location is None:
                    continue
                if not self._location_allowed(record.location, preferences, exclude_locations):
                    continue
                candidates.append(self._location_candidate(record, match, preferences))

        candidates.extend(
            self._aggregate_candidate(RecommendationType.ACTIVITY, support, preferences)
            for support in activities.values()
        )
        candidates.extend(
            self._aggregate_candidate(RecommendationType.THEME, support, preferences)
            for support in themes.values()
            if len(support.user_ids) >= MIN_THEME_SUPPORTERS
        )

        candidates.sort(key=lambda candidate: -candidate.confidence_score)
        return candidates[: self.max_recommendations]

    def _location_allowed(
        self,
        location: GeoPoint,
        preferences: UserPreferences,
        exclude_locations: Sequence[GeoPoint],
    ) -> bool:
        if preferences.home_location is not None:
            distance = haversine_km(
                preferences.home_location.lat,
                preferences.home_location.lng,
                location.lat,
                location.lng,
            )
            if distance > preferences.location_radius_km:
                return False
        return not any(
            haversine_km(visited.lat, visited.lng, location.lat, location.lng) <= VISITED_RADIUS_KM
            for visited in exclude_locations
        )

    def _location_candidate(
        self,
        record: EmbeddingRecord,
        match: SimilarUserMatch,
        preferences: UserPreferences,
    ) -> Recommendation:
        location = record.location
        place_name = location.place_name if location is not None else None
        return Recommendation(
            recommendation_id=self._id_factory(),
            type=RecommendationType.LOCATION,
            title=place_name or DEFAULT_PLACE_TITLE,
            description=record.content,
            confidence_score=match.similarity_score * self.confidence_discount,
            based_on_user_ids=(match.anonymized_id,),
            themes=record.themes,
            estimated_interest=self._estimated_interest(record.themes, preferences),
            location=location,
        )

    def _aggregate_candidate(
        self,
        kind: RecommendationType,
        support: _ThemeSupport,
        preferences: UserPreferences,
    ) -> Recommendation:
        title = format_title(support.label)
        if kind is RecommendationType.ACTIVITY:
            description = f"Try {title.lower()} activities"
        else:
            description = f"Explore {title.lower()} experiences"
        base_interest = self._estimated_interest((support.label,), preferences)
        novelty_shift = NOVELTY_WEIGHT * (preferences.novelty_preference - 0.5)
        return Recommendation(
            recommendation_id=self._id_factory(),
            type=kind,
            title=title,
            description=description,
            confidence_score=support.mean_score * self.confidence_discount,
            based_on_user_ids=tuple(support.user_ids),
            themes=(support.label,),
            estimated_interest=min(1.0, max(0.0, base_interest + novelty_shift)),
        )

    @staticmethod
    def _estimated_interest(themes: Sequence[str], preferences: UserPreferences) -> float:
        preferred = {theme.strip().lower() for theme in preferences.preferred_themes}
        hits = sum(1 for theme in themes if theme.strip().lower() in preferred)
        return min(1.0, BASE_ESTIMATED_INTEREST + PREFERRED_THEME_BONUS * hits)

    # ------------------------------------------------------------------
    # Pairwise score
    # ------------------------------------------------------------------

    async def calculate_discovery_score(self, user_a: str, user_b: str) -> float:
        """Mean all-pairs similarity of two users' full histories; 0 when either is empty."""
        records_a = await self.store.get_user_descriptions(user_a)
        records_b = await self.store.get_user_descriptions(user_b)
        if not records_a or not records_b:
            return 0.0
        return user_similarity(
            [record.embedding for record in records_a],
            [record.embedding for record in records_b],
        )
