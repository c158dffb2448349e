"""
Diary discovery command-line interface.
"""

from __future__ import annotations

import argparse
import asyncio
import json
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from src.core.config import settings
from src.core.logging_setup import configure_logging
from src.processing.cluster_engine import ClusterEngine
from src.processing.discovery_engine import DiscoveryEngine
from src.processing.discovery_types import (
    EmbeddingRecord,
    GeoPoint,
    Recommendation,
    RunStats,
    SimilarityCluster,
    SimilarUserMatch,
    TimeWindow,
    UserPreferences,
)
from src.processing.errors import ExternalStoreError, MalformedRecordError
from src.storage.database import engine as db_engine
from src.storage.description_store import SqlDescriptionStore


def _format_cluster_line(cluster: SimilarityCluster) -> str:
    themes = ", ".join(cluster.common_themes) if cluster.common_themes else "none"
    location = cluster.location_cluster
    return (
        f"# {cluster.cluster_id}: {cluster.size} members "
        f"themes=[{themes}] "
        f"center=({location.center_lat:.4f}, {location.center_lng:.4f}) "
        f"radius={location.radius_km:.1f}km "
        f"updated={cluster.last_updated.isoformat()}"
    )


def _format_run_stats(stats: RunStats) -> str:
    if stats.skipped:
        return "Cluster refresh skipped: another run is active."
    if stats.error is not None:
        return f"Cluster refresh failed: {stats.error}"
    converged = "yes" if stats.converged else "no"
    return (
        f"clusters_created={stats.clusters_created}, "
        f"clusters_removed={stats.clusters_removed}, "
        f"total_users={stats.total_users}, "
        f"iterations={stats.iterations}, "
        f"converged={converged}, "
        f"skipped_records={stats.skipped_records}, "
        f"processing_time_ms={stats.processing_time_ms:.1f}"
    )


def _format_match_line(match: SimilarUserMatch) -> str:
    themes = ", ".join(match.common_themes) if match.common_themes else "none"
    return (
        f"{match.anonymized_id}: similarity={match.similarity_score:.3f} "
        f"location_overlap={match.location_overlap:.2f} "
        f"time_pattern={match.time_pattern_similarity:.2f} "
        f"themes=[{themes}]"
    )


def _format_recommendation_line(recommendation: Recommendation) -> str:
    return (
        f"[{recommendation.type.value}] {recommendation.title} "
        f"confidence={recommendation.confidence_score:.3f} "
        f"interest={recommendation.estimated_interest:.2f} "
        f"from={len(recommendation.based_on_user_ids)} users"
    )


def _load_preferences(path: str | None) -> UserPreferences | None:
    if path is None:
        return None
    document: dict[str, Any] = json.loads(Path(path).read_text(encoding="utf-8"))
    return UserPreferences.from_settings(document)


def _load_corpus(path: str) -> tuple[list[EmbeddingRecord], int]:
    """Read an exported corpus: a JSON array or one JSON object per line."""
    text = Path(path).read_text(encoding="utf-8").strip()
    if text.startswith("["):
        documents: list[Any] = json.loads(text)
    else:
        documents = [json.loads(line) for line in text.splitlines() if line.strip()]

    records: list[EmbeddingRecord] = []
    rejected = 0
    for document in documents:
        if not isinstance(document, dict):
            rejected += 1
            continue
        try:
            records.append(EmbeddingRecord.from_mapping(document))
        except MalformedRecordError:
            rejected += 1
    return records, rejected


def _recent_window(days: int | None) -> TimeWindow | None:
    if days is None:
        return None
    end = datetime.now(tz=UTC)
    return TimeWindow(start=end - timedelta(days=max(1, days)), end=end)


async def _run_clusters_update() -> int:
    try:
        stats = await DiscoveryEngine().update_user_clusters()
    finally:
        await db_engine.dispose()
    print(_format_run_stats(stats))
    if stats.succeeded or stats.skipped:
        return 0
    return 1


def _run_clusters_preview(*, path: str, seed: int | None) -> int:
    records, rejected = _load_corpus(path)
    result = ClusterEngine(seed=seed).run(records)
    converged = "yes" if result.converged else "no"
    print(
        f"users={result.total_users} k={result.k} iterations={result.iterations} "
        f"converged={converged} clusters={len(result.clusters)} "
        f"rejected_records={rejected + result.skipped_records}"
    )
    for cluster in result.clusters:
        print(_format_cluster_line(cluster))
    return 0


async def _run_clusters_list(*, limit: int) -> int:
    try:
        clusters = await SqlDescriptionStore().list_similarity_clusters(limit)
    finally:
        await db_engine.dispose()

    if not clusters:
        print("No similarity clusters published.")
        return 0
    for cluster in clusters:
        print(_format_cluster_line(cluster))
    return 0


async def _run_discovery_score(*, user_a: str, user_b: str) -> int:
    try:
        score = await DiscoveryEngine().calculate_discovery_score(user_a, user_b)
    finally:
        await db_engine.dispose()
    print(f"discovery_score={score:.4f}")
    return 0


async def _find_matches(
    engine: DiscoveryEngine,
    *,
    user_id: str,
    max_results: int,
    days: int | None,
) -> tuple[list[SimilarUserMatch], list[datetime], list[GeoPoint]]:
    window = _recent_window(days)
    records = await engine.store.get_user_descriptions(user_id, window)
    locations = [record.location for record in records if record.location is not None]
    matches = await engine.find_similar_users(
        [record.embedding for record in records],
        max_results=max_results,
        time_window=window,
        exclude_user_id=user_id,
        target_themes=sorted({theme for record in records for theme in record.themes}),
        target_locations=locations,
        target_timestamps=[record.timestamp for record in records],
    )
    return matches, [record.timestamp for record in records], locations


async def _run_discovery_similar(*, user_id: str, max_results: int, days: int | None) -> int:
    engine = DiscoveryEngine()
    try:
        matches, timestamps, _ = await _find_matches(
            engine,
            user_id=user_id,
            max_results=max_results,
            days=days,
        )
    except ExternalStoreError as exc:
        print(f"Description store unavailable: {exc}")
        return 1
    finally:
        await db_engine.dispose()

    if not timestamps:
        print(f"No descriptions found for {user_id}.")
        return 0
    if not matches:
        print("No similar users found.")
        return 0
    for match in matches:
        print(_format_match_line(match))
    return 0


async def _run_discovery_recommend(
    *,
    user_id: str,
    max_results: int,
    days: int | None,
    preferences: UserPreferences | None = None,
) -> int:
    engine = DiscoveryEngine()
    try:
        matches, _, locations = await _find_matches(
            engine,
            user_id=user_id,
            max_results=max_results,
            days=days,
        )
        recommendations = await engine.generate_recommendations(
            matches,
            preferences,
            exclude_locations=locations,
        )
    except ExternalStoreError as exc:
        print(f"Description store unavailable: {exc}")
        return 1
    finally:
        await db_engine.dispose()

    if not recommendations:
        print("No recommendations available.")
        return 0
    for recommendation in recommendations:
        print(_format_recommendation_line(recommendation))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="diary-discovery")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override LOG_LEVEL for this invocation.",
    )
    subparsers = parser.add_subparsers(dest="command")

    clusters_parser = subparsers.add_parser("clusters")
    clusters_subparsers = clusters_parser.add_subparsers(dest="clusters_command")

    clusters_subparsers.add_parser(
        "update",
        help="Recompute similarity clusters over all descriptions and publish them.",
    )
    clusters_list_parser = clusters_subparsers.add_parser(
        "list",
        help="Show the most recently published similarity clusters.",
    )
    clusters_list_parser.add_argument(
        "--limit",
        type=int,
        default=settings.DISCOVERY_CLUSTER_LIST_LIMIT,
        help="Maximum number of clusters to display.",
    )

    clusters_preview_parser = clusters_subparsers.add_parser(
        "preview",
        help="Cluster an exported JSON corpus locally without publishing anything.",
    )
    clusters_preview_parser.add_argument("path", help="JSON array or JSON-lines file.")
    clusters_preview_parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed for centroid initialization.",
    )

    discovery_parser = subparsers.add_parser("discovery")
    discovery_subparsers = discovery_parser.add_subparsers(dest="discovery_command")

    discovery_score_parser = discovery_subparsers.add_parser(
        "score",
        help="Score how alike two users' full description histories are.",
    )
    discovery_score_parser.add_argument("user_a", help="First user identifier.")
    discovery_score_parser.add_argument("user_b", help="Second user identifier.")

    for name, help_text in (
        ("similar", "List users whose descriptions resemble the given user's."),
        ("recommend", "Suggest places, activities and themes from similar users."),
    ):
        command_parser = discovery_subparsers.add_parser(name, help=help_text)
        command_parser.add_argument("user_id", help="User to search on behalf of.")
        command_parser.add_argument(
            "--max-results",
            type=int,
            default=10,
            help="Maximum number of similar users considered.",
        )
        command_parser.add_argument(
            "--days",
            type=int,
            default=None,
            help="Only compare descriptions from the last N days.",
        )
    discovery_subparsers.choices["recommend"].add_argument(
        "--preferences",
        default=None,
        help="JSON user-settings file with a \"preferences\" object.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    configure_logging(level=args.log_level, log_format="console")

    if args.command == "clusters" and args.clusters_command == "update":
        return asyncio.run(_run_clusters_update())
    if args.command == "clusters" and args.clusters_command == "list":
        return asyncio.run(_run_clusters_list(limit=max(args.limit, 1)))
    if args.command == "clusters" and args.clusters_command == "preview":
        return _run_clusters_preview(path=args.path, seed=args.seed)
    if args.command == "discovery" and args.discovery_command == "score":
        return asyncio.run(_run_discovery_score(user_a=args.user_a, user_b=args.user_b))
    if args.command == "discovery" and args.discovery_command == "similar":
        return asyncio.run(
            _run_discovery_similar(
                user_id=args.user_id,
                max_results=max(args.max_results, 1),
                days=args.days,
            )
        )
    if args.command == "discovery" and args.discovery_command == "recommend":
        return asyncio.run(
            _run_discovery_recommend(
                user_id=args.user_id,
                max_results=max(args.max_results, 1),
                days=args.days,
                preferences=_load_preferences(args.preferences),
            )
        )

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
