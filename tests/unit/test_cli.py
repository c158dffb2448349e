from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest

import src.cli as cli_module
from src.cli import (
    _build_parser,
    _format_cluster_line,
    _format_recommendation_line,
    _format_run_stats,
    _load_corpus,
    _load_preferences,
    _recent_window,
)
from src.processing.discovery_types import (
    LocationCluster,
    Recommendation,
    RecommendationType,
    RunStats,
    SimilarityCluster,
)
from src.processing.errors import ExternalStoreError

pytestmark = pytest.mark.unit


def test_format_cluster_line_includes_size_themes_and_location() -> None:
    cluster = SimilarityCluster(
        cluster_id="c-1",
        centroid=(0.1, 0.2),
        member_user_ids=frozenset({"a", "b", "c"}),
        common_themes=("nature", "coffee"),
        location_cluster=LocationCluster(center_lat=48.85, center_lng=2.35, radius_km=12.34),
        last_updated=datetime(2026, 1, 2, 3, 4, tzinfo=UTC),
    )

    line = _format_cluster_line(cluster)

    assert line.startswith("# c-1: 3 members")
    assert "themes=[nature, coffee]" in line
    assert "center=(48.8500, 2.3500)" in line
    assert "radius=12.3km" in line


def test_format_run_stats_covers_success_skip_and_failure() -> None:
    ok = RunStats(clusters_created=2, clusters_removed=1, total_users=9, iterations=4)
    ok.processing_time_ms = 12.34

    assert "clusters_created=2" in _format_run_stats(ok)
    assert "processing_time_ms=12.3" in _format_run_stats(ok)
    assert "skipped" in _format_run_stats(RunStats(error="busy", skipped=True))
    assert _format_run_stats(RunStats(error="ExternalStoreError: down")) == (
        "Cluster refresh failed: ExternalStoreError: down"
    )


def test_format_recommendation_line() -> None:
    recommendation = Recommendation(
        recommendation_id="r-1",
        type=RecommendationType.ACTIVITY,
        title="Running",
        description="Try running activities",
        confidence_score=0.72,
        based_on_user_ids=("u1", "u2"),
        themes=("running",),
        estimated_interest=0.74,
    )

    assert _format_recommendation_line(recommendation) == (
        "[activity] Running confidence=0.720 interest=0.74 from=2 users"
    )


def test_recent_window_spans_requested_days() -> None:
    assert _recent_window(None) is None

    window = _recent_window(7)

    assert window is not None
    assert (window.end - window.start).days == 7


def test_load_preferences_reads_user_settings_document(tmp_path: Path) -> None:
    path = tmp_path / "settings.json"
    path.write_text(
        json.dumps({"preferences": {"avoidedThemes": ["crowds"], "locationRadius": 5}}),
        encoding="utf-8",
    )

    preferences = _load_preferences(str(path))

    assert preferences is not None
    assert preferences.avoided_themes == ("crowds",)
    assert preferences.location_radius_km == 5.0
    assert _load_preferences(None) is None


def test_build_parser_accepts_cluster_commands() -> None:
    parser = _build_parser()

    update_args = parser.parse_args(["clusters", "update"])
    list_args = parser.parse_args(["clusters", "list", "--limit", "3"])

    assert update_args.clusters_command == "update"
    assert list_args.clusters_command == "list"
    assert list_args.limit == 3


def test_build_parser_accepts_discovery_commands() -> None:
    parser = _build_parser()

    score_args = parser.parse_args(["discovery", "score", "alice", "bob"])
    recommend_args = parser.parse_args(
        ["discovery", "recommend", "alice", "--days", "30", "--preferences", "prefs.json"]
    )

    assert (score_args.user_a, score_args.user_b) == ("alice", "bob")
    assert recommend_args.discovery_command == "recommend"
    assert recommend_args.days == 30
    assert recommend_args.preferences == "prefs.json"
    assert recommend_args.max_results == 10


def test_main_without_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert cli_module.main([]) == 1
    assert "usage" in capsys.readouterr().out


def _patch_engine(monkeypatch: pytest.MonkeyPatch, engine: Any) -> None:
    monkeypatch.setattr(cli_module, "DiscoveryEngine", MagicMock(return_value=engine))
    monkeypatch.setattr(cli_module, "db_engine", MagicMock(dispose=AsyncMock()))
    monkeypatch.setattr(cli_module, "configure_logging", lambda **_: None)


def test_main_clusters_update_exit_code_reflects_run(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    engine = MagicMock()
    engine.update_user_clusters = AsyncMock(return_value=RunStats(error="ExternalStoreError: down"))
    _patch_engine(monkeypatch, engine)

    assert cli_module.main(["clusters", "update"]) == 1
    assert "Cluster refresh failed" in capsys.readouterr().out

    engine.update_user_clusters = AsyncMock(return_value=RunStats(clusters_created=1))
    assert cli_module.main(["clusters", "update"]) == 0


def test_main_discovery_score_prints_value(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    engine = MagicMock()
    engine.calculate_discovery_score = AsyncMock(return_value=0.8125)
    _patch_engine(monkeypatch, engine)

    assert cli_module.main(["discovery", "score", "alice", "bob"]) == 0
    assert capsys.readouterr().out.strip() == "discovery_score=0.8125"
    engine.calculate_discovery_score.assert_awaited_once_with("alice", "bob")


@pytest.mark.parametrize("command", ["similar", "recommend"])
def test_main_discovery_reports_store_outage_with_exit_code(
    command: str,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    engine = MagicMock()
    engine.store.get_user_descriptions = AsyncMock(side_effect=ExternalStoreError("pool exhausted"))
    engine.find_similar_users = AsyncMock()
    engine.generate_recommendations = AsyncMock()
    _patch_engine(monkeypatch, engine)

    assert cli_module.main(["discovery", command, "alice"]) == 1
    assert capsys.readouterr().out.strip() == "Description store unavailable: pool exhausted"
    engine.find_similar_users.assert_not_awaited()
    engine.generate_recommendations.assert_not_awaited()
    cli_module.db_engine.dispose.assert_awaited_once()


def _write_corpus_lines(path: Path, documents: list[Any]) -> None:
    path.write_text("\n".join(json.dumps(document) for document in documents), encoding="utf-8")


def test_load_corpus_reads_json_lines_and_counts_rejects(tmp_path: Path) -> None:
    path = tmp_path / "corpus.jsonl"
    _write_corpus_lines(
        path,
        [
            {"userId": "alice", "embedding": [1.0, 0.0], "timestamp": "2026-02-03T04:05:06Z"},
            {"userId": "bob", "timestamp": "2026-02-03T04:05:06Z"},
            ["not", "a", "document"],
        ],
    )

    records, rejected = _load_corpus(str(path))

    assert [record.user_id for record in records] == ["alice"]
    assert rejected == 2


def test_load_corpus_reads_json_array(tmp_path: Path) -> None:
    path = tmp_path / "corpus.json"
    path.write_text(
        json.dumps([{"user_id": "carol", "embedding": [0.5], "timestamp": "2026-02-03T00:00:00Z"}]),
        encoding="utf-8",
    )

    records, rejected = _load_corpus(str(path))

    assert records[0].user_id == "carol"
    assert rejected == 0


def test_main_clusters_preview_prints_summary_without_store(
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
    tmp_path: Path,
) -> None:
    monkeypatch.setattr(cli_module, "configure_logging", lambda **_: None)
    path = tmp_path / "corpus.jsonl"
    documents: list[Any] = [
        {
            "user_id": f"user-{index}",
            "embedding": [1.0, 0.01 * index] if index < 3 else [0.01 * index, 1.0],
            "themes": ["coffee"] if index < 3 else ["hiking"],
            "timestamp": "2026-02-03T08:00:00Z",
        }
        for index in range(6)
    ]
    documents.append({"user_id": "broken", "embedding": []})
    _write_corpus_lines(path, documents)

    assert cli_module.main(["clusters", "preview", str(path), "--seed", "7"]) == 0

    summary = capsys.readouterr().out.splitlines()[0]
    assert summary.startswith("users=6 k=3")
    assert "rejected_records=1" in summary


def test_build_parser_accepts_preview_seed() -> None:
    args = _build_parser().parse_args(["clusters", "preview", "corpus.jsonl", "--seed", "3"])

    assert args.clusters_command == "preview"
    assert (args.path, args.seed) == ("corpus.jsonl", 3)
