"""
Type/theme diversification of ranked recommendation candidates.
"""

from __future__ import annotations

from collections.abc import Sequence

from src.processing.discovery_types import Recommendation, RecommendationType, UserPreferences

# Minimum result size kept regardless of novelty.
DIVERSITY_FLOOR = 5


def diversify(
    candidates: Sequence[Recommendation],
    preferences: UserPreferences | None = None,
    *,
    floor: int = DIVERSITY_FLOOR,
) -> list[Recommendation]:
    """
    Re-rank candidates so the result is not dominated by one type or theme.

    Candidates are sorted by confidence (stable), then walked in order; a
    candidate is kept when it brings a new type, at least one new theme, or
    while fewer than ``floor`` candidates have been kept. Candidates touching
    any of the caller's avoided themes are dropped first.
    """
    avoided = _normalized(preferences.avoided_themes) if preferences is not None else set()
    ranked = sorted(candidates, key=lambda candidate: -candidate.confidence_score)

    kept: list[Recommendation] = []
    seen_types: set[RecommendationType] = set()
    seen_themes: set[str] = set()
    for candidate in ranked:
        if avoided and _normalized(candidate.themes) & avoided:
            continue
        has_new_type = candidate.type not in seen_types
        has_new_theme = any(theme not in seen_themes for theme in candidate.themes)
        if not (has_new_type or has_new_theme or len(kept) < floor):
            continue
        kept.append(candidate)
        seen_types.add(candidate.type)
        seen_themes.update(candidate.themes)
    return kept


def _normalized(themes: Sequence[str]) -> set[str]:
    return {theme.strip().lower() for theme in themes if theme.strip()}
