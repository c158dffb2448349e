"""
Vector similarity helpers used by clustering and similar-user search.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from datetime import datetime

from src.processing.discovery_types import GeoPoint
from src.processing.errors import DimensionMismatchError

Vector = Sequence[float]

EARTH_MEAN_RADIUS_KM = 6371.0088
HOURS_PER_DAY = 24


def _require_same_dimensions(left: Vector, right: Vector) -> None:
    if len(left) != len(right):
        raise DimensionMismatchError(len(left), len(right))


def cosine_similarity(left: Vector, right: Vector) -> float:
    """
    Compute cosine similarity for two equal-length vectors.

    A zero vector carries no direction, so any comparison involving one
    scores exactly 0.0.
    """
    _require_same_dimensions(left, right)

    dot = sum(left_value * right_value for left_value, right_value in zip(left, right, strict=True))
    left_norm = math.sqrt(sum(value * value for value in left))
    right_norm = math.sqrt(sum(value * value for value in right))
    if left_norm == 0.0 or right_norm == 0.0:
        return 0.0
    return max(-1.0, min(1.0, dot / (left_norm * right_norm)))


def euclidean_distance(left: Vector, right: Vector) -> float:
    """Compute straight-line distance between two equal-length vectors."""
    _require_same_dimensions(left, right)
    return math.sqrt(
        sum(
            (left_value - right_value) ** 2
            for left_value, right_value in zip(left, right, strict=True)
        )
    )


def mean_vector(vectors: Sequence[Vector]) -> tuple[float, ...]:
    """Return the component-wise mean of one or more equal-length vectors."""
    if not vectors:
        msg = "mean_vector requires at least one vector"
        raise ValueError(msg)
    dimensions = len(vectors[0])
    totals = [0.0] * dimensions
    for vector in vectors:
        _require_same_dimensions(vectors[0], vector)
        for index, value in enumerate(vector):
            totals[index] += value
    count = float(len(vectors))
    return tuple(total / count for total in totals)


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres between two coordinates."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lng2 - lng1)
    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    return 2 * EARTH_MEAN_RADIUS_KM * math.asin(min(1.0, math.sqrt(a)))


def user_similarity(embeddings_a: Sequence[Vector], embeddings_b: Sequence[Vector]) -> float:
    """
    Mean cosine similarity over every (a, b) pair of two users' embeddings.

    Each user may have many diary entries, so the all-pairs average is used
    instead of comparing a single representative vector.
    """
    if not embeddings_a or not embeddings_b:
        return 0.0

    total = 0.0
    comparisons = 0
    for left in embeddings_a:
        for right in embeddings_b:
            total += cosine_similarity(left, right)
            comparisons += 1
    return total / comparisons


def location_overlap(
    points_a: Sequence[GeoPoint],
    points_b: Sequence[GeoPoint],
    *,
    radius_km: float,
) -> float:
    """Fraction of points in ``points_a`` within ``radius_km`` of any point in ``points_b``."""
    if not points_a or not points_b:
        return 0.0
    near = sum(
        1
        for point in points_a
        if any(
            haversine_km(point.lat, point.lng, other.lat, other.lng) <= radius_km
            for other in points_b
        )
    )
    return near / len(points_a)


def _hour_histogram(timestamps: Iterable[datetime]) -> list[float]:
    histogram = [0.0] * HOURS_PER_DAY
    for moment in timestamps:
        histogram[moment.hour] += 1.0
    return histogram


def time_pattern_similarity(
    timestamps_a: Sequence[datetime],
    timestamps_b: Sequence[datetime],
) -> float:
    """Cosine similarity of two users' hour-of-day writing histograms."""
    if not timestamps_a or not timestamps_b:
        return 0.0
    return cosine_similarity(_hour_histogram(timestamps_a), _hour_histogram(timestamps_b))
