"""
Error taxonomy for the discovery engine.
"""

from __future__ import annotations


class DiscoveryError(RuntimeError):
    """Base class for discovery engine failures."""


class ExternalStoreError(DiscoveryError):
    """Raised when the description or cluster store is unreachable or times out."""


class MalformedRecordError(DiscoveryError, ValueError):
    """Raised when a description record is missing fields or has the wrong shape."""


class DimensionMismatchError(MalformedRecordError):
    """Raised when two vectors that must share a dimension do not."""

    def __init__(self, left_dimensions: int, right_dimensions: int) -> None:
        self.left_dimensions = left_dimensions
        self.right_dimensions = right_dimensions
        super().__init__(
            f"Vectors must have matching dimensions ({left_dimensions} != {right_dimensions})"
        )


class ClusterRunInProgressError(DiscoveryError):
    """Raised when another clustering run already holds the run lease."""
