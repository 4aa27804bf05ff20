"""
Scoring policy table: normalization ranges, weights, and rule thresholds.

These are hand-tuned parameters, not learned coefficients. They live in one
dataclass so a deployment can swap the table without touching the scorer.
"""

from __future__ import annotations

from dataclasses import dataclass, field

FEATURES = ("total_volume", "unique_counterparties", "asset_diversity", "night_day_ratio")


@dataclass(frozen=True)
class FeatureRange:
    """Normalization range; x_norm = clamp(value / (maximum - minimum), 0, 1)."""

    minimum: float
    maximum: float

    @property
    def span(self) -> float:
        return self.maximum - self.minimum


def _default_ranges() -> dict[str, FeatureRange]:
    return {
        "total_volume": FeatureRange(0, 10_000),
        "unique_counterparties": FeatureRange(0, 50),
        "asset_diversity": FeatureRange(1, 10),
        "night_day_ratio": FeatureRange(0, 2),
    }


def _default_weights() -> dict[str, float]:
    # Negative weight = safer behavior
    return {
        "total_volume": -0.15,
        "unique_counterparties": -0.25,
        "asset_diversity": -0.2,
        "night_day_ratio": 0.35,
    }


@dataclass(frozen=True)
class ScoringPolicy:
    """Constants for the logistic scorer and its rule-based fallbacks."""

    ranges: dict[str, FeatureRange] = field(default_factory=_default_ranges)
    weights: dict[str, float] = field(default_factory=_default_weights)
    interaction_weight: float = -0.1
    bias: float = 0.45
    confidence_min: int = 60
    confidence_max: int = 95
    model_version: str = "1.0.0"

    # Fallback rule-based scorer (non-finite math)
    fallback_base: int = 50
    fallback_confidence: int = 75
    fallback_version: str = "fallback-1.0"

    # No-activity scorer (zero payments in the window)
    inactive_confidence: int = 60
    inactive_version: str = "inactive-1.0"
    inactive_factors: tuple[tuple[str, int], ...] = (
        ("Very low transaction history", 25),
        ("Limited asset diversity", 20),
        ("Low recent activity", 15),
        ("Mixed trading hours", 5),
        ("Limited amount history", 5),
        ("Normal transaction timing", 3),
    )


DEFAULT_POLICY = ScoringPolicy()
