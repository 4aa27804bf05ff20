"""
Value objects produced by the analysis engine.

RiskMetrics is the fixed feature vector; RiskAnalysisResult is what the
scorer returns and the cache stores. Both are recomputed per analysis and
never persisted.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any

FRESHNESS_WINDOW_MS = 60 * 60 * 1000


class Tier(str, Enum):
    """Coarse risk bucket. TIER_1 is lowest risk (premium pools), TIER_3 highest (broadest access)."""

    TIER_1 = "TIER_1"
    TIER_2 = "TIER_2"
    TIER_3 = "TIER_3"

    @property
    def rank(self) -> int:
        return int(self.value[-1])


def tier_for_score(risk_score: float) -> Tier:
    """score <= 30 -> TIER_1; <= 70 -> TIER_2; else TIER_3."""
    if risk_score <= 30:
        return Tier.TIER_1
    if risk_score <= 70:
        return Tier.TIER_2
    return Tier.TIER_3


@dataclass(frozen=True)
class RiskMetrics:
    """Behavioral feature vector for one address over the analysis window."""

    total_volume: float = 0.0
    unique_counterparties: int = 0
    asset_diversity: int = 0
    night_day_ratio: float = 0.0
    total_payments: int = 0
    total_transactions: int = 0
    average_transaction_size: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class DataQuality:
    """How much history backed the analysis (0-100 in steps of 25)."""

    score: int
    is_good: bool
    needs_more_data: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class RiskAnalysisResult:
    """Score, tier, and explanation for one address. computed_at is Unix ms."""

    risk_score: int
    tier: Tier
    confidence: int
    explanation: list[str]
    raw_metrics: RiskMetrics
    computed_at: int = 0
    recommendations: list[str] = field(default_factory=list)
    feature_importance: dict[str, dict[str, Any]] = field(default_factory=dict)
    normalized_features: dict[str, float] = field(default_factory=dict)
    model_version: str = ""

    def is_fresh(self, now_ms: int) -> bool:
        """True while less than one hour has passed since computed_at."""
        return now_ms - self.computed_at < FRESHNESS_WINDOW_MS

    def to_dict(self) -> dict[str, Any]:
        return {
            "risk_score": self.risk_score,
            "tier": self.tier.value,
            "confidence": self.confidence,
            "explanation": list(self.explanation),
            "recommendations": list(self.recommendations),
            "raw_metrics": self.raw_metrics.to_dict(),
            "normalized_features": dict(self.normalized_features),
            "feature_importance": {k: dict(v) for k, v in self.feature_importance.items()},
            "model_version": self.model_version,
            "computed_at": self.computed_at,
        }
