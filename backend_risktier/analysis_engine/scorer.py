"""
Risk score computation — logistic model over the four behavioral features.

Steps: normalize each metric to [0, 1], take a weighted linear combination
plus one volume x counterparties interaction term, squash with a sigmoid,
and map (1 - p) to a 0-100 risk score and a tier. Higher linear score means
safer behavior, so it yields a lower risk score.

score() is pure and never raises:
- no activity in the window is scored by the low-activity rule set;
- a non-finite value anywhere in the math switches to the rule-based fallback.
"""

from __future__ import annotations

import math
from typing import Any

from backend_risktier.analysis_engine.models import (
    DataQuality,
    RiskAnalysisResult,
    RiskMetrics,
    Tier,
    tier_for_score,
)
from backend_risktier.analysis_engine.policy import DEFAULT_POLICY, FEATURES, ScoringPolicy
from backend_risktier.core.exceptions import ScoringError
from backend_risktier.risk_logging import get_logger

logger = get_logger(__name__)

TIER_HEADLINES = {
    Tier.TIER_1: "Low Risk - Premium pool access",
    Tier.TIER_2: "Medium Risk - Standard pool access",
    Tier.TIER_3: "High Risk - Opportunity pool access",
}


def _clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _round2(value: float) -> float:
    return _round_half_up(value * 100) / 100


def _is_inactive(metrics: RiskMetrics) -> bool:
    return (
        metrics.total_payments == 0
        and metrics.total_volume == 0
        and metrics.unique_counterparties == 0
        and metrics.asset_diversity == 0
    )


def _feature_phrase(feature: str, data: dict[str, Any]) -> str | None:
    raw = data["raw_value"]
    positive = data["is_positive"]
    if feature == "total_volume":
        if positive and raw > 100:
            return "High transaction volume increases trust"
        return "Low transaction volume increases risk"
    if feature == "unique_counterparties":
        if positive and raw > 5:
            return "Diverse counterparties increase trust"
        return "Few counterparties increase risk"
    if feature == "asset_diversity":
        if positive and raw > 2:
            return "Asset diversity increases trust"
        return "Single asset usage increases risk"
    if feature == "night_day_ratio":
        if not positive and raw > 0.5:
            return "High night activity increases risk"
    return None


def recommendations_for(metrics: RiskMetrics) -> list[str]:
    """Improvement hints per weak feature; a single all-clear line when none apply."""
    out: list[str] = []
    if metrics.total_volume < 50:
        out.append("Increase transaction volume organically")
    if metrics.unique_counterparties < 3:
        out.append("Transact with different counterparties")
    if metrics.asset_diversity < 2:
        out.append("Diversify transactions with different assets")
    if metrics.night_day_ratio > 0.3:
        out.append("Make more transactions during daytime hours")
    if not out:
        out.append("Excellent! Your risk profile is in great condition")
    return out


def data_quality(metrics: RiskMetrics) -> DataQuality:
    """25 points each: >10 payments, >3 counterparties, >1 asset, any payment."""
    score = 0
    if metrics.total_payments > 10:
        score += 25
    if metrics.unique_counterparties > 3:
        score += 25
    if metrics.asset_diversity > 1:
        score += 25
    if metrics.total_payments > 0:
        score += 25
    return DataQuality(score=score, is_good=score >= 75, needs_more_data=score < 50)


class RiskScorer:
    """Deterministic metrics -> RiskAnalysisResult mapping driven by a ScoringPolicy."""

    def __init__(self, policy: ScoringPolicy | None = None) -> None:
        self._policy = policy or DEFAULT_POLICY

    @property
    def policy(self) -> ScoringPolicy:
        return self._policy

    def score(self, metrics: RiskMetrics, *, computed_at: int = 0) -> RiskAnalysisResult:
        """
        Score a metrics vector.

        Args:
            metrics: Feature vector from features.reduce.
            computed_at: Unix ms stamped on the result; callers supply it so
                the function stays free of I/O.

        Returns:
            RiskAnalysisResult with risk_score in [0, 100] and a consistent tier.
        """
        if _is_inactive(metrics):
            return self._score_inactive(metrics, computed_at)
        try:
            return self._score_logistic(metrics, computed_at)
        except (ArithmeticError, TypeError, ValueError) as e:
            logger.warning("scorer_fallback_used", error=str(e))
            return self._score_fallback(metrics, computed_at)

    # -------------------------------------------------------------------------
    # Logistic model
    # -------------------------------------------------------------------------

    def normalize(self, metrics: RiskMetrics) -> dict[str, float]:
        """Min/max normalization of each scored feature to [0, 1]."""
        out: dict[str, float] = {}
        for feature in FEATURES:
            value = float(getattr(metrics, feature) or 0)
            if not math.isfinite(value):
                raise ScoringError(f"non-finite {feature}: {value}")
            span = self._policy.ranges[feature].span
            out[feature] = _clamp(value / span, 0.0, 1.0)
        return out

    def linear_score(self, normalized: dict[str, float]) -> float:
        p = self._policy
        linear = p.bias
        for feature in FEATURES:
            linear += normalized[feature] * p.weights[feature]
        linear += normalized["total_volume"] * normalized["unique_counterparties"] * p.interaction_weight
        if not math.isfinite(linear):
            raise ScoringError(f"non-finite linear score: {linear}")
        return linear

    def _confidence(self, normalized: dict[str, float]) -> int:
        values = list(normalized.values())
        mean = sum(values) / len(values)
        variance = sum((v - mean) ** 2 for v in values) / len(values)
        if not math.isfinite(variance):
            raise ScoringError("non-finite feature variance")
        p = self._policy
        return _round_half_up(_clamp((1 - variance) * 100, p.confidence_min, p.confidence_max))

    def _feature_importance(
        self, normalized: dict[str, float], metrics: RiskMetrics
    ) -> dict[str, dict[str, Any]]:
        importance: dict[str, dict[str, Any]] = {}
        for feature in FEATURES:
            signed = self._policy.weights.get(feature, 0.0)
            weight = abs(signed)
            value = normalized[feature]
            importance[feature] = {
                "weight": _round2(weight),
                "normalized_value": _round2(value),
                "impact": _round2(weight * value),
                "raw_value": getattr(metrics, feature),
                "is_positive": signed < 0,
            }
        return importance

    def _score_logistic(self, metrics: RiskMetrics, computed_at: int) -> RiskAnalysisResult:
        normalized = self.normalize(metrics)
        linear = self.linear_score(normalized)
        probability = 1.0 / (1.0 + math.exp(-linear))
        risk_score = _round_half_up(_clamp((1.0 - probability) * 100.0, 0.0, 100.0))
        tier = tier_for_score(risk_score)
        importance = self._feature_importance(normalized, metrics)

        explanation = [TIER_HEADLINES[tier]]
        ranked = sorted(importance.items(), key=lambda kv: abs(kv[1]["impact"]), reverse=True)
        for feature, data in ranked[:2]:
            phrase = _feature_phrase(feature, data)
            if phrase:
                explanation.append(phrase)

        return RiskAnalysisResult(
            risk_score=risk_score,
            tier=tier,
            confidence=self._confidence(normalized),
            explanation=explanation,
            raw_metrics=metrics,
            computed_at=computed_at,
            recommendations=recommendations_for(metrics),
            feature_importance=importance,
            normalized_features={k: _round2(v) for k, v in normalized.items()},
            model_version=self._policy.model_version,
        )

    # -------------------------------------------------------------------------
    # Rule-based scorers
    # -------------------------------------------------------------------------

    def _score_fallback(self, metrics: RiskMetrics, computed_at: int) -> RiskAnalysisResult:
        """Threshold checks on raw metrics. NaN comparisons are False, so this cannot fail."""
        score = self._policy.fallback_base
        if metrics.total_volume > 100:
            score -= 15
        if metrics.unique_counterparties > 5:
            score -= 10
        if metrics.asset_diversity > 2:
            score -= 10
        if metrics.night_day_ratio > 0.5:
            score += 20
        score = int(_clamp(score, 0, 100))
        return RiskAnalysisResult(
            risk_score=score,
            tier=tier_for_score(score),
            confidence=self._policy.fallback_confidence,
            explanation=["Simple rule-based calculation was used"],
            raw_metrics=metrics,
            computed_at=computed_at,
            recommendations=["Try again for more detailed analysis"],
            model_version=self._policy.fallback_version,
        )

    def _score_inactive(self, metrics: RiskMetrics, computed_at: int) -> RiskAnalysisResult:
        """No payments in the window: sum the low-activity penalties (single asset, no history)."""
        factors = self._policy.inactive_factors
        score = int(_clamp(sum(points for _, points in factors), 0, 100))
        tier = tier_for_score(score)
        explanation = [TIER_HEADLINES[tier], "No payments found in the analysis window"]
        explanation.extend(f"{label} (+{points})" for label, points in factors)
        return RiskAnalysisResult(
            risk_score=score,
            tier=tier,
            confidence=self._policy.inactive_confidence,
            explanation=explanation,
            raw_metrics=metrics,
            computed_at=computed_at,
            recommendations=recommendations_for(metrics),
            model_version=self._policy.inactive_version,
        )


def calculate_risk_score(
    metrics: RiskMetrics,
    *,
    computed_at: int = 0,
    policy: ScoringPolicy | None = None,
) -> RiskAnalysisResult:
    """Convenience: score metrics with the default (or given) policy."""
    return RiskScorer(policy).score(metrics, computed_at=computed_at)
