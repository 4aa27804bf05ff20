"""
Analysis engine — feature extraction, logistic risk scoring, and the analysis cache.

Consumes TransactionRecord lists from ingestion; produces RiskAnalysisResult
for the API and the commit pipeline.
"""

from backend_risktier.analysis_engine.cache import AnalysisCache
from backend_risktier.analysis_engine.features import reduce
from backend_risktier.analysis_engine.models import (
    DataQuality,
    RiskAnalysisResult,
    RiskMetrics,
    Tier,
    tier_for_score,
)
from backend_risktier.analysis_engine.policy import ScoringPolicy
from backend_risktier.analysis_engine.scorer import RiskScorer, calculate_risk_score, data_quality

__all__ = [
    "AnalysisCache",
    "DataQuality",
    "RiskAnalysisResult",
    "RiskMetrics",
    "RiskScorer",
    "ScoringPolicy",
    "Tier",
    "calculate_risk_score",
    "data_quality",
    "reduce",
    "tier_for_score",
]
