"""
Core utilities — exceptions and the clock/scheduler abstraction.

Shared by ingestion, analysis engine, oracle (commit pipeline), and API server.
"""

from backend_risktier.core.clock import Clock, FakeClock, SystemClock
from backend_risktier.core.exceptions import (
    AccountNotFoundError,
    ConfigError,
    LedgerUnavailableError,
    RiskTierError,
    ScoringError,
    SignerRejectedError,
    TerminalSubmissionError,
    TransientSubmissionError,
    ValidationError,
)

__all__ = [
    "AccountNotFoundError",
    "Clock",
    "ConfigError",
    "FakeClock",
    "LedgerUnavailableError",
    "RiskTierError",
    "ScoringError",
    "SignerRejectedError",
    "SystemClock",
    "TerminalSubmissionError",
    "TransientSubmissionError",
    "ValidationError",
]
