"""
Application-level exceptions.

Only ValidationError and ConfigError are meant to reach callers of the
pipeline. The rest are raised by leaf clients and classified by the commit
pipeline into CONFIRMED / FAILED / FALLBACK outcomes.
"""

from __future__ import annotations


class RiskTierError(Exception):
    """Base class for all backend_risktier errors."""


class ValidationError(RiskTierError, ValueError):
    """Malformed address, out-of-range score, or inconsistent tier. Not retried."""


class ConfigError(RiskTierError):
    """Missing or malformed environment configuration."""


class LedgerUnavailableError(RiskTierError):
    """Transport failure, HTTP 5xx, or exhausted 429 retries talking to Horizon."""


class LedgerRequestError(RiskTierError):
    """Horizon rejected the request itself (4xx other than 404/429). Not retried."""


class AccountNotFoundError(RiskTierError):
    """Horizon returned 404 for the account (unfunded or wrong network)."""


class SignerRejectedError(RiskTierError):
    """The user declined or cancelled the signature request."""


class TransientSubmissionError(RiskTierError):
    """Network or RPC fault during submission or polling; eligible for fallback."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class TerminalSubmissionError(RiskTierError):
    """The ledger rejected the transaction (malformed, failed simulation, bad sequence)."""

    def __init__(self, message: str, tx_hash: str | None = None) -> None:
        super().__init__(message)
        self.tx_hash = tx_hash


class ScoringError(RiskTierError, ArithmeticError):
    """Non-finite value during scoring. Caught inside the scorer."""
