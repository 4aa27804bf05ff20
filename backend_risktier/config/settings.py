"""
Application settings and environment configuration.

Settings are read from environment variables (after .env is loaded) through
dataclass field factories, so an explicit Settings(...) in tests or scripts
overrides any single value without touching the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache

from backend_risktier.config.env import (
    NETWORK_PASSPHRASES,
    get_contract_id,
    get_database_url,
    get_horizon_url,
    get_soroban_rpc_url,
    get_stellar_network,
    load_risktier_env,
)
from backend_risktier.core.exceptions import ConfigError, ValidationError
from backend_risktier.utils.address_utils import require_contract_id

DEFAULT_WINDOW_DAYS = 30
DEFAULT_PAGE_SIZE = 200
DEFAULT_MAX_RECORDS = 1000
DEFAULT_POLL_ATTEMPTS = 15
DEFAULT_POLL_INTERVAL_SEC = 3.0
# BASE_FEE (100 stroops) x 100
DEFAULT_BASE_FEE = 10_000
DEFAULT_TX_TIMEOUT_SEC = 30
DEFAULT_HTTP_TIMEOUT_SEC = 30.0
CONTRACT_METHODS = ("set_risk_tier", "set_score")


def _env_int(name: str, default: int) -> int:
    load_risktier_env()
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw else default


def _env_float(name: str, default: float) -> float:
    load_risktier_env()
    raw = (os.getenv(name) or "").strip()
    return float(raw) if raw else default


def _env_str(name: str, default: str = "") -> str:
    load_risktier_env()
    return (os.getenv(name) or default).strip()


@dataclass
class Settings:
    """Typed settings for ingestion, commit pipeline, storage, and API server."""

    network: str = field(default_factory=get_stellar_network)
    horizon_url: str = field(default_factory=get_horizon_url)
    soroban_rpc_url: str = field(default_factory=get_soroban_rpc_url)
    contract_id: str = field(default_factory=get_contract_id)
    contract_method: str = field(default_factory=lambda: _env_str("RISK_CONTRACT_METHOD", "set_risk_tier"))
    oracle_secret_key: str = field(default_factory=lambda: _env_str("ORACLE_SECRET_KEY"), repr=False)
    database_url: str = field(default_factory=get_database_url)
    window_days: int = field(default_factory=lambda: _env_int("LEDGER_WINDOW_DAYS", DEFAULT_WINDOW_DAYS))
    page_size: int = field(default_factory=lambda: _env_int("LEDGER_PAGE_SIZE", DEFAULT_PAGE_SIZE))
    max_records: int = field(default_factory=lambda: _env_int("LEDGER_MAX_RECORDS", DEFAULT_MAX_RECORDS))
    poll_attempts: int = field(default_factory=lambda: _env_int("COMMIT_POLL_ATTEMPTS", DEFAULT_POLL_ATTEMPTS))
    poll_interval_sec: float = field(
        default_factory=lambda: _env_float("COMMIT_POLL_INTERVAL_SEC", DEFAULT_POLL_INTERVAL_SEC)
    )
    base_fee: int = field(default_factory=lambda: _env_int("COMMIT_BASE_FEE", DEFAULT_BASE_FEE))
    tx_timeout_sec: int = field(default_factory=lambda: _env_int("COMMIT_TIMEOUT_SEC", DEFAULT_TX_TIMEOUT_SEC))
    http_timeout_sec: float = field(default_factory=lambda: _env_float("HTTP_TIMEOUT_SEC", DEFAULT_HTTP_TIMEOUT_SEC))

    def __post_init__(self) -> None:
        if self.network not in NETWORK_PASSPHRASES:
            raise ConfigError(f"Unknown STELLAR_NETWORK {self.network!r}")
        if self.contract_method not in CONTRACT_METHODS:
            raise ConfigError(f"RISK_CONTRACT_METHOD must be one of {CONTRACT_METHODS}")
        if self.page_size < 1 or self.page_size > 200:
            self.page_size = DEFAULT_PAGE_SIZE
        if self.max_records < 1:
            self.max_records = DEFAULT_MAX_RECORDS
        if self.window_days < 1:
            self.window_days = DEFAULT_WINDOW_DAYS
        if self.poll_attempts < 1:
            self.poll_attempts = 1
        if self.poll_interval_sec < 0:
            self.poll_interval_sec = DEFAULT_POLL_INTERVAL_SEC

    @property
    def network_passphrase(self) -> str:
        return NETWORK_PASSPHRASES[self.network]

    def validate_for_commit(self) -> None:
        """Raise ConfigError unless endpoints are set and the contract id is well-formed."""
        if not self.horizon_url:
            raise ConfigError("HORIZON_URL must be non-empty")
        if not self.soroban_rpc_url:
            raise ConfigError("SOROBAN_RPC_URL must be non-empty")
        if not self.contract_id:
            raise ConfigError("RISK_TIER_CONTRACT_ID must be set to commit scores")
        try:
            require_contract_id(self.contract_id)
        except ValidationError as e:
            raise ConfigError(f"RISK_TIER_CONTRACT_ID: {e}") from e


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process settings built from the environment (cached)."""
    return Settings()
