"""
Environment variable loading for RiskTier.

- STELLAR_NETWORK: testnet | mainnet | futurenet (default: testnet)
- HORIZON_URL: Horizon endpoint (default per network)
- SOROBAN_RPC_URL: Soroban RPC endpoint (default per network)
- RISK_TIER_CONTRACT_ID: deployed risk tier contract (C..., 56 chars)
- Loads .env from project root when available.
"""

from __future__ import annotations

import os
from pathlib import Path

# Project root: config is backend_risktier/config/, root is 2 levels up
_CONFIG_DIR = Path(__file__).resolve().parent
_BACKEND_DIR = _CONFIG_DIR.parent
_ROOT = _BACKEND_DIR.parent
_ENV_PATH = _ROOT / ".env"

NETWORK_PASSPHRASES = {
    "testnet": "Test SDF Network ; September 2015",
    "mainnet": "Public Global Stellar Network ; September 2015",
    "futurenet": "Test SDF Future Network ; October 2022",
}
HORIZON_URLS = {
    "testnet": "https://horizon-testnet.stellar.org",
    "mainnet": "https://horizon.stellar.org",
    "futurenet": "https://horizon-futurenet.stellar.org",
}
SOROBAN_RPC_URLS = {
    "testnet": "https://soroban-testnet.stellar.org",
    "mainnet": "https://mainnet.sorobanrpc.com",
    "futurenet": "https://rpc-futurenet.stellar.org",
}


def load_risktier_env() -> None:
    """Load .env from project root. Safe to call multiple times."""
    from dotenv import load_dotenv

    load_dotenv(_ENV_PATH)


def get_stellar_network() -> str:
    """
    Return STELLAR_NETWORK from env: testnet | mainnet | futurenet.
    Default: testnet. "public" and "pubnet" are accepted for mainnet.
    """
    load_risktier_env()
    raw = (os.getenv("STELLAR_NETWORK") or "testnet").strip().lower()
    if raw in ("mainnet", "public", "pubnet"):
        return "mainnet"
    if raw == "futurenet":
        return "futurenet"
    return "testnet"


def get_horizon_url() -> str:
    """HORIZON_URL from env, else the default for the current network."""
    load_risktier_env()
    url = (os.getenv("HORIZON_URL") or "").strip()
    return url.rstrip("/") if url else HORIZON_URLS[get_stellar_network()]


def get_soroban_rpc_url() -> str:
    """SOROBAN_RPC_URL from env, else the default for the current network."""
    load_risktier_env()
    url = (os.getenv("SOROBAN_RPC_URL") or "").strip()
    return url if url else SOROBAN_RPC_URLS[get_stellar_network()]


def get_contract_id() -> str:
    """RISK_TIER_CONTRACT_ID from env; empty string when unset."""
    load_risktier_env()
    return (os.getenv("RISK_TIER_CONTRACT_ID") or "").strip()


def get_database_url() -> str:
    """RISKTIER_DB_URL or DATABASE_URL; else SQLite at RISKTIER_DB_PATH (default risktier.db)."""
    load_risktier_env()
    url = (os.getenv("RISKTIER_DB_URL") or os.getenv("DATABASE_URL") or "").strip()
    if url:
        return url
    path = (os.getenv("RISKTIER_DB_PATH") or "").strip() or "risktier.db"
    return f"sqlite:///{path}"
