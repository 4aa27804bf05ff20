"""
Configuration management for Backend RiskTier.

Loads settings from environment variables and an optional .env file.
Exposes a single source of truth for ledger, contract, and storage configuration.
"""

from backend_risktier.config.settings import Settings, get_settings  # noqa: F401

__all__ = ["Settings", "get_settings"]
