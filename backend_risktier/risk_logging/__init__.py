"""
Structured logging for Backend RiskTier.

JSON logs with timestamp, wallet_id, event_type.
Use get_logger() in all pipeline modules.
"""

from backend_risktier.risk_logging.logger import bind_wallet, get_logger, short_wallet

__all__ = ["bind_wallet", "get_logger", "short_wallet"]
