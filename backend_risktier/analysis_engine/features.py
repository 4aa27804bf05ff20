"""
Behavioral feature extraction from an address's payment history.

Reduces a list of TransactionRecord into the fixed RiskMetrics vector:
total volume, unique counterparties, asset diversity, and night/day ratio.
No scoring logic here.
"""

from __future__ import annotations

from typing import Iterable

from backend_risktier.analysis_engine.models import RiskMetrics
from backend_risktier.ingestion.models import TransactionRecord
from backend_risktier.risk_logging import get_logger, short_wallet

logger = get_logger(__name__)

# Approximate non-native -> XLM rate. A simplification, not a price oracle.
NON_NATIVE_CONVERSION_RATE = 0.1
NIGHT_START_HOUR = 22
NIGHT_END_HOUR = 6


def is_night_hour(hour: int) -> bool:
    """22:00-06:59 UTC counts as night (hour >= 22 or hour <= 6)."""
    return hour >= NIGHT_START_HOUR or hour <= NIGHT_END_HOUR


def native_amount(record: TransactionRecord) -> float:
    """Amount in XLM terms; non-native assets use the fixed conversion rate."""
    if record.is_native:
        return record.amount
    return record.amount * NON_NATIVE_CONVERSION_RATE


def reduce(
    records: Iterable[TransactionRecord],
    address: str,
    *,
    total_transactions: int = 0,
) -> RiskMetrics:
    """
    Convert payment history into a RiskMetrics vector.

    An empty record set yields all-zero metrics (not an error).

    Args:
        records: Payment records from HorizonLedgerClient.fetch_window.
        address: The analyzed address; excluded from counterparties.
        total_transactions: Optional transaction count for context (not scored).
    """
    records = list(records)
    if not records:
        return RiskMetrics(total_transactions=total_transactions)

    total_volume = 0.0
    counterparties: set[str] = set()
    assets: set[str] = set()
    night = 0
    day = 0

    for record in records:
        total_volume += native_amount(record)
        counterparties.add(record.from_address)
        counterparties.add(record.to_address)
        assets.add(record.asset_id)
        if is_night_hour(record.hour):
            night += 1
        else:
            day += 1

    counterparties.discard(address)
    counterparties.discard("")
    night_day_ratio = night / day if day > 0 else 0.0
    n = len(records)

    metrics = RiskMetrics(
        total_volume=round(total_volume, 2),
        unique_counterparties=len(counterparties),
        asset_diversity=len(assets),
        night_day_ratio=round(night_day_ratio, 2),
        total_payments=n,
        total_transactions=total_transactions,
        average_transaction_size=round(total_volume / n, 2),
    )
    logger.debug(
        "features_extracted",
        wallet_id=short_wallet(address),
        total_payments=n,
        unique_counterparties=metrics.unique_counterparties,
        asset_diversity=metrics.asset_diversity,
    )
    return metrics
