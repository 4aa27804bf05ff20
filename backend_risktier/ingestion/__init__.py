"""
Ingestion — bounded history fetch from the Horizon ledger API.

HorizonLedgerClient is the only network-facing leaf used for analysis;
records are normalized into TransactionRecord for the feature extractor.
"""

from backend_risktier.ingestion.horizon_client import HorizonLedgerClient, extract_cursor
from backend_risktier.ingestion.models import AccountInfo, LedgerWindow, TransactionRecord

__all__ = ["AccountInfo", "HorizonLedgerClient", "LedgerWindow", "TransactionRecord", "extract_cursor"]
