"""
Data models for Horizon ingestion output.

TransactionRecord is the normalized unit the feature extractor consumes;
LedgerWindow wraps one bounded fetch; AccountInfo carries the sequence number
the commit pipeline needs to build a transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

NATIVE_ASSET_ID = "XLM"


def parse_horizon_time(value: str) -> datetime:
    """Parse Horizon's ISO 8601 created_at (e.g. 2024-05-01T12:00:00Z) as an aware UTC datetime."""
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class TransactionRecord:
    """
    One payment-like operation involving the analyzed address.

    Mirrors Horizon /payments record fields; create_account records map
    funder -> from_address, account -> to_address, starting_balance -> amount.
    """

    id: str
    created_at: datetime
    from_address: str
    to_address: str
    asset_id: str
    amount: float
    asset_type: str = "native"
    type: str = "payment"

    @property
    def hour(self) -> int:
        """UTC hour of day (0-23)."""
        return self.created_at.hour

    @property
    def is_native(self) -> bool:
        return self.asset_type == "native" or self.asset_id == NATIVE_ASSET_ID

    @classmethod
    def from_horizon(cls, item: dict[str, Any]) -> "TransactionRecord":
        """Build from a single Horizon payments record."""
        op_type = item.get("type") or "payment"
        if op_type == "create_account":
            sender = item.get("funder") or ""
            receiver = item.get("account") or ""
            amount = _to_float(item.get("starting_balance"))
        elif op_type == "account_merge":
            sender = item.get("account") or ""
            receiver = item.get("into") or ""
            amount = _to_float(item.get("amount"))
        else:
            sender = item.get("from") or ""
            receiver = item.get("to") or ""
            amount = _to_float(item.get("amount"))
        asset_type = item.get("asset_type") or "native"
        asset_id = NATIVE_ASSET_ID if asset_type == "native" else (item.get("asset_code") or NATIVE_ASSET_ID)
        return cls(
            id=str(item.get("id") or ""),
            created_at=parse_horizon_time(item["created_at"]),
            from_address=sender,
            to_address=receiver,
            asset_id=asset_id,
            amount=amount,
            asset_type=asset_type,
            type=op_type,
        )


@dataclass(frozen=True)
class LedgerWindow:
    """Result of a bounded history fetch. truncated=True when the cap or a page error cut it short."""

    records: list[Any] = field(default_factory=list)
    truncated: bool = False
    window_days: int = 30
    pages: int = 0

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class AccountInfo:
    """Account id and current sequence number from Horizon /accounts/{id}."""

    account_id: str
    sequence: int

    @classmethod
    def from_horizon(cls, data: dict[str, Any]) -> "AccountInfo":
        return cls(account_id=str(data["account_id"]), sequence=int(data["sequence"]))
