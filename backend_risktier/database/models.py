"""
SQLAlchemy models for the durable key-value store.

One row per key; value is a JSON document. Rate-limit records live under
rate_limit:<address> and fallback commits under fallback_commit:<address>.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import BigInteger, Column, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class KeyValueEntry(Base):
    """Address-keyed JSON document with last update time (Unix ms)."""

    __tablename__ = "kv_entries"

    key = Column(String(160), primary_key=True)
    value_json = Column(Text, nullable=False)
    updated_at = Column(BigInteger, nullable=False, index=True)

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "value_json": self.value_json, "updated_at": self.updated_at}
