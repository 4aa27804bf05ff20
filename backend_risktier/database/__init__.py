"""
Database layer — durable key-value store for rate-limit records and fallback commits.
"""

from backend_risktier.database.store import KeyValueStore, MemoryStore, SqlStore

__all__ = ["KeyValueStore", "MemoryStore", "SqlStore"]
