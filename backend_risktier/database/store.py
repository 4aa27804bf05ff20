"""
Durable key-value store used by the rate limiter and the fallback commit path.

KeyValueStore is the capability the pipeline depends on ({get, set, delete}
per key). MemoryStore is process-local; SqlStore persists through SQLAlchemy
(SQLite by default, PostgreSQL via DATABASE_URL) and survives restarts.
"""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from typing import Any, Iterator, Protocol

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from backend_risktier.database.models import Base, KeyValueEntry
from backend_risktier.risk_logging import get_logger

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    """Minimal persistence capability: JSON-serializable dicts by string key."""

    def get(self, key: str) -> dict[str, Any] | None:
        ...

    def set(self, key: str, value: dict[str, Any]) -> None:
        ...

    def delete(self, key: str) -> None:
        ...

    def keys(self, prefix: str = "") -> list[str]:
        ...


class MemoryStore:
    """Dict-backed store; values are JSON round-tripped so callers never share references."""

    def __init__(self) -> None:
        self._data: dict[str, str] = {}

    def get(self, key: str) -> dict[str, Any] | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: dict[str, Any]) -> None:
        self._data[key] = json.dumps(value, sort_keys=True)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class SqlStore:
    """SQLAlchemy-backed store over the kv_entries table."""

    def __init__(self, database_url: str) -> None:
        engine_kwargs: dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection, or each executor thread sees its own empty database
                engine_kwargs["poolclass"] = StaticPool
        self._engine = create_engine(database_url, future=True, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self._engine, expire_on_commit=False)
        Base.metadata.create_all(self._engine)
        logger.info("kv_store_ready", backend=self._engine.dialect.name)

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._session() as s:
            row = s.get(KeyValueEntry, key)
            if row is None:
                return None
            return json.loads(row.value_json)

    def set(self, key: str, value: dict[str, Any]) -> None:
        payload = json.dumps(value, sort_keys=True)
        now_ms = int(time.time() * 1000)
        with self._session() as s:
            row = s.get(KeyValueEntry, key)
            if row is None:
                s.add(KeyValueEntry(key=key, value_json=payload, updated_at=now_ms))
            else:
                row.value_json = payload
                row.updated_at = now_ms

    def delete(self, key: str) -> None:
        with self._session() as s:
            row = s.get(KeyValueEntry, key)
            if row is not None:
                s.delete(row)

    def keys(self, prefix: str = "") -> list[str]:
        with self._session() as s:
            q = s.query(KeyValueEntry.key)
            if prefix:
                q = q.filter(KeyValueEntry.key.startswith(prefix))
            return sorted(k for (k,) in q.all())

    def dispose(self) -> None:
        self._engine.dispose()
