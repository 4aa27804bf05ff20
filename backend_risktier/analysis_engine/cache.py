"""
Analysis cache — last analysis per address, fresh for one hour.

Concurrent requests for the same address share one in-flight computation,
so re-entrant calls never trigger a second Horizon fetch. Failed
computations are not cached. Keyed strictly by address; no cross-address
locking.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from backend_risktier.analysis_engine.models import FRESHNESS_WINDOW_MS
from backend_risktier.core.clock import Clock, SystemClock
from backend_risktier.risk_logging import get_logger, short_wallet

logger = get_logger(__name__)


class AnalysisCache:
    """Per-session memo of analyses. Values must expose computed_at (Unix ms)."""

    def __init__(self, clock: Clock | None = None, freshness_ms: int = FRESHNESS_WINDOW_MS) -> None:
        self._clock = clock or SystemClock()
        self._freshness_ms = freshness_ms
        self._entries: dict[str, Any] = {}
        self._inflight: dict[str, asyncio.Task] = {}

    def is_fresh(self, value: Any) -> bool:
        return self._clock.now_ms() - int(value.computed_at) < self._freshness_ms

    def get(self, address: str) -> Any | None:
        """Return the cached value if still fresh; drop it otherwise."""
        value = self._entries.get(address)
        if value is None:
            return None
        if not self.is_fresh(value):
            self._entries.pop(address, None)
            return None
        return value

    def put(self, address: str, value: Any) -> None:
        self._entries[address] = value

    def invalidate(self, address: str) -> None:
        self._entries.pop(address, None)

    def in_flight(self, address: str) -> bool:
        return address in self._inflight

    async def get_or_compute(
        self,
        address: str,
        compute: Callable[[], Awaitable[Any]],
        *,
        force_refresh: bool = False,
    ) -> Any:
        """
        Return a fresh cached value or run compute() once for this address.

        Callers arriving while a computation is running await the same task.
        Cancelling one caller does not cancel the shared computation.
        """
        if not force_refresh:
            cached = self.get(address)
            if cached is not None:
                logger.debug("analysis_cache_hit", wallet_id=short_wallet(address))
                return cached

        task = self._inflight.get(address)
        if task is None:
            task = asyncio.ensure_future(self._run(address, compute))
            self._inflight[address] = task
        else:
            logger.debug("analysis_cache_join_inflight", wallet_id=short_wallet(address))
        return await asyncio.shield(task)

    async def _run(self, address: str, compute: Callable[[], Awaitable[Any]]) -> Any:
        try:
            value = await compute()
            self.put(address, value)
            return value
        finally:
            self._inflight.pop(address, None)
