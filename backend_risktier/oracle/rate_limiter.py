"""
Per-address commit rate limiter: at most one successful commit per rolling 24 hours.

State per address: NEVER_COMMITTED -> COOLDOWN -> ELIGIBLE -> COOLDOWN -> ...
check() is read-only; record() is the only mutation and the commit pipeline
calls it only after a confirmed or fallback-accepted commit. Absolute Unix
ms timestamps are stored (not countdowns) so restarts and clock changes do
not extend or reset the window.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any

from backend_risktier.core.clock import Clock, SystemClock
from backend_risktier.database.store import KeyValueStore
from backend_risktier.risk_logging import get_logger, short_wallet

logger = get_logger(__name__)

RATE_LIMIT_HOURS = 24
RATE_LIMIT_MS = RATE_LIMIT_HOURS * 60 * 60 * 1000
KEY_PREFIX = "rate_limit:"


class RateLimitState(str, Enum):
    NEVER_COMMITTED = "never_committed"
    COOLDOWN = "cooldown"
    ELIGIBLE = "eligible"


@dataclass(frozen=True)
class RateLimitStatus:
    """Result of check(): whether a commit may proceed and when the next one is allowed."""

    can_commit: bool
    remaining_ms: int
    state: RateLimitState
    last_commit_at: int | None = None
    next_eligible_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["state"] = self.state.value
        out["remaining"] = format_remaining(self.remaining_ms)
        return out


def format_remaining(remaining_ms: int) -> str:
    """Human-readable remaining time, e.g. "3 hours 12 minutes"."""
    if remaining_ms <= 0:
        return "Update now"
    hours = remaining_ms // (60 * 60 * 1000)
    minutes = (remaining_ms % (60 * 60 * 1000)) // (60 * 1000)
    if hours > 0:
        return f"{hours} hours {minutes} minutes"
    return f"{minutes} minutes"


class RateLimiter:
    """Gate commits per address using last-commit timestamps in a KeyValueStore."""

    def __init__(
        self,
        store: KeyValueStore,
        clock: Clock | None = None,
        window_ms: int = RATE_LIMIT_MS,
    ) -> None:
        self._store = store
        self._clock = clock or SystemClock()
        self._window_ms = window_ms

    @property
    def window_ms(self) -> int:
        return self._window_ms

    @staticmethod
    def _key(address: str) -> str:
        return f"{KEY_PREFIX}{address}"

    def last_commit_at(self, address: str) -> int | None:
        record = self._store.get(self._key(address))
        if not record:
            return None
        try:
            return int(record["last_commit_at"])
        except (KeyError, TypeError, ValueError):
            logger.warning("rate_limit_record_corrupt", wallet_id=short_wallet(address))
            return None

    def check(self, address: str) -> RateLimitStatus:
        """Return whether address may commit now. No side effects."""
        last = self.last_commit_at(address)
        if last is None:
            return RateLimitStatus(can_commit=True, remaining_ms=0, state=RateLimitState.NEVER_COMMITTED)

        now = self._clock.now_ms()
        # A timestamp ahead of the local clock counts as "just committed"
        elapsed = max(0, now - last)
        if elapsed >= self._window_ms:
            return RateLimitStatus(
                can_commit=True,
                remaining_ms=0,
                state=RateLimitState.ELIGIBLE,
                last_commit_at=last,
            )
        remaining = self._window_ms - elapsed
        return RateLimitStatus(
            can_commit=False,
            remaining_ms=remaining,
            state=RateLimitState.COOLDOWN,
            last_commit_at=last,
            next_eligible_at=now + remaining,
        )

    def record(self, address: str) -> int:
        """Store now as the last successful commit for address. Returns the timestamp."""
        now = self._clock.now_ms()
        self._store.set(self._key(address), {"address": address, "last_commit_at": now})
        logger.info(
            "rate_limit_recorded",
            wallet_id=short_wallet(address),
            last_commit_at=now,
            next_eligible_at=now + self._window_ms,
        )
        return now

    def clear(self, address: str) -> None:
        """Administrative reset for one address."""
        self._store.delete(self._key(address))
        logger.info("rate_limit_cleared", wallet_id=short_wallet(address))
