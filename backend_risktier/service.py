"""
RiskTierService — one session's wiring of ingestion, scoring, cache, rate limiter, and commit pipeline.

Callers (API server, CLI) hold one service per process:

    async with RiskTierService.from_settings() as service:
        analysis = await service.analyze(address)
        result = await service.commit(address)

analyze() goes through the AnalysisCache so repeated or concurrent requests
for one address within an hour reuse a single Horizon fetch. commit() needs
a Signer; without one it raises ConfigError.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from backend_risktier.analysis_engine.cache import AnalysisCache
from backend_risktier.analysis_engine.features import reduce
from backend_risktier.analysis_engine.models import DataQuality, RiskAnalysisResult, Tier
from backend_risktier.analysis_engine.scorer import RiskScorer, data_quality
from backend_risktier.config.settings import Settings, get_settings
from backend_risktier.core.clock import Clock, SystemClock
from backend_risktier.core.exceptions import ConfigError
from backend_risktier.database.store import KeyValueStore, SqlStore
from backend_risktier.ingestion.horizon_client import HorizonLedgerClient
from backend_risktier.oracle.commit_pipeline import CommitPipeline, CommitResult, FallbackCommit, load_fallback
from backend_risktier.oracle.envelope import EnvelopeBuilder, StellarEnvelopeBuilder
from backend_risktier.oracle.rate_limiter import RateLimiter, RateLimitStatus
from backend_risktier.oracle.signer import KeypairSigner, Signer
from backend_risktier.oracle.soroban_rpc import SorobanRpcClient
from backend_risktier.risk_logging import get_logger, short_wallet
from backend_risktier.utils.address_utils import require_address

logger = get_logger(__name__)


@dataclass
class RiskAnalysis:
    """Score plus the window metadata it was computed from."""

    address: str
    result: RiskAnalysisResult
    data_quality: DataQuality
    truncated: bool = False
    pages: int = 0
    record_count: int = 0

    @property
    def computed_at(self) -> int:
        return self.result.computed_at

    def to_dict(self) -> dict[str, Any]:
        out = self.result.to_dict()
        out.update(
            {
                "address": self.address,
                "data_quality": self.data_quality.to_dict(),
                "truncated": self.truncated,
                "pages": self.pages,
                "record_count": self.record_count,
            }
        )
        return out


class RiskTierService:
    """Session facade over the analysis and commit components."""

    def __init__(
        self,
        *,
        settings: Settings,
        ledger: HorizonLedgerClient,
        store: KeyValueStore,
        clock: Clock | None = None,
        scorer: RiskScorer | None = None,
        rpc: SorobanRpcClient | None = None,
        builder: EnvelopeBuilder | None = None,
        signer: Signer | None = None,
    ) -> None:
        self._settings = settings
        self._ledger = ledger
        self._store = store
        self._clock = clock or SystemClock()
        self._scorer = scorer or RiskScorer()
        self._rpc = rpc
        self._builder = builder
        self._signer = signer
        self._cache = AnalysisCache(self._clock)
        self._rate_limiter = RateLimiter(store, self._clock)
        self._pipeline: CommitPipeline | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        clock: Clock | None = None,
        signer: Signer | None = None,
    ) -> "RiskTierService":
        """Build clients from Settings. A KeypairSigner is created when ORACLE_SECRET_KEY is set."""
        settings = settings or get_settings()
        clock = clock or SystemClock()
        ledger = HorizonLedgerClient(
            settings.horizon_url,
            clock=clock,
            page_size=settings.page_size,
            max_records=settings.max_records,
            timeout=settings.http_timeout_sec,
        )
        rpc = SorobanRpcClient(settings.soroban_rpc_url, timeout=settings.http_timeout_sec)
        if signer is None and settings.oracle_secret_key:
            signer = KeypairSigner(settings.oracle_secret_key, settings.network_passphrase)
        return cls(
            settings=settings,
            ledger=ledger,
            store=SqlStore(settings.database_url),
            clock=clock,
            rpc=rpc,
            builder=StellarEnvelopeBuilder(settings.network_passphrase, rpc),
            signer=signer,
        )

    async def __aenter__(self) -> "RiskTierService":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._ledger.aclose()
        if self._rpc is not None:
            await self._rpc.aclose()
        dispose = getattr(self._store, "dispose", None)
        if callable(dispose):
            dispose()

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def can_commit(self) -> bool:
        """True when a signer is configured."""
        return self._signer is not None

    # -------------------------------------------------------------------------
    # Analysis
    # -------------------------------------------------------------------------

    async def analyze(self, address: str, *, force_refresh: bool = False) -> RiskAnalysis:
        """Return a fresh (< 1h) analysis for address, computing it at most once concurrently."""
        address = require_address(address)

        async def compute() -> RiskAnalysis:
            window_days = self._settings.window_days
            payments, transactions = await asyncio.gather(
                self._ledger.fetch_window(address, window_days),
                self._ledger.fetch_transactions_window(address, window_days),
            )
            metrics = reduce(payments.records, address, total_transactions=len(transactions))
            result = self._scorer.score(metrics, computed_at=self._clock.now_ms())
            analysis = RiskAnalysis(
                address=address,
                result=result,
                data_quality=data_quality(metrics),
                truncated=payments.truncated,
                pages=payments.pages,
                record_count=len(payments),
            )
            logger.info(
                "risk_analysis_computed",
                wallet_id=short_wallet(address),
                risk_score=result.risk_score,
                tier=result.tier.value,
                confidence=result.confidence,
                records=len(payments),
                truncated=payments.truncated,
            )
            return analysis

        return await self._cache.get_or_compute(address, compute, force_refresh=force_refresh)

    def invalidate(self, address: str) -> None:
        self._cache.invalidate(address)

    # -------------------------------------------------------------------------
    # Commit
    # -------------------------------------------------------------------------

    def rate_limit_status(self, address: str) -> RateLimitStatus:
        return self._rate_limiter.check(require_address(address))

    def fallback_record(self, address: str) -> FallbackCommit | None:
        return load_fallback(self._store, require_address(address))

    def _require_pipeline(self) -> CommitPipeline:
        if self._pipeline is not None:
            return self._pipeline
        if self._signer is None:
            raise ConfigError("No signer configured; set ORACLE_SECRET_KEY to commit scores")
        if self._rpc is None or self._builder is None:
            raise ConfigError("Soroban RPC client and envelope builder are required to commit scores")
        self._settings.validate_for_commit()
        self._pipeline = CommitPipeline(
            ledger=self._ledger,
            rpc=self._rpc,
            builder=self._builder,
            signer=self._signer,
            rate_limiter=self._rate_limiter,
            store=self._store,
            contract_id=self._settings.contract_id,
            clock=self._clock,
            contract_method=self._settings.contract_method,
            poll_attempts=self._settings.poll_attempts,
            poll_interval_sec=self._settings.poll_interval_sec,
            base_fee=self._settings.base_fee,
            timeout_sec=self._settings.tx_timeout_sec,
        )
        return self._pipeline

    async def commit(self, address: str, *, chosen_tier: Tier | str | None = None) -> CommitResult:
        """
        Analyze (cached) and commit address's score.

        Returns error_kind=rate_limited with next_eligible_at while the
        address is inside its 24h window. Raises ConfigError without a
        signer and ValidationError for bad input.
        """
        pipeline = self._require_pipeline()
        analysis = await self.analyze(address)
        return await pipeline.commit_analysis(analysis.address, analysis.result, chosen_tier=chosen_tier)
