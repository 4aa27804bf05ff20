"""
FastAPI server — risk analysis and commit endpoints over one RiskTierService.

GET  /health                 liveness plus network and signer status
GET  /risk/{address}         cached (< 1h) risk analysis; ?refresh=true forces a recompute
GET  /rate-limit/{address}   24h commit window status
POST /commit                 analyze and commit with the server-side signer (503 without one)
GET  /fallback/{address}     locally stored commit written when the chain was unreachable

The service is created in the lifespan from Settings unless create_app() is
given one (tests inject a service wired to fakes).
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from backend_risktier import __version__
from backend_risktier.core.exceptions import ConfigError, ValidationError
from backend_risktier.oracle.commit_pipeline import CommitErrorKind
from backend_risktier.risk_logging import get_logger, short_wallet
from backend_risktier.service import RiskTierService

logger = get_logger(__name__)


# -----------------------------------------------------------------------------
# Request / response models
# -----------------------------------------------------------------------------


class RiskResponse(BaseModel):
    """GET /risk/{address} response."""

    address: str = Field(..., description="Stellar address (G... or C...)")
    risk_score: int = Field(..., ge=0, le=100, description="Risk score (0 safest, 100 riskiest)")
    tier: str = Field(..., description="TIER_1, TIER_2 or TIER_3")
    confidence: int = Field(..., ge=0, le=100)
    explanation: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    raw_metrics: dict[str, Any] = Field(default_factory=dict)
    normalized_features: dict[str, float] = Field(default_factory=dict)
    feature_importance: dict[str, dict[str, Any]] = Field(default_factory=dict)
    model_version: str = ""
    computed_at: int = Field(..., description="Unix ms when the analysis was computed")
    data_quality: dict[str, Any] = Field(default_factory=dict)
    truncated: bool = Field(False, description="True when history was cut short by the record cap or a page error")
    pages: int = 0
    record_count: int = 0


class RateLimitResponse(BaseModel):
    """GET /rate-limit/{address} response."""

    address: str
    can_commit: bool
    remaining_ms: int
    remaining: str
    state: str
    last_commit_at: int | None = None
    next_eligible_at: int | None = None


class CommitRequest(BaseModel):
    """POST /commit body."""

    address: str = Field(..., min_length=1, max_length=64, description="Stellar address to commit")
    chosen_tier: str | None = Field(None, description="Tier to publish; defaults to the computed tier")


class CommitResponse(BaseModel):
    """POST /commit response (CommitResult)."""

    successful: bool
    address: str
    score: int
    tier: str
    chosen_tier: str
    method: str | None = None
    tx_hash: str | None = None
    error: str | None = None
    error_kind: str | None = None
    pending_confirmation: bool = False
    authoritative: bool = False
    next_eligible_at: int | None = None
    final_state: str
    ledger: int | None = None


class FallbackResponse(BaseModel):
    """GET /fallback/{address} response."""

    address: str
    score: int
    tier: str
    chosen_tier: str
    timestamp: int
    tx_hash: str | None = None
    reason: str = ""


# -----------------------------------------------------------------------------
# App factory and dependency
# -----------------------------------------------------------------------------


def get_service(request: Request) -> RiskTierService:
    """Dependency: the app-scoped RiskTierService."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


def create_app(service: RiskTierService | None = None) -> FastAPI:
    """Build the FastAPI app. Without a service, one is created from Settings on startup and closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = False
        if getattr(app.state, "service", None) is None:
            app.state.service = RiskTierService.from_settings()
            owned = True
            logger.info(
                "api_service_started",
                network=app.state.service.settings.network,
                can_commit=app.state.service.can_commit,
            )
        yield
        if owned:
            await app.state.service.aclose()
            app.state.service = None
            logger.info("api_service_stopped")

    app = FastAPI(
        title="Backend RiskTier API",
        description="Stellar address risk analysis and risk tier commits.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.service = service
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    def health(service: RiskTierService = Depends(get_service)) -> dict[str, Any]:
        """Liveness check."""
        return {
            "status": "ok",
            "network": service.settings.network,
            "can_commit": service.can_commit,
        }

    @app.get("/risk/{address}", response_model=RiskResponse)
    async def get_risk(
        address: str,
        refresh: bool = False,
        service: RiskTierService = Depends(get_service),
    ) -> RiskResponse:
        """Risk analysis for address. Served from cache while under one hour old."""
        try:
            analysis = await service.analyze(address.strip(), force_refresh=refresh)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return RiskResponse(**analysis.to_dict())

    @app.get("/rate-limit/{address}", response_model=RateLimitResponse)
    def get_rate_limit(address: str, service: RiskTierService = Depends(get_service)) -> RateLimitResponse:
        try:
            status = service.rate_limit_status(address.strip())
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return RateLimitResponse(address=address.strip(), **status.to_dict())

    @app.post("/commit", response_model=CommitResponse)
    async def post_commit(body: CommitRequest, service: RiskTierService = Depends(get_service)) -> JSONResponse:
        """
        Analyze and commit. 429 while the address is rate limited, 503 when
        no signer or contract is configured. Chain failures and user
        cancellations come back as 200 with successful=false.
        """
        address = body.address.strip()
        try:
            result = await service.commit(address, chosen_tier=body.chosen_tier)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except ConfigError as e:
            logger.warning("api_commit_unavailable", wallet_id=short_wallet(address), error=str(e))
            raise HTTPException(status_code=503, detail=str(e))
        status_code = 429 if result.error_kind == CommitErrorKind.RATE_LIMITED else 200
        return JSONResponse(
            status_code=status_code,
            content=CommitResponse(**result.to_dict()).model_dump(),
        )

    @app.get("/fallback/{address}", response_model=FallbackResponse)
    def get_fallback(address: str, service: RiskTierService = Depends(get_service)) -> FallbackResponse:
        try:
            record = service.fallback_record(address.strip())
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if record is None:
            raise HTTPException(status_code=404, detail=f"No fallback commit for {short_wallet(address)}")
        return FallbackResponse(**record.to_dict())


app = create_app()
