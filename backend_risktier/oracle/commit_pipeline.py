"""
Commit pipeline: publish a risk score and tier to the risk tier contract.

One commit runs the state machine

    IDLE -> BUILDING -> AWAITING_SIGNATURE -> SUBMITTED -> POLLING
         -> CONFIRMED | FAILED | FALLBACK

- BUILDING: validate inputs, load the account sequence from Horizon, build
  (and simulate) the unsigned envelope. An unknown account, a rejected
  Horizon request, or an envelope the SDK cannot build is FAILED; a Horizon
  outage goes to FALLBACK.
- AWAITING_SIGNATURE: hand the envelope to the Signer. A user cancellation
  ends in FAILED with error_kind=user_cancelled; nothing is persisted.
- SUBMITTED: sendTransaction. ERROR is a terminal rejection (FAILED, no
  fallback); TRY_AGAIN_LATER or a transport failure goes to FALLBACK.
- POLLING: getTransaction up to poll_attempts times, poll_interval_sec apart
  on the injected clock. SUCCESS -> CONFIRMED, FAILED -> FAILED. Running out
  of attempts, or a lookup the RPC rejects as malformed, ends in CONFIRMED
  with pending_confirmation=True (soft success: the network accepted the
  transaction but finality was not observed). max_poll_errors consecutive
  transient lookup failures go to FALLBACK.
- FALLBACK: persist a FallbackCommit to the key-value store and report a
  non-authoritative success.

The rate limiter is recorded only on CONFIRMED and FALLBACK. Commits for the
same address are serialized with a per-address lock, dropped once idle.
Store and rate-limiter I/O runs in the default executor so a database-backed
store does not block the event loop. Cancelling the task awaiting commit()
stops the run where it is.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Protocol, TypeVar

from backend_risktier.analysis_engine.models import RiskAnalysisResult, Tier, tier_for_score
from backend_risktier.core.clock import Clock, SystemClock
from backend_risktier.core.exceptions import (
    AccountNotFoundError,
    LedgerRequestError,
    LedgerUnavailableError,
    SignerRejectedError,
    TerminalSubmissionError,
    TransientSubmissionError,
    ValidationError,
)
from backend_risktier.database.store import KeyValueStore
from backend_risktier.ingestion.models import AccountInfo
from backend_risktier.oracle.envelope import (
    METHOD_SET_RISK_TIER,
    ContractInvocation,
    EnvelopeBuilder,
)
from backend_risktier.oracle.rate_limiter import RateLimiter, format_remaining
from backend_risktier.oracle.signer import Signer
from backend_risktier.oracle.soroban_rpc import SendResult, SendStatus, TxLookup, TxStatus
from backend_risktier.risk_logging import get_logger, short_wallet
from backend_risktier.utils.address_utils import require_address, require_contract_id

logger = get_logger(__name__)

T = TypeVar("T")

FALLBACK_KEY_PREFIX = "fallback_commit:"
DEFAULT_POLL_ATTEMPTS = 15
DEFAULT_POLL_INTERVAL_SEC = 3.0
DEFAULT_BASE_FEE = 10_000
DEFAULT_TIMEOUT_SEC = 30
DEFAULT_MAX_POLL_ERRORS = 3


class CommitState(str, Enum):
    IDLE = "IDLE"
    BUILDING = "BUILDING"
    AWAITING_SIGNATURE = "AWAITING_SIGNATURE"
    SUBMITTED = "SUBMITTED"
    POLLING = "POLLING"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    FALLBACK = "FALLBACK"


class CommitMethod(str, Enum):
    CHAIN = "chain"
    LOCAL_FALLBACK = "local_fallback"


class CommitErrorKind(str, Enum):
    USER_CANCELLED = "user_cancelled"
    TERMINAL = "terminal"
    RATE_LIMITED = "rate_limited"


class AccountSource(Protocol):
    async def get_account(self, address: str) -> AccountInfo:
        ...


class SubmissionRpc(Protocol):
    async def send_transaction(self, signed_xdr: str) -> SendResult:
        ...

    async def get_transaction(self, tx_hash: str) -> TxLookup:
        ...


@dataclass
class CommitResult:
    """Outcome of one commit attempt."""

    successful: bool
    address: str
    score: int
    tier: Tier
    chosen_tier: Tier
    method: CommitMethod | None = None
    tx_hash: str | None = None
    error: str | None = None
    error_kind: CommitErrorKind | None = None
    pending_confirmation: bool = False
    authoritative: bool = False
    next_eligible_at: int | None = None
    final_state: CommitState = CommitState.IDLE
    ledger: int | None = None
    transitions: list[CommitState] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful": self.successful,
            "address": self.address,
            "score": self.score,
            "tier": self.tier.value,
            "chosen_tier": self.chosen_tier.value,
            "method": self.method.value if self.method else None,
            "tx_hash": self.tx_hash,
            "error": self.error,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "pending_confirmation": self.pending_confirmation,
            "authoritative": self.authoritative,
            "next_eligible_at": self.next_eligible_at,
            "final_state": self.final_state.value,
            "ledger": self.ledger,
        }


@dataclass(frozen=True)
class FallbackCommit:
    """Locally persisted commit, written when the chain could not be reached."""

    address: str
    score: int
    tier: str
    chosen_tier: str
    timestamp: int
    tx_hash: str | None
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FallbackCommit":
        return cls(
            address=str(data["address"]),
            score=int(data["score"]),
            tier=str(data["tier"]),
            chosen_tier=str(data.get("chosen_tier") or data["tier"]),
            timestamp=int(data["timestamp"]),
            tx_hash=data.get("tx_hash"),
            reason=str(data.get("reason") or ""),
        )


def load_fallback(store: KeyValueStore, address: str) -> FallbackCommit | None:
    """Return the locally persisted commit for address, if any."""
    data = store.get(f"{FALLBACK_KEY_PREFIX}{address}")
    return FallbackCommit.from_dict(data) if data else None


def _coerce_tier(value: Tier | str, what: str) -> Tier:
    try:
        return value if isinstance(value, Tier) else Tier(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f"Invalid {what} {value!r}: expected TIER_1, TIER_2 or TIER_3") from None


class _AddressLocks:
    """One asyncio.Lock per address, kept only while some commit holds or awaits it."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, address: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(address, asyncio.Lock())
        self._users[address] = self._users.get(address, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[address] -= 1
            if self._users[address] == 0:
                del self._users[address]
                del self._locks[address]


@dataclass
class _CommitRun:
    invocation: ContractInvocation
    state: CommitState = CommitState.IDLE
    transitions: list[CommitState] = field(default_factory=list)
    tx_hash: str | None = None


class CommitPipeline:
    """Builds, signs, submits, and confirms risk tier commits for one contract."""

    def __init__(
        self,
        *,
        ledger: AccountSource,
        rpc: SubmissionRpc,
        builder: EnvelopeBuilder,
        signer: Signer,
        rate_limiter: RateLimiter,
        store: KeyValueStore,
        contract_id: str,
        clock: Clock | None = None,
        contract_method: str = METHOD_SET_RISK_TIER,
        poll_attempts: int = DEFAULT_POLL_ATTEMPTS,
        poll_interval_sec: float = DEFAULT_POLL_INTERVAL_SEC,
        base_fee: int = DEFAULT_BASE_FEE,
        timeout_sec: int = DEFAULT_TIMEOUT_SEC,
        max_poll_errors: int = DEFAULT_MAX_POLL_ERRORS,
    ) -> None:
        self._ledger = ledger
        self._rpc = rpc
        self._builder = builder
        self._signer = signer
        self._rate_limiter = rate_limiter
        self._store = store
        self._contract_id = contract_id
        self._clock = clock or SystemClock()
        self._contract_method = contract_method
        self._poll_attempts = max(1, poll_attempts)
        self._poll_interval_sec = poll_interval_sec
        self._base_fee = base_fee
        self._timeout_sec = timeout_sec
        self._max_poll_errors = max(1, max_poll_errors)
        self._locks = _AddressLocks()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def validate(
        self,
        address: str,
        score: int,
        tier: Tier | str,
        chosen_tier: Tier | str | None = None,
    ) -> ContractInvocation:
        """
        Check commit inputs and return the contract call they describe.

        Raises ValidationError for a malformed address or contract id, a
        score outside 0..100, a tier that does not match the score, or a
        chosen tier safer than the computed one.
        """
        address = require_address(address)
        contract_id = require_contract_id(self._contract_id)
        if isinstance(score, bool) or not isinstance(score, int):
            raise ValidationError(f"Score must be an integer, got {score!r}")
        if not 0 <= score <= 100:
            raise ValidationError(f"Score must be within 0..100, got {score}")
        computed = _coerce_tier(tier, "tier")
        if tier_for_score(score) != computed:
            raise ValidationError(f"Tier {computed.value} does not match score {score}")
        chosen = computed if chosen_tier is None else _coerce_tier(chosen_tier, "chosen tier")
        if chosen.rank < computed.rank:
            raise ValidationError(
                f"Chosen tier {chosen.value} is not available for computed tier {computed.value}"
            )
        return ContractInvocation(
            contract_id=contract_id,
            method=self._contract_method,
            address=address,
            score=score,
            tier=computed,
            chosen_tier=chosen,
        )

    async def commit(
        self,
        address: str,
        score: int,
        tier: Tier | str,
        *,
        chosen_tier: Tier | str | None = None,
        fee: int | None = None,
        timeout_sec: int | None = None,
        check_rate_limit: bool = True,
    ) -> CommitResult:
        """
        Run one commit to completion.

        Only ValidationError escapes; every other failure is a CommitResult.
        With check_rate_limit, an address still inside its 24h window gets
        error_kind=rate_limited before anything is built.
        """
        invocation = self.validate(address, score, tier, chosen_tier)
        async with self._locks.hold(invocation.address):
            if check_rate_limit:
                status = await self._offload(self._rate_limiter.check, invocation.address)
                if not status.can_commit:
                    logger.info(
                        "commit_rate_limited",
                        wallet_id=short_wallet(invocation.address),
                        remaining_ms=status.remaining_ms,
                    )
                    return CommitResult(
                        successful=False,
                        address=invocation.address,
                        score=invocation.score,
                        tier=invocation.tier,
                        chosen_tier=invocation.chosen_tier,
                        error=f"Rate limited: next commit in {format_remaining(status.remaining_ms)}",
                        error_kind=CommitErrorKind.RATE_LIMITED,
                        next_eligible_at=status.next_eligible_at,
                    )
            return await self._run(
                invocation,
                fee=self._base_fee if fee is None else fee,
                timeout_sec=self._timeout_sec if timeout_sec is None else timeout_sec,
            )

    async def commit_analysis(
        self,
        address: str,
        analysis: RiskAnalysisResult,
        *,
        chosen_tier: Tier | str | None = None,
        fee: int | None = None,
        timeout_sec: int | None = None,
        check_rate_limit: bool = True,
    ) -> CommitResult:
        return await self.commit(
            address,
            analysis.risk_score,
            analysis.tier,
            chosen_tier=chosen_tier,
            fee=fee,
            timeout_sec=timeout_sec,
            check_rate_limit=check_rate_limit,
        )

    def load_fallback(self, address: str) -> FallbackCommit | None:
        return load_fallback(self._store, address)

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    @staticmethod
    async def _offload(fn: Callable[..., T], *args: Any) -> T:
        """Run blocking store I/O in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, fn, *args)

    def _transition(self, run: _CommitRun, state: CommitState) -> None:
        logger.info(
            "commit_state_transition",
            wallet_id=short_wallet(run.invocation.address),
            from_state=run.state.value,
            to_state=state.value,
            tx_hash=run.tx_hash,
        )
        run.state = state
        run.transitions.append(state)

    async def _run(self, invocation: ContractInvocation, *, fee: int, timeout_sec: int) -> CommitResult:
        run = _CommitRun(invocation=invocation)
        address = invocation.address

        self._transition(run, CommitState.BUILDING)
        try:
            account = await self._ledger.get_account(address)
        except (AccountNotFoundError, LedgerRequestError) as e:
            return await self._failed(run, str(e), CommitErrorKind.TERMINAL)
        except LedgerUnavailableError as e:
            return await self._fallback(run, f"Account lookup failed: {e}")
        try:
            unsigned_xdr = await self._builder.build(invocation, account, fee=fee, timeout_sec=timeout_sec)
        except TerminalSubmissionError as e:
            return await self._failed(run, str(e), CommitErrorKind.TERMINAL)
        except TransientSubmissionError as e:
            return await self._fallback(run, f"Build failed: {e}")
        except (ValueError, TypeError) as e:
            # stellar-sdk rejects arguments and XDR with ValueError/TypeError
            return await self._failed(run, f"Envelope build failed: {e}", CommitErrorKind.TERMINAL)

        self._transition(run, CommitState.AWAITING_SIGNATURE)
        try:
            signed_xdr = await self._signer.sign(unsigned_xdr)
        except SignerRejectedError as e:
            logger.info("commit_cancelled_by_user", wallet_id=short_wallet(address), reason=str(e))
            return await self._failed(run, str(e) or "Signature request declined", CommitErrorKind.USER_CANCELLED)
        except TransientSubmissionError as e:
            return await self._fallback(run, f"Signer unavailable: {e}")
        try:
            run.tx_hash = self._builder.transaction_hash(signed_xdr)
        except (ValueError, TypeError) as e:
            return await self._failed(run, f"Signed envelope is not valid XDR: {e}", CommitErrorKind.TERMINAL)

        self._transition(run, CommitState.SUBMITTED)
        try:
            sent = await self._rpc.send_transaction(signed_xdr)
        except TerminalSubmissionError as e:
            return await self._failed(run, str(e), CommitErrorKind.TERMINAL)
        except TransientSubmissionError as e:
            return await self._fallback(run, f"Submission failed: {e}")
        if sent.hash:
            run.tx_hash = sent.hash
        if sent.status == SendStatus.ERROR:
            detail = f": {sent.error_result_xdr}" if sent.error_result_xdr else ""
            return await self._failed(run, f"Transaction rejected{detail}", CommitErrorKind.TERMINAL)
        if sent.status == SendStatus.TRY_AGAIN_LATER:
            return await self._fallback(run, "Network asked to try again later")
        logger.info(
            "commit_tx_sent",
            wallet_id=short_wallet(address),
            tx_hash=run.tx_hash,
            status=sent.status.value,
        )

        return await self._poll(run)

    async def _poll(self, run: _CommitRun) -> CommitResult:
        self._transition(run, CommitState.POLLING)
        address = run.invocation.address
        tx_hash = run.tx_hash or ""
        consecutive_errors = 0
        for attempt in range(1, self._poll_attempts + 1):
            if attempt > 1:
                await self._clock.sleep(self._poll_interval_sec)
            try:
                lookup = await self._rpc.get_transaction(tx_hash)
            except TerminalSubmissionError as e:
                # Lookup rejected as malformed: finality cannot be observed, but the send was accepted
                logger.warning(
                    "commit_poll_rejected",
                    wallet_id=short_wallet(address),
                    tx_hash=tx_hash,
                    attempt=attempt,
                    error=str(e),
                )
                return await self._succeeded(run, pending=True, note=f"Confirmation lookup rejected: {e}")
            except TransientSubmissionError as e:
                consecutive_errors += 1
                logger.warning(
                    "commit_poll_error",
                    wallet_id=short_wallet(address),
                    tx_hash=tx_hash,
                    attempt=attempt,
                    consecutive_errors=consecutive_errors,
                    error=str(e),
                )
                if consecutive_errors >= self._max_poll_errors:
                    return await self._fallback(run, f"Confirmation polling failed: {e}")
                continue
            consecutive_errors = 0
            if lookup.status == TxStatus.SUCCESS:
                return await self._succeeded(run, pending=False, ledger=lookup.ledger)
            if lookup.status == TxStatus.FAILED:
                return await self._failed(run, "Transaction failed on chain", CommitErrorKind.TERMINAL)
            logger.debug("commit_poll_pending", wallet_id=short_wallet(address), tx_hash=tx_hash, attempt=attempt)

        logger.warning(
            "commit_confirmation_pending",
            wallet_id=short_wallet(address),
            tx_hash=tx_hash,
            attempts=self._poll_attempts,
        )
        return await self._succeeded(run, pending=True)

    # -------------------------------------------------------------------------
    # Terminal states
    # -------------------------------------------------------------------------

    def _result(self, run: _CommitRun, **kwargs: Any) -> CommitResult:
        inv = run.invocation
        return CommitResult(
            address=inv.address,
            score=inv.score,
            tier=inv.tier,
            chosen_tier=inv.chosen_tier,
            tx_hash=run.tx_hash,
            final_state=run.state,
            transitions=list(run.transitions),
            **kwargs,
        )

    async def _succeeded(
        self,
        run: _CommitRun,
        *,
        pending: bool,
        ledger: int | None = None,
        note: str | None = None,
    ) -> CommitResult:
        """CONFIRMED; pending=True is the soft success where finality was not observed."""
        self._transition(run, CommitState.CONFIRMED)
        recorded_at = await self._offload(self._rate_limiter.record, run.invocation.address)
        logger.info(
            "commit_succeeded",
            wallet_id=short_wallet(run.invocation.address),
            tx_hash=run.tx_hash,
            score=run.invocation.score,
            tier=run.invocation.tier.value,
            pending_confirmation=pending,
        )
        return self._result(
            run,
            successful=True,
            method=CommitMethod.CHAIN,
            error=note,
            pending_confirmation=pending,
            authoritative=not pending,
            ledger=ledger,
            next_eligible_at=recorded_at + self._rate_limiter.window_ms,
        )

    async def _failed(self, run: _CommitRun, error: str, kind: CommitErrorKind) -> CommitResult:
        self._transition(run, CommitState.FAILED)
        if kind != CommitErrorKind.USER_CANCELLED:
            logger.error(
                "commit_failed",
                wallet_id=short_wallet(run.invocation.address),
                tx_hash=run.tx_hash,
                error_kind=kind.value,
                error=error,
            )
        return self._result(run, successful=False, error=error, error_kind=kind)

    async def _fallback(self, run: _CommitRun, reason: str) -> CommitResult:
        self._transition(run, CommitState.FALLBACK)
        inv = run.invocation
        record = FallbackCommit(
            address=inv.address,
            score=inv.score,
            tier=inv.tier.value,
            chosen_tier=inv.chosen_tier.value,
            timestamp=self._clock.now_ms(),
            tx_hash=run.tx_hash,
            reason=reason,
        )
        await self._offload(self._store.set, f"{FALLBACK_KEY_PREFIX}{inv.address}", record.to_dict())
        recorded_at = await self._offload(self._rate_limiter.record, inv.address)
        logger.warning(
            "commit_fallback_stored",
            wallet_id=short_wallet(inv.address),
            tx_hash=run.tx_hash,
            reason=reason,
        )
        return self._result(
            run,
            successful=True,
            method=CommitMethod.LOCAL_FALLBACK,
            error=reason,
            authoritative=False,
            next_eligible_at=recorded_at + self._rate_limiter.window_ms,
        )
