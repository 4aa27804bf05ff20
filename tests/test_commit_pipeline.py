"""
Tests for the commit pipeline state machine.

Ledger, envelope builder, signer, and Soroban RPC are in-memory fakes (see
conftest); FakeClock records every poll delay.
"""

from __future__ import annotations

import asyncio

import httpx
import pytest

from backend_risktier.analysis_engine.models import Tier
from backend_risktier.core.exceptions import (
    AccountNotFoundError,
    LedgerRequestError,
    LedgerUnavailableError,
    TerminalSubmissionError,
    TransientSubmissionError,
    ValidationError,
)
from backend_risktier.database.store import SqlStore
from backend_risktier.ingestion.horizon_client import HorizonLedgerClient
from backend_risktier.oracle.commit_pipeline import (
    CommitErrorKind,
    CommitMethod,
    CommitState,
    load_fallback,
)
from backend_risktier.oracle.rate_limiter import RateLimiter
from backend_risktier.oracle.soroban_rpc import SendResult, SendStatus, TxLookup, TxStatus

from conftest import ACCOUNT, FakeBuilder, FakeLedger, FakeRpc, FakeSigner


def _commit(pipeline, score=41, tier=Tier.TIER_2, **kwargs):
    return asyncio.run(pipeline.commit(ACCOUNT, score, tier, **kwargs))


def test_confirmed_commit_records_rate_limit(make_pipeline, rate_limiter, clock):
    """NOT_FOUND, NOT_FOUND, SUCCESS -> CONFIRMED after two 3s waits."""
    rpc = FakeRpc(
        lookups=[
            TxLookup(status=TxStatus.NOT_FOUND),
            TxLookup(status=TxStatus.NOT_FOUND),
            TxLookup(status=TxStatus.SUCCESS, ledger=987),
        ]
    )
    result = _commit(make_pipeline(rpc=rpc))

    assert result.successful is True
    assert result.method == CommitMethod.CHAIN
    assert result.final_state == CommitState.CONFIRMED
    assert result.authoritative is True
    assert result.pending_confirmation is False
    assert result.tx_hash == "abc123"
    assert result.ledger == 987
    assert result.transitions == [
        CommitState.BUILDING,
        CommitState.AWAITING_SIGNATURE,
        CommitState.SUBMITTED,
        CommitState.POLLING,
        CommitState.CONFIRMED,
    ]
    assert clock.sleeps == [3.0, 3.0]
    assert rate_limiter.check(ACCOUNT).can_commit is False
    assert result.next_eligible_at == rate_limiter.last_commit_at(ACCOUNT) + 24 * 60 * 60 * 1000


def test_builder_receives_invocation_fee_and_timeout(make_pipeline):
    builder = FakeBuilder()
    rpc = FakeRpc(lookups=[TxLookup(status=TxStatus.SUCCESS)])
    _commit(make_pipeline(builder=builder, rpc=rpc), score=80, tier=Tier.TIER_3)

    invocation, account, fee, timeout_sec = builder.invocations[0]
    assert invocation.method == "set_risk_tier"
    assert invocation.arguments() == [
        ("address", ACCOUNT),
        ("u32", 80),
        ("symbol", "TIER_3"),
        ("symbol", "TIER_3"),
    ]
    assert account.sequence == 1234
    assert fee == 10_000
    assert timeout_sec == 30


def test_user_cancellation_is_terminal_without_fallback(make_pipeline, cancelled_signer, rate_limiter, store):
    """Declined signature: FAILED/user_cancelled, no fallback record, no rate-limit record."""
    rpc = FakeRpc()
    result = _commit(make_pipeline(signer=cancelled_signer, rpc=rpc))

    assert result.successful is False
    assert result.error_kind == CommitErrorKind.USER_CANCELLED
    assert result.final_state == CommitState.FAILED
    assert rpc.sent == []
    assert load_fallback(store, ACCOUNT) is None
    assert rate_limiter.check(ACCOUNT).can_commit is True


def test_submission_transport_failure_falls_back(make_pipeline, rate_limiter, store):
    """sendTransaction timeout -> FALLBACK with the locally computed hash, rate limit recorded."""
    rpc = FakeRpc(send=TransientSubmissionError("sendTransaction: ReadTimeout"))
    result = _commit(make_pipeline(rpc=rpc))

    assert result.successful is True
    assert result.method == CommitMethod.LOCAL_FALLBACK
    assert result.authoritative is False
    assert result.final_state == CommitState.FALLBACK
    assert result.tx_hash and result.tx_hash.startswith("localhash")

    record = load_fallback(store, ACCOUNT)
    assert record is not None
    assert record.score == 41
    assert record.tier == "TIER_2"
    assert record.tx_hash == result.tx_hash
    assert rate_limiter.check(ACCOUNT).can_commit is False


def test_try_again_later_falls_back(make_pipeline, store):
    rpc = FakeRpc(send=SendResult(status=SendStatus.TRY_AGAIN_LATER, hash="h1"))
    result = _commit(make_pipeline(rpc=rpc))
    assert result.method == CommitMethod.LOCAL_FALLBACK
    assert load_fallback(store, ACCOUNT).tx_hash == "h1"


def test_send_error_is_terminal_without_fallback(make_pipeline, rate_limiter, store):
    """ERROR from sendTransaction is a ledger rejection, never a fallback."""
    rpc = FakeRpc(send=SendResult(status=SendStatus.ERROR, hash="h2", error_result_xdr="AAAA"))
    result = _commit(make_pipeline(rpc=rpc))

    assert result.successful is False
    assert result.error_kind == CommitErrorKind.TERMINAL
    assert result.final_state == CommitState.FAILED
    assert "AAAA" in result.error
    assert rpc.polled == []
    assert load_fallback(store, ACCOUNT) is None
    assert rate_limiter.check(ACCOUNT).can_commit is True


def test_failed_on_chain(make_pipeline, rate_limiter):
    rpc = FakeRpc(lookups=[TxLookup(status=TxStatus.FAILED)])
    result = _commit(make_pipeline(rpc=rpc))
    assert result.successful is False
    assert result.error_kind == CommitErrorKind.TERMINAL
    assert rate_limiter.check(ACCOUNT).can_commit is True


def test_poll_cap_exhausted_is_soft_success(make_pipeline, clock, rate_limiter):
    """15 NOT_FOUND lookups: chain success pending confirmation, 14 waits of 3s."""
    rpc = FakeRpc()
    result = _commit(make_pipeline(rpc=rpc))

    assert result.successful is True
    assert result.method == CommitMethod.CHAIN
    assert result.final_state == CommitState.CONFIRMED
    assert result.transitions[-2:] == [CommitState.POLLING, CommitState.CONFIRMED]
    assert result.pending_confirmation is True
    assert result.authoritative is False
    assert len(rpc.polled) == 15
    assert clock.sleeps == [3.0] * 14
    assert rate_limiter.check(ACCOUNT).can_commit is False


def test_consecutive_poll_errors_fall_back(make_pipeline, store):
    """Three lookup failures in a row go to FALLBACK."""
    err = TransientSubmissionError("getTransaction: ConnectError")
    rpc = FakeRpc(lookups=[TxLookup(status=TxStatus.NOT_FOUND), err, err, err])
    result = _commit(make_pipeline(rpc=rpc))
    assert result.final_state == CommitState.FALLBACK
    assert load_fallback(store, ACCOUNT).reason.startswith("Confirmation polling failed")


def test_poll_error_streak_resets(make_pipeline):
    err = TransientSubmissionError("getTransaction: HTTP 503")
    rpc = FakeRpc(lookups=[err, err, TxLookup(status=TxStatus.NOT_FOUND), err, err, TxLookup(status=TxStatus.SUCCESS)])
    result = _commit(make_pipeline(rpc=rpc))
    assert result.final_state == CommitState.CONFIRMED


def test_simulation_failure_is_terminal(make_pipeline, store):
    builder = FakeBuilder(error=TerminalSubmissionError("Simulation failed: HostError"))
    result = _commit(make_pipeline(builder=builder))
    assert result.final_state == CommitState.FAILED
    assert result.error_kind == CommitErrorKind.TERMINAL
    assert load_fallback(store, ACCOUNT) is None


def test_account_lookup_failures(make_pipeline, store):
    """Unknown account is terminal; Horizon outage falls back."""
    missing = _commit(make_pipeline(ledger=FakeLedger(error=AccountNotFoundError("not found"))))
    assert missing.final_state == CommitState.FAILED

    down = _commit(make_pipeline(ledger=FakeLedger(error=LedgerUnavailableError("timeout"))))
    assert down.final_state == CommitState.FALLBACK
    assert down.tx_hash is None


def test_rate_limited_commit_short_circuits(make_pipeline, rate_limiter):
    rate_limiter.record(ACCOUNT)
    builder = FakeBuilder()
    result = _commit(make_pipeline(builder=builder))

    assert result.successful is False
    assert result.error_kind == CommitErrorKind.RATE_LIMITED
    assert result.next_eligible_at is not None
    assert builder.invocations == []


@pytest.mark.parametrize(
    "score, tier, chosen",
    [
        (101, Tier.TIER_3, None),
        (-1, Tier.TIER_1, None),
        (41, Tier.TIER_1, None),
        (41, "TIER_9", None),
        (41, Tier.TIER_2, Tier.TIER_1),
    ],
)
def test_invalid_inputs_raise(make_pipeline, score, tier, chosen):
    """Out-of-range score, inconsistent tier, or a safer chosen tier never reach the network."""
    builder = FakeBuilder()
    with pytest.raises(ValidationError):
        _commit(make_pipeline(builder=builder), score=score, tier=tier, chosen_tier=chosen)
    assert builder.invocations == []


def test_invalid_address_raises(make_pipeline):
    with pytest.raises(ValidationError):
        asyncio.run(make_pipeline().commit("GABC", 41, Tier.TIER_2))


def test_riskier_chosen_tier_allowed(make_pipeline):
    builder = FakeBuilder()
    rpc = FakeRpc(lookups=[TxLookup(status=TxStatus.SUCCESS)])
    result = _commit(make_pipeline(builder=builder, rpc=rpc), chosen_tier="TIER_3")
    assert result.chosen_tier == Tier.TIER_3
    assert builder.invocations[0][0].arguments()[3] == ("symbol", "TIER_3")


def test_legacy_set_score_method(make_pipeline):
    builder = FakeBuilder()
    rpc = FakeRpc(lookups=[TxLookup(status=TxStatus.SUCCESS)])
    _commit(make_pipeline(builder=builder, rpc=rpc, contract_method="set_score"))
    assert builder.invocations[0][0].arguments() == [("address", ACCOUNT), ("u32", 41)]


def test_cancelled_task_leaves_no_state(make_pipeline, rate_limiter, store):
    """Cancelling during polling propagates CancelledError and records nothing."""
    rpc = FakeRpc()
    pipeline = make_pipeline(rpc=rpc)

    async def go():
        task = asyncio.ensure_future(pipeline.commit(ACCOUNT, 41, Tier.TIER_2))
        while not rpc.polled:
            await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(go())
    assert rate_limiter.check(ACCOUNT).can_commit is True
    assert load_fallback(store, ACCOUNT) is None


def test_commits_for_one_address_are_serialized(make_pipeline):
    """Two concurrent commits: the second waits for the first and is then rate limited."""
    rpc = FakeRpc(lookups=[TxLookup(status=TxStatus.SUCCESS)])
    pipeline = make_pipeline(rpc=rpc)

    async def go():
        return await asyncio.gather(
            pipeline.commit(ACCOUNT, 41, Tier.TIER_2),
            pipeline.commit(ACCOUNT, 41, Tier.TIER_2),
        )

    first, second = asyncio.run(go())
    assert first.final_state == CommitState.CONFIRMED
    assert second.error_kind == CommitErrorKind.RATE_LIMITED
    assert len(rpc.sent) == 1
    assert len(pipeline._locks) == 0


def test_signer_unavailable_falls_back(make_pipeline):
    signer = FakeSigner(error=TransientSubmissionError("wallet bridge timeout"))
    result = _commit(make_pipeline(signer=signer))
    assert result.final_state == CommitState.FALLBACK


def test_poll_lookup_rejected_is_soft_success(make_pipeline, rate_limiter, store):
    """A getTransaction the RPC rejects after an accepted send: pending CONFIRMED, never a fallback."""
    err = TerminalSubmissionError("getTransaction: invalid params")
    rpc = FakeRpc(lookups=[TxLookup(status=TxStatus.NOT_FOUND), err])
    result = _commit(make_pipeline(rpc=rpc))

    assert result.successful is True
    assert result.method == CommitMethod.CHAIN
    assert result.final_state == CommitState.CONFIRMED
    assert result.pending_confirmation is True
    assert result.authoritative is False
    assert "invalid params" in result.error
    assert len(rpc.polled) == 2
    assert load_fallback(store, ACCOUNT) is None
    assert rate_limiter.check(ACCOUNT).can_commit is False


def test_rejected_account_request_is_terminal(make_pipeline, rate_limiter, store, clock):
    """Horizon answering 400 on /accounts ends in FAILED with nothing recorded."""
    calls = []

    def handler(request):
        calls.append(request.url.path)
        return httpx.Response(400, json={"title": "Bad Request"})

    async def go():
        transport = httpx.MockTransport(handler)
        async with HorizonLedgerClient("https://horizon.test", clock=clock, transport=transport) as ledger:
            return await make_pipeline(ledger=ledger).commit(ACCOUNT, 41, Tier.TIER_2)

    result = asyncio.run(go())
    assert result.successful is False
    assert result.final_state == CommitState.FAILED
    assert result.error_kind == CommitErrorKind.TERMINAL
    assert calls == [f"/accounts/{ACCOUNT}"]
    assert load_fallback(store, ACCOUNT) is None
    assert rate_limiter.check(ACCOUNT).can_commit is True


def test_ledger_request_error_is_terminal(make_pipeline, store):
    result = _commit(make_pipeline(ledger=FakeLedger(error=LedgerRequestError("HTTP 403"))))
    assert result.final_state == CommitState.FAILED
    assert result.error_kind == CommitErrorKind.TERMINAL
    assert load_fallback(store, ACCOUNT) is None


def test_envelope_build_value_error_is_terminal(make_pipeline, rate_limiter, store):
    """stellar-sdk refusing the source account or arguments fails the commit cleanly."""
    builder = FakeBuilder(error=ValueError("This is not a valid account"))
    result = _commit(make_pipeline(builder=builder))

    assert result.successful is False
    assert result.final_state == CommitState.FAILED
    assert result.error_kind == CommitErrorKind.TERMINAL
    assert "not a valid account" in result.error
    assert load_fallback(store, ACCOUNT) is None
    assert rate_limiter.check(ACCOUNT).can_commit is True


class _UnhashableBuilder(FakeBuilder):
    def transaction_hash(self, signed_xdr: str) -> str:
        raise ValueError("Invalid XDR")


def test_unparseable_signed_envelope_is_terminal(make_pipeline, store):
    rpc = FakeRpc()
    result = _commit(make_pipeline(builder=_UnhashableBuilder(), rpc=rpc))

    assert result.final_state == CommitState.FAILED
    assert result.error_kind == CommitErrorKind.TERMINAL
    assert "not valid XDR" in result.error
    assert rpc.sent == []
    assert load_fallback(store, ACCOUNT) is None


def test_address_locks_released_after_commit(make_pipeline):
    rpc = FakeRpc(lookups=[TxLookup(status=TxStatus.SUCCESS)])
    pipeline = make_pipeline(rpc=rpc)
    _commit(pipeline)
    _commit(pipeline)
    assert len(pipeline._locks) == 0


def test_commit_over_sql_store(make_pipeline, clock):
    """In-memory SQLite store shared across executor threads: fallback and rate limit persist."""
    sql_store = SqlStore("sqlite://")
    limiter = RateLimiter(sql_store, clock)
    rpc = FakeRpc(send=TransientSubmissionError("sendTransaction: ConnectError"))
    result = _commit(make_pipeline(rpc=rpc, store=sql_store, rate_limiter=limiter))

    assert result.final_state == CommitState.FALLBACK
    assert load_fallback(sql_store, ACCOUNT).score == 41
    assert limiter.check(ACCOUNT).can_commit is False
