"""
Pytest fixtures for RiskTier tests.

Network clients are faked: Horizon through httpx.MockTransport, Soroban RPC,
envelope building, and signing through small in-memory fakes. Time comes
from FakeClock so polling and 24h windows run instantly.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from backend_risktier.core.clock import FakeClock
from backend_risktier.core.exceptions import SignerRejectedError
from backend_risktier.database.store import MemoryStore
from backend_risktier.ingestion.models import AccountInfo
from backend_risktier.oracle.rate_limiter import RateLimiter
from backend_risktier.oracle.soroban_rpc import SendResult, SendStatus, TxLookup, TxStatus


def make_address(seed: int, prefix: str = "G") -> str:
    """Deterministic, checksum-valid StrKey: account (G...) or contract (C...)."""
    from stellar_sdk import StrKey

    raw = bytes((seed * 7 + i * 3) % 256 for i in range(32))
    if prefix == "C":
        return StrKey.encode_contract(raw)
    return StrKey.encode_ed25519_public_key(raw)


ACCOUNT = make_address(1)
CONTRACT_ID = make_address(2, prefix="C")


def payment_record(
    idx: int,
    created_at: datetime,
    *,
    sender: str,
    receiver: str,
    amount: str = "10.0",
    asset_code: str | None = None,
) -> dict[str, Any]:
    """Horizon /payments record."""
    item: dict[str, Any] = {
        "id": str(idx),
        "paging_token": str(idx),
        "type": "payment",
        "created_at": created_at.strftime("%Y-%m-%dT%H:%M:%SZ"),
        "from": sender,
        "to": receiver,
        "amount": amount,
        "asset_type": "native",
    }
    if asset_code:
        item["asset_type"] = "credit_alphanum4"
        item["asset_code"] = asset_code
    return item


def horizon_page(records: list[dict[str, Any]], next_cursor: str | None) -> dict[str, Any]:
    links: dict[str, Any] = {"self": {"href": "https://horizon.test/self"}}
    if next_cursor is not None:
        links["next"] = {
            "href": f"https://horizon.test/accounts/x/payments?cursor={next_cursor}&limit=200&order=desc"
        }
    return {"_links": links, "_embedded": {"records": records}}


# -----------------------------------------------------------------------------
# Commit pipeline fakes
# -----------------------------------------------------------------------------


class FakeLedger:
    """get_account() returning a fixed sequence, or raising `error`."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.calls: list[str] = []

    async def get_account(self, address: str) -> AccountInfo:
        self.calls.append(address)
        if self.error is not None:
            raise self.error
        return AccountInfo(account_id=address, sequence=1234)


class FakeBuilder:
    """Returns a marker envelope; hash is derived from the signed text."""

    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.invocations: list[Any] = []

    async def build(self, invocation, account, *, fee, timeout_sec) -> str:
        self.invocations.append((invocation, account, fee, timeout_sec))
        if self.error is not None:
            raise self.error
        return f"unsigned:{invocation.address}:{invocation.score}"

    def transaction_hash(self, signed_xdr: str) -> str:
        return "localhash" + str(len(signed_xdr))


class FakeSigner:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.signed: list[str] = []

    async def sign(self, unsigned_xdr: str) -> str:
        if self.error is not None:
            raise self.error
        self.signed.append(unsigned_xdr)
        return "signed:" + unsigned_xdr


class FakeRpc:
    """
    send_transaction returns `send` (or raises it); get_transaction pops from
    `lookups` (TxLookup or exception), repeating NOT_FOUND once exhausted.
    """

    def __init__(self, send: Any = None, lookups: list[Any] | None = None) -> None:
        self.send = send if send is not None else SendResult(status=SendStatus.PENDING, hash="abc123")
        self.lookups = deque(lookups or [])
        self.sent: list[str] = []
        self.polled: list[str] = []

    async def send_transaction(self, signed_xdr: str) -> SendResult:
        self.sent.append(signed_xdr)
        if isinstance(self.send, Exception):
            raise self.send
        return self.send

    async def get_transaction(self, tx_hash: str) -> TxLookup:
        self.polled.append(tx_hash)
        item = self.lookups.popleft() if self.lookups else TxLookup(status=TxStatus.NOT_FOUND)
        if isinstance(item, Exception):
            raise item
        return item


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def rate_limiter(store, clock):
    return RateLimiter(store, clock)


@pytest.fixture
def now_utc(clock):
    return datetime.fromtimestamp(clock.now_ms() / 1000, tz=timezone.utc)


@pytest.fixture
def make_pipeline(store, clock, rate_limiter):
    """Factory: CommitPipeline over fakes; pass ledger/builder/signer/rpc to override."""
    from backend_risktier.oracle.commit_pipeline import CommitPipeline

    def _make(**overrides):
        kwargs = {
            "ledger": FakeLedger(),
            "rpc": FakeRpc(),
            "builder": FakeBuilder(),
            "signer": FakeSigner(),
            "rate_limiter": rate_limiter,
            "store": store,
            "contract_id": CONTRACT_ID,
            "clock": clock,
        }
        kwargs.update(overrides)
        return CommitPipeline(**kwargs)

    return _make


@pytest.fixture
def cancelled_signer():
    return FakeSigner(error=SignerRejectedError("User declined to sign the transaction"))


@pytest.fixture
def recent_payments(now_utc):
    """Six payments over the last few days with three assets and one night-time record."""
    counterparties = [make_address(10 + i) for i in range(6)]
    out = []
    for i, cp in enumerate(counterparties):
        created = (now_utc - timedelta(days=i + 1)).replace(hour=12)
        if i == 5:
            created = created.replace(hour=23)
        out.append(
            payment_record(
                i,
                created,
                sender=ACCOUNT if i % 2 == 0 else cp,
                receiver=cp if i % 2 == 0 else ACCOUNT,
                amount="25.0",
                asset_code=("USDC" if i == 1 else "AQUA" if i == 2 else None),
            )
        )
    return out
