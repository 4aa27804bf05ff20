"""
Tests for HorizonLedgerClient pagination, truncation, and error handling.

Horizon is faked with httpx.MockTransport; time with FakeClock.
"""

from __future__ import annotations

import asyncio
from datetime import timedelta

import httpx
import pytest

from backend_risktier.core.exceptions import (
    AccountNotFoundError,
    LedgerRequestError,
    LedgerUnavailableError,
    ValidationError,
)
from backend_risktier.ingestion.horizon_client import HorizonLedgerClient, extract_cursor

from conftest import ACCOUNT, horizon_page, make_address, payment_record

BASE_URL = "https://horizon.test"


def _feed_transport(records, page_size=200, calls=None):
    """Serve `records` (newest first) page by page using integer cursors."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        start = int(request.url.params.get("cursor") or 0)
        limit = int(request.url.params.get("limit") or page_size)
        page = records[start : start + limit]
        next_cursor = str(start + limit) if start + limit < len(records) else str(start + len(page))
        return httpx.Response(200, json=horizon_page(page, next_cursor))

    return httpx.MockTransport(handler)


def _run(coro):
    return asyncio.run(coro)


def test_extract_cursor():
    href = "https://horizon.test/accounts/G/payments?cursor=12345-1&limit=200&order=desc"
    assert extract_cursor(href) == "12345-1"
    assert extract_cursor("https://horizon.test/accounts/G/payments?limit=200") is None
    assert extract_cursor(None) is None


def test_large_history_capped_at_1000_and_truncated(clock, now_utc):
    """A 10,000-record feed inside the window stops at 1000 records with truncated=True."""
    cp = make_address(30)
    records = [
        payment_record(i, now_utc - timedelta(minutes=i), sender=cp, receiver=ACCOUNT) for i in range(10_000)
    ]
    calls = []

    async def go():
        async with HorizonLedgerClient(BASE_URL, clock=clock, transport=_feed_transport(records, calls=calls)) as c:
            return await c.fetch_window(ACCOUNT)

    window = _run(go())
    assert len(window.records) == 1000
    assert window.truncated is True
    assert window.pages == 5
    # five full pages plus a one-record look past the cap
    assert len(calls) == 6
    assert calls[5].url.params["limit"] == "1"
    assert calls[5].url.params["cursor"] == "1000"
    assert calls[0].url.params["order"] == "desc"
    assert calls[0].url.params["limit"] == "200"
    assert "cursor" not in calls[0].url.params
    assert calls[1].url.params["cursor"] == "200"


def test_stops_at_window_edge(clock, now_utc):
    """Records older than window_days end pagination without truncation."""
    cp = make_address(31)
    records = [
        payment_record(i, now_utc - timedelta(days=i, hours=1), sender=cp, receiver=ACCOUNT) for i in range(60)
    ]

    async def go():
        async with HorizonLedgerClient(BASE_URL, clock=clock, transport=_feed_transport(records)) as c:
            return await c.fetch_window(ACCOUNT, window_days=30)

    window = _run(go())
    assert len(window.records) == 30
    assert window.truncated is False


def test_short_page_stops_pagination(clock, now_utc):
    cp = make_address(32)
    records = [payment_record(i, now_utc - timedelta(hours=i), sender=cp, receiver=ACCOUNT) for i in range(3)]
    calls = []

    async def go():
        async with HorizonLedgerClient(
            BASE_URL, clock=clock, transport=_feed_transport(records, calls=calls)
        ) as c:
            return await c.fetch_window(ACCOUNT)

    window = _run(go())
    assert len(window.records) == 3
    assert window.truncated is False
    assert len(calls) == 1


def test_unfunded_account_is_empty_history(clock):
    """404 on the first page: empty history, not truncated."""
    transport = httpx.MockTransport(lambda request: httpx.Response(404, json={"status": 404}))

    async def go():
        async with HorizonLedgerClient(BASE_URL, clock=clock, transport=transport) as c:
            return await c.fetch_window(ACCOUNT)

    window = _run(go())
    assert window.records == []
    assert window.truncated is False


def test_page_error_returns_partial_truncated(clock, now_utc):
    """A failing second page keeps page one and marks the window truncated."""
    cp = make_address(33)
    first = [payment_record(i, now_utc - timedelta(minutes=i), sender=cp, receiver=ACCOUNT) for i in range(200)]

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("cursor"):
            return httpx.Response(500, json={"status": 500})
        return httpx.Response(200, json=horizon_page(first, "200"))

    async def go():
        async with HorizonLedgerClient(BASE_URL, clock=clock, transport=httpx.MockTransport(handler)) as c:
            return await c.fetch_window(ACCOUNT)

    window = _run(go())
    assert len(window.records) == 200
    assert window.truncated is True


def test_transport_error_returns_truncated(clock):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    async def go():
        async with HorizonLedgerClient(BASE_URL, clock=clock, transport=httpx.MockTransport(handler)) as c:
            return await c.fetch_window(ACCOUNT)

    window = _run(go())
    assert window.records == []
    assert window.truncated is True


def test_rate_limited_page_is_retried_with_backoff(clock, now_utc):
    """429 is retried through the clock (1s, 2s) before succeeding."""
    cp = make_address(34)
    records = [payment_record(0, now_utc, sender=cp, receiver=ACCOUNT)]
    responses = [httpx.Response(429), httpx.Response(429), httpx.Response(200, json=horizon_page(records, None))]

    async def go():
        async with HorizonLedgerClient(
            BASE_URL, clock=clock, transport=httpx.MockTransport(lambda request: responses.pop(0))
        ) as c:
            return await c.fetch_window(ACCOUNT)

    window = _run(go())
    assert len(window.records) == 1
    assert clock.sleeps == [1.0, 2.0]


def test_invalid_address_rejected(clock):
    async def go():
        async with HorizonLedgerClient(BASE_URL, clock=clock, transport=_feed_transport([])) as c:
            return await c.fetch_window("not-an-address")

    with pytest.raises(ValidationError):
        _run(go())


def test_get_account(clock):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == f"/accounts/{ACCOUNT}"
        return httpx.Response(200, json={"account_id": ACCOUNT, "sequence": "4294967296"})

    async def go():
        async with HorizonLedgerClient(BASE_URL, clock=clock, transport=httpx.MockTransport(handler)) as c:
            return await c.get_account(ACCOUNT)

    info = _run(go())
    assert info.account_id == ACCOUNT
    assert info.sequence == 4294967296


@pytest.mark.parametrize(
    "status, exc",
    [
        (404, AccountNotFoundError),
        (400, LedgerRequestError),
        (403, LedgerRequestError),
        (503, LedgerUnavailableError),
        (429, LedgerUnavailableError),
    ],
)
def test_get_account_errors(clock, status, exc):
    """404 -> not found; other 4xx -> rejected request; 5xx or persistent 429 -> unavailable."""
    transport = httpx.MockTransport(lambda request: httpx.Response(status, json={"status": status}))

    async def go():
        async with HorizonLedgerClient(BASE_URL, clock=clock, transport=transport) as c:
            return await c.get_account(ACCOUNT)

    with pytest.raises(exc):
        _run(go())


def test_exactly_cap_records_is_not_truncated(clock, now_utc):
    """A window holding exactly max_records records is complete, not truncated."""
    cp = make_address(35)
    records = [payment_record(i, now_utc - timedelta(minutes=i), sender=cp, receiver=ACCOUNT) for i in range(5)]
    calls = []

    async def go():
        async with HorizonLedgerClient(
            BASE_URL, clock=clock, page_size=5, max_records=5, transport=_feed_transport(records, 5, calls)
        ) as c:
            return await c.fetch_window(ACCOUNT)

    window = _run(go())
    assert len(window.records) == 5
    assert window.truncated is False
    assert window.pages == 1


def test_cap_with_older_records_behind_is_not_truncated(clock, now_utc):
    """Records past the cap that fall outside the window do not count as cut."""
    cp = make_address(36)
    records = [payment_record(i, now_utc - timedelta(hours=i), sender=cp, receiver=ACCOUNT) for i in range(3)]
    records.append(payment_record(3, now_utc - timedelta(days=45), sender=cp, receiver=ACCOUNT))

    async def go():
        async with HorizonLedgerClient(
            BASE_URL, clock=clock, page_size=10, max_records=3, transport=_feed_transport(records, 10)
        ) as c:
            return await c.fetch_window(ACCOUNT, window_days=30)

    window = _run(go())
    assert len(window.records) == 3
    assert window.truncated is False


def test_cap_mid_page_with_newer_records_left_is_truncated(clock, now_utc):
    cp = make_address(37)
    records = [payment_record(i, now_utc - timedelta(hours=i), sender=cp, receiver=ACCOUNT) for i in range(8)]

    async def go():
        async with HorizonLedgerClient(
            BASE_URL, clock=clock, page_size=10, max_records=5, transport=_feed_transport(records, 10)
        ) as c:
            return await c.fetch_window(ACCOUNT)

    window = _run(go())
    assert len(window.records) == 5
    assert window.truncated is True
