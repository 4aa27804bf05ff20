"""
Horizon ledger client: bounded, paginated history fetch for one address.

- fetch_window(): payments over the last N days, newest first, following the
  opaque cursor in _links.next.href. Stops at the window edge, at a short or
  final page, or at the record safety cap (default 1000). Hitting the cap
  sets truncated=True only when an in-window record was left unread.
- A failed page never fails the analysis: pagination stops and the records
  gathered so far come back with truncated=True.
- 429 responses are retried with exponential backoff through the injected clock.
- get_account(): account id and sequence number for building a transaction.

The client is stateless apart from its httpx.AsyncClient; construct one per
session and close it (async context manager).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable
from urllib.parse import parse_qs, urlparse

import httpx

from backend_risktier.core.clock import Clock, SystemClock
from backend_risktier.core.exceptions import AccountNotFoundError, LedgerRequestError, LedgerUnavailableError
from backend_risktier.ingestion.models import (
    AccountInfo,
    LedgerWindow,
    TransactionRecord,
    parse_horizon_time,
)
from backend_risktier.risk_logging import get_logger, short_wallet
from backend_risktier.utils.address_utils import require_address

logger = get_logger(__name__)

# -----------------------------------------------------------------------------
# Config
# -----------------------------------------------------------------------------
DEFAULT_HORIZON_URL = "https://horizon-testnet.stellar.org"
DEFAULT_WINDOW_DAYS = 30
DEFAULT_PAGE_SIZE = 200
DEFAULT_MAX_RECORDS = 1000
REQUEST_TIMEOUT = 30.0
MAX_RETRIES = 3
RETRY_BACKOFF = 1.0


def extract_cursor(href: str | None) -> str | None:
    """Return the cursor query parameter from a Horizon _links.next.href, or None."""
    if not href:
        return None
    values = parse_qs(urlparse(href).query).get("cursor")
    if not values or not values[0]:
        return None
    return values[0]


def _parse_payment(item: dict[str, Any]) -> TransactionRecord:
    return TransactionRecord.from_horizon(item)


def _parse_transaction(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": item.get("id"),
        "created_at": item.get("created_at"),
        "fee_charged": int(item.get("fee_charged") or 0),
        "operation_count": item.get("operation_count"),
        "successful": item.get("successful"),
    }


def _created_at(item: dict[str, Any]) -> datetime | None:
    try:
        return parse_horizon_time(item["created_at"])
    except (KeyError, TypeError, ValueError):
        return None


def _first_created_at(items: list[dict[str, Any]]) -> datetime | None:
    """created_at of the first parsable record (pages are newest first)."""
    for item in items:
        created_at = _created_at(item)
        if created_at is not None:
            return created_at
    return None


class HorizonLedgerClient:
    """Async Horizon reader for payment/transaction history and account sequence numbers."""

    def __init__(
        self,
        base_url: str = DEFAULT_HORIZON_URL,
        *,
        clock: Clock | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_records: int = DEFAULT_MAX_RECORDS,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._clock = clock or SystemClock()
        self._page_size = max(1, min(200, int(page_size)))
        self._max_records = max(1, int(max_records))
        self._client = httpx.AsyncClient(base_url=self._base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "HorizonLedgerClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def fetch_window(self, address: str, window_days: int = DEFAULT_WINDOW_DAYS) -> LedgerWindow:
        """
        Fetch payment records for address within the last window_days.

        Returns a LedgerWindow of TransactionRecord (newest first). truncated is
        True when the record cap cut the window short or a page request failed.
        """
        address = require_address(address)
        return await self._paginate(address, "payments", window_days, _parse_payment)

    async def fetch_transactions_window(
        self, address: str, window_days: int = DEFAULT_WINDOW_DAYS
    ) -> LedgerWindow:
        """Same bounded pagination over /transactions; records are small dicts (id, created_at, fee_charged, ...)."""
        address = require_address(address)
        return await self._paginate(address, "transactions", window_days, _parse_transaction)

    async def get_account(self, address: str) -> AccountInfo:
        """
        Load account id and sequence number.

        Raises AccountNotFoundError on 404, LedgerRequestError when Horizon
        rejects the request (other 4xx), and LedgerUnavailableError on
        transport failures, 5xx, or 429 after the retries are spent.
        """
        address = require_address(address)
        try:
            resp = await self._request(f"/accounts/{address}")
        except httpx.HTTPError as e:
            raise LedgerUnavailableError(f"Horizon unreachable: {e}") from e
        if resp.status_code == 404:
            raise AccountNotFoundError(f"Account {address} not found on ledger")
        if resp.status_code == 429 or resp.status_code >= 500:
            raise LedgerUnavailableError(f"Horizon returned HTTP {resp.status_code} for account")
        if resp.status_code >= 400:
            raise LedgerRequestError(f"Horizon rejected account request: HTTP {resp.status_code}")
        try:
            return AccountInfo.from_horizon(resp.json())
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerUnavailableError(f"Malformed account response: {e}") from e

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _request(self, path: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """GET with retry on 429. Transport errors propagate as httpx.HTTPError."""
        attempt = 0
        while True:
            resp = await self._client.get(path, params=params)
            if resp.status_code != 429 or attempt >= MAX_RETRIES - 1:
                return resp
            backoff = RETRY_BACKOFF * (2 ** attempt)
            attempt += 1
            logger.warning("horizon_rate_limited", path=path, attempt=attempt, backoff_sec=backoff)
            await self._clock.sleep(backoff)

    async def _peek_in_window(self, path: str, cursor: str, cutoff: datetime) -> bool:
        """True if the record after cursor is still inside the window. Unknown counts as True."""
        try:
            resp = await self._request(path, {"order": "desc", "limit": 1, "cursor": cursor})
            if resp.status_code >= 400:
                return True
            page = (resp.json().get("_embedded") or {}).get("records") or []
        except (httpx.HTTPError, ValueError):
            return True
        first = _first_created_at(page)
        return first is not None and first >= cutoff

    async def _paginate(
        self,
        address: str,
        resource: str,
        window_days: int,
        parse: Callable[[dict[str, Any]], Any],
    ) -> LedgerWindow:
        now = datetime.fromtimestamp(self._clock.now_ms() / 1000.0, tz=timezone.utc)
        cutoff = now - timedelta(days=window_days)
        path = f"/accounts/{address}/{resource}"

        records: list[Any] = []
        cursor: str | None = None
        truncated = False
        pages = 0

        while True:
            params: dict[str, Any] = {"order": "desc", "limit": self._page_size}
            if cursor:
                params["cursor"] = cursor
            try:
                resp = await self._request(path, params)
            except httpx.HTTPError as e:
                logger.warning(
                    "horizon_page_failed",
                    wallet_id=short_wallet(address),
                    resource=resource,
                    page=pages + 1,
                    error=str(e),
                )
                truncated = True
                break
            if resp.status_code == 404 and pages == 0:
                logger.info("horizon_account_not_found", wallet_id=short_wallet(address), resource=resource)
                break
            if resp.status_code >= 400:
                logger.warning(
                    "horizon_page_failed",
                    wallet_id=short_wallet(address),
                    resource=resource,
                    page=pages + 1,
                    status_code=resp.status_code,
                )
                truncated = True
                break
            try:
                data = resp.json()
            except ValueError as e:
                logger.warning("horizon_page_invalid_json", wallet_id=short_wallet(address), error=str(e))
                truncated = True
                break
            pages += 1

            page = (data.get("_embedded") or {}).get("records") or []
            window_exhausted = False
            rest: list[dict[str, Any]] | None = None
            for idx, item in enumerate(page):
                created_at = _created_at(item)
                if created_at is None:
                    logger.debug("horizon_record_skipped", wallet_id=short_wallet(address), record_id=item.get("id"))
                    continue
                if created_at < cutoff:
                    window_exhausted = True
                    break
                try:
                    records.append(parse(item))
                except (KeyError, TypeError, ValueError):
                    logger.debug("horizon_record_skipped", wallet_id=short_wallet(address), record_id=item.get("id"))
                    continue
                if len(records) >= self._max_records:
                    rest = page[idx + 1 :]
                    break

            if window_exhausted:
                break

            next_href = ((data.get("_links") or {}).get("next") or {}).get("href")
            cursor = extract_cursor(next_href)
            has_next = bool(cursor) and len(page) >= self._page_size

            if rest is not None:
                # Cap reached: truncated only if an in-window record was left behind
                first = _first_created_at(rest)
                if first is not None:
                    truncated = first >= cutoff
                elif has_next:
                    truncated = await self._peek_in_window(path, cursor, cutoff)
                if truncated:
                    logger.info(
                        "horizon_record_cap_reached",
                        wallet_id=short_wallet(address),
                        resource=resource,
                        max_records=self._max_records,
                    )
                break
            if not has_next:
                break

        logger.info(
            "horizon_window_fetched",
            wallet_id=short_wallet(address),
            resource=resource,
            records=len(records),
            pages=pages,
            truncated=truncated,
            window_days=window_days,
        )
        return LedgerWindow(records=records, truncated=truncated, window_days=window_days, pages=pages)
