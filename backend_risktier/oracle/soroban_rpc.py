"""
Soroban RPC access through stellar-sdk's SorobanServerAsync.

SorobanRpcClient wraps the SDK server and classifies failures at this
boundary so the commit pipeline only has to branch on exception type:
- transport errors, timeouts, HTTP 429/5xx, internal JSON-RPC errors,
  responses that do not parse -> TransientSubmissionError
- invalid request/params JSON-RPC errors, other HTTP 4xx, failed
  simulation -> TerminalSubmissionError

HTTP goes through HttpxAsyncClient, a stellar-sdk client backed by httpx, so
the transport can be swapped for httpx.MockTransport in tests.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, TypeVar

import httpx
from stellar_sdk import TransactionEnvelope
from stellar_sdk.client.base_async_client import BaseAsyncClient
from stellar_sdk.client.response import Response
from stellar_sdk.exceptions import PrepareTransactionException, SorobanRpcErrorResponse
from stellar_sdk.soroban_server_async import SorobanServerAsync

from backend_risktier.core.exceptions import TerminalSubmissionError, TransientSubmissionError
from backend_risktier.risk_logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

REQUEST_TIMEOUT = 30.0
# JSON-RPC codes that mean the request itself is wrong
TERMINAL_RPC_CODES = frozenset({-32600, -32601, -32602})


class SendStatus(str, Enum):
    PENDING = "PENDING"
    DUPLICATE = "DUPLICATE"
    ERROR = "ERROR"
    TRY_AGAIN_LATER = "TRY_AGAIN_LATER"


class TxStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    NOT_FOUND = "NOT_FOUND"


@dataclass(frozen=True)
class SendResult:
    status: SendStatus
    hash: str
    error_result_xdr: str | None = None


@dataclass(frozen=True)
class TxLookup:
    status: TxStatus
    ledger: int | None = None
    result_xdr: str | None = None


class HttpxAsyncClient(BaseAsyncClient):
    """stellar-sdk async HTTP client over httpx.AsyncClient."""

    def __init__(
        self,
        *,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    async def get(self, url: str, params: dict[str, str] | None = None) -> Response:
        return await self._send("GET", url, params=params)

    async def post(
        self,
        url: str,
        data: dict[str, str] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> Response:
        return await self._send("POST", url, data=data, json=json_data)

    def stream(self, url: str, params: dict[str, str] | None = None) -> Any:
        raise NotImplementedError("Soroban RPC has no streaming endpoints")

    async def close(self) -> None:
        await self._client.aclose()

    async def _send(self, method: str, url: str, **kwargs: Any) -> Response:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise TransientSubmissionError(f"{e.__class__.__name__}: {e}") from e
        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientSubmissionError(f"HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise TerminalSubmissionError(f"HTTP {resp.status_code}")
        return Response(
            status_code=resp.status_code,
            text=resp.text,
            headers=dict(resp.headers),
            url=str(resp.url),
        )


class SorobanRpcClient:
    """Async Soroban RPC client. Construct per session; close with aclose() or async with."""

    def __init__(
        self,
        rpc_url: str,
        *,
        timeout: float = REQUEST_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._server = SorobanServerAsync(rpc_url, client=HttpxAsyncClient(timeout=timeout, transport=transport))

    async def __aenter__(self) -> "SorobanRpcClient":
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._server.close()

    async def _call(self, method: str, pending: Awaitable[T]) -> T:
        try:
            return await pending
        except TerminalSubmissionError as e:
            raise TerminalSubmissionError(f"{method}: {e}") from e
        except TransientSubmissionError as e:
            raise TransientSubmissionError(f"{method}: {e}") from e
        except PrepareTransactionException as e:
            raise TerminalSubmissionError(f"Simulation failed: {e.simulate_transaction_response.error}") from e
        except SorobanRpcErrorResponse as e:
            if e.code in TERMINAL_RPC_CODES:
                raise TerminalSubmissionError(f"{method}: {e.message}") from e
            raise TransientSubmissionError(f"{method}: {e.message}") from e
        except ValueError as e:
            # invalid JSON or a body that does not match the RPC response schema
            raise TransientSubmissionError(f"{method}: invalid response: {e}") from e

    async def prepare_transaction(self, envelope: TransactionEnvelope) -> TransactionEnvelope:
        """Simulate and return a copy carrying resource data, auth entries, and the resource fee."""
        return await self._call("simulateTransaction", self._server.prepare_transaction(envelope))

    async def send_transaction(self, signed_xdr: str) -> SendResult:
        resp = await self._call("sendTransaction", self._server.send_transaction(signed_xdr))
        status = SendStatus(resp.status.value)
        logger.debug("soroban_send_result", status=status.value, tx_hash=resp.hash)
        return SendResult(status=status, hash=resp.hash or "", error_result_xdr=resp.error_result_xdr)

    async def get_transaction(self, tx_hash: str) -> TxLookup:
        resp = await self._call("getTransaction", self._server.get_transaction(tx_hash))
        return TxLookup(status=TxStatus(resp.status.value), ledger=resp.ledger, result_xdr=resp.result_xdr)
