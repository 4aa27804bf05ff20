"""
Risk tier contract invocation and transaction envelope assembly.

ContractInvocation describes the call: set_risk_tier(address, score, tier,
chosen_tier) on current contracts, set_score(address, score) on legacy ones.
StellarEnvelopeBuilder turns it into an unsigned base64 XDR envelope with
stellar-sdk; SorobanServerAsync.prepare_transaction attaches resource data,
authorization entries and the resource fee before the signer sees it.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from backend_risktier.analysis_engine.models import Tier
from backend_risktier.ingestion.models import AccountInfo
from backend_risktier.oracle.soroban_rpc import SorobanRpcClient
from backend_risktier.risk_logging import get_logger

logger = get_logger(__name__)

METHOD_SET_RISK_TIER = "set_risk_tier"
METHOD_SET_SCORE = "set_score"


@dataclass(frozen=True)
class ContractInvocation:
    """Positional call against the risk tier contract."""

    contract_id: str
    method: str
    address: str
    score: int
    tier: Tier
    chosen_tier: Tier

    def arguments(self) -> list[tuple[str, Any]]:
        """(soroban type, value) pairs in positional order."""
        args: list[tuple[str, Any]] = [("address", self.address), ("u32", int(self.score))]
        if self.method == METHOD_SET_RISK_TIER:
            args.append(("symbol", self.tier.value))
            args.append(("symbol", self.chosen_tier.value))
        return args


class EnvelopeBuilder(Protocol):
    """Builds unsigned envelopes and hashes signed ones."""

    async def build(
        self,
        invocation: ContractInvocation,
        account: AccountInfo,
        *,
        fee: int,
        timeout_sec: int,
    ) -> str:
        ...

    def transaction_hash(self, signed_xdr: str) -> str:
        ...


def _to_scval(kind: str, value: Any) -> Any:
    from stellar_sdk import scval

    if kind == "address":
        return scval.to_address(value)
    if kind == "u32":
        return scval.to_uint32(value)
    if kind == "symbol":
        return scval.to_symbol(value)
    raise ValueError(f"Unsupported argument type {kind!r}")


class StellarEnvelopeBuilder:
    """stellar-sdk envelope builder; simulates via Soroban RPC when an rpc client is given."""

    def __init__(self, network_passphrase: str, rpc: SorobanRpcClient | None = None) -> None:
        self._passphrase = network_passphrase
        self._rpc = rpc

    def _assemble(
        self,
        invocation: ContractInvocation,
        account: AccountInfo,
        *,
        fee: int,
        timeout_sec: int,
    ) -> Any:
        from stellar_sdk import Account, TransactionBuilder

        # Fresh Account per build: TransactionBuilder.build() bumps the sequence
        source = Account(account.account_id, account.sequence)
        builder = TransactionBuilder(
            source_account=source,
            network_passphrase=self._passphrase,
            base_fee=fee,
        )
        builder.append_invoke_contract_function_op(
            contract_id=invocation.contract_id,
            function_name=invocation.method,
            parameters=[_to_scval(kind, value) for kind, value in invocation.arguments()],
        )
        return builder.set_timeout(timeout_sec).build()

    async def build(
        self,
        invocation: ContractInvocation,
        account: AccountInfo,
        *,
        fee: int,
        timeout_sec: int,
    ) -> str:
        """
        Return an unsigned base64 envelope.

        With an rpc client the envelope is prepared by stellar-sdk (simulated,
        resource data and auth attached, resource fee added to fee).
        Raises TerminalSubmissionError when simulation reports a contract
        error; transport failures surface as TransientSubmissionError.
        """
        tx = self._assemble(invocation, account, fee=fee, timeout_sec=timeout_sec)
        if self._rpc is None:
            return tx.to_xdr()

        prepared = await self._rpc.prepare_transaction(tx)
        logger.debug(
            "envelope_prepared",
            method=invocation.method,
            inclusion_fee=fee,
            total_fee=prepared.transaction.fee,
        )
        return prepared.to_xdr()

    def transaction_hash(self, signed_xdr: str) -> str:
        from stellar_sdk import TransactionEnvelope

        return TransactionEnvelope.from_xdr(signed_xdr, self._passphrase).hash_hex()
