# Risk oracle: per-address rate limiting and the on-chain commit pipeline.

from backend_risktier.oracle.commit_pipeline import (
    CommitErrorKind,
    CommitMethod,
    CommitPipeline,
    CommitResult,
    CommitState,
    FallbackCommit,
)
from backend_risktier.oracle.envelope import ContractInvocation, EnvelopeBuilder, StellarEnvelopeBuilder
from backend_risktier.oracle.rate_limiter import RateLimiter, RateLimitState, RateLimitStatus, format_remaining
from backend_risktier.oracle.signer import CallbackSigner, KeypairSigner, Signer
from backend_risktier.oracle.soroban_rpc import SendStatus, SorobanRpcClient, TxStatus

__all__ = [
    "CommitErrorKind",
    "CommitMethod",
    "CommitPipeline",
    "CommitResult",
    "CommitState",
    "FallbackCommit",
    "ContractInvocation",
    "EnvelopeBuilder",
    "StellarEnvelopeBuilder",
    "RateLimiter",
    "RateLimitState",
    "RateLimitStatus",
    "format_remaining",
    "CallbackSigner",
    "KeypairSigner",
    "Signer",
    "SendStatus",
    "SorobanRpcClient",
    "TxStatus",
]
