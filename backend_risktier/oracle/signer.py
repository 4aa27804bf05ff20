"""
Transaction signers.

The commit pipeline only needs async sign(unsigned_xdr) -> signed_xdr. A
signer that is declined by its holder (wallet prompt closed, user rejected)
must raise SignerRejectedError so the pipeline can finish without a
fallback and without touching the rate limit. A signer that cannot be
reached raises TransientSubmissionError.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Protocol

from backend_risktier.core.exceptions import SignerRejectedError, TransientSubmissionError
from backend_risktier.risk_logging import get_logger

logger = get_logger(__name__)

CANCEL_MARKERS = ("declined", "rejected", "cancel", "denied")


class Signer(Protocol):
    async def sign(self, unsigned_xdr: str) -> str:
        ...


def is_user_cancellation(error: BaseException | str) -> bool:
    """True if a signer error message reads like the user declined to sign."""
    message = str(error).lower()
    return any(marker in message for marker in CANCEL_MARKERS)


class KeypairSigner:
    """Signs with a local secret seed (oracle key). Never asks anyone, so never cancels."""

    def __init__(self, secret: str, network_passphrase: str) -> None:
        from stellar_sdk import Keypair

        self._keypair = Keypair.from_secret(secret)
        self._passphrase = network_passphrase

    @property
    def public_key(self) -> str:
        return self._keypair.public_key

    async def sign(self, unsigned_xdr: str) -> str:
        from stellar_sdk import TransactionEnvelope

        envelope = TransactionEnvelope.from_xdr(unsigned_xdr, self._passphrase)
        envelope.sign(self._keypair)
        return envelope.to_xdr()


class CallbackSigner:
    """
    Adapter for an external wallet bridge given as an async callable.

    Failures whose message reads like a user cancellation become
    SignerRejectedError; any other failure becomes TransientSubmissionError.
    """

    def __init__(self, sign_fn: Callable[[str], Awaitable[str]]) -> None:
        self._sign_fn = sign_fn

    async def sign(self, unsigned_xdr: str) -> str:
        try:
            signed = await self._sign_fn(unsigned_xdr)
        except (SignerRejectedError, TransientSubmissionError):
            raise
        except Exception as e:
            if is_user_cancellation(e):
                raise SignerRejectedError(str(e)) from e
            logger.warning("signer_bridge_failed", error=str(e))
            raise TransientSubmissionError(f"Signer unavailable: {e}") from e
        if not signed:
            raise SignerRejectedError("Signer returned no signed transaction")
        return signed
