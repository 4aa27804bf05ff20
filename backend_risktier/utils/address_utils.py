"""Stellar address validation utilities (StrKey decode with checksum via stellar-sdk)."""

from __future__ import annotations

from backend_risktier.core.exceptions import ValidationError

ADDRESS_LENGTH = 56
ACCOUNT_PREFIX = "G"
CONTRACT_PREFIX = "C"


def is_valid_account(address: str) -> bool:
    """True for a checksum-valid ed25519 account StrKey (G...)."""
    from stellar_sdk import StrKey

    return StrKey.is_valid_ed25519_public_key(address)


def is_valid_contract(address: str) -> bool:
    """True for a checksum-valid contract StrKey (C...)."""
    from stellar_sdk import StrKey

    return StrKey.is_valid_contract(address)


def is_valid_address(address: str | None) -> bool:
    """Return True if address decodes as an account or contract StrKey."""
    if not isinstance(address, str):
        return False
    value = address.strip()
    if len(value) != ADDRESS_LENGTH:
        return False
    return is_valid_account(value) or is_valid_contract(value)


def address_type(address: str) -> str:
    """Return "account" for G... addresses and "contract" for C... addresses."""
    return "contract" if address.startswith(CONTRACT_PREFIX) else "account"


def require_address(address: str | None, *, what: str = "address") -> str:
    """Return the stripped address or raise ValidationError."""
    if not address or not str(address).strip():
        raise ValidationError(f"{what} must be non-empty")
    value = str(address).strip()
    if len(value) != ADDRESS_LENGTH:
        raise ValidationError(f"Invalid {what}: expected {ADDRESS_LENGTH} characters, got {len(value)}")
    if value[0] not in (ACCOUNT_PREFIX, CONTRACT_PREFIX):
        raise ValidationError(
            f"Invalid {what}: must start with {ACCOUNT_PREFIX} (account) or {CONTRACT_PREFIX} (contract)"
        )
    if not is_valid_address(value):
        raise ValidationError(f"Invalid {what}: not a valid StrKey (bad encoding or checksum)")
    return value


def require_contract_id(contract_id: str | None) -> str:
    """Return the contract id or raise ValidationError unless it is a C... address."""
    value = require_address(contract_id, what="contract id")
    if not value.startswith(CONTRACT_PREFIX):
        raise ValidationError(f"Invalid contract id: must start with {CONTRACT_PREFIX}")
    return value
