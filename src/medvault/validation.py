"""
Input Validation for MedVault

Checks the identifiers that cross the call boundary before they reach a
store or the ledger:
- Wallet addresses (bech32 or hex encoded)
- Resource identifiers
- Access scopes
"""

import re
from typing import Optional

from .errors import VaultError

# Convention: an omitted resource id at the call boundary means the profile
DEFAULT_RESOURCE_ID = "profile"

WALLET_MAX_LENGTH = 256
RESOURCE_MAX_LENGTH = 128
SCOPE_MAX_LENGTH = 64

WALLET_PATTERN = re.compile(r'^[A-Za-z0-9_]+$')
RESOURCE_PATTERN = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9_\-\.:/]*$')
SCOPE_PATTERN = re.compile(r'^[a-zA-Z][a-zA-Z0-9_\-\.]*$')


class ValidationError(VaultError):
    """Raised when input validation fails."""
    pass


class InvalidWalletError(ValidationError):
    """Raised when a wallet address is malformed."""
    pass


class InvalidResourceError(ValidationError):
    """Raised when a resource id or scope is malformed."""
    pass


def validate_wallet(address: str, field_name: str = "wallet") -> str:
    """
    Validate a wallet address.

    Identity is exact string match, so the address is only checked, never
    normalized (no case folding).

    Args:
        address: Wallet address to validate
        field_name: Name of the field for error messages

    Returns:
        The address unchanged

    Raises:
        InvalidWalletError: If the address is empty or malformed
    """
    if not address or not isinstance(address, str):
        raise InvalidWalletError(f"{field_name} cannot be empty")

    if address != address.strip():
        raise InvalidWalletError(f"{field_name} has leading or trailing whitespace")

    if len(address) > WALLET_MAX_LENGTH:
        raise InvalidWalletError(
            f"{field_name} too long: {len(address)} > {WALLET_MAX_LENGTH} characters"
        )

    if not WALLET_PATTERN.match(address):
        raise InvalidWalletError(f"{field_name} contains invalid characters")

    return address


def validate_resource_id(resource_id: Optional[str]) -> str:
    """
    Validate a resource id, applying the "profile" default.

    Raises:
        InvalidResourceError: If the resource id is malformed
    """
    if resource_id is None:
        return DEFAULT_RESOURCE_ID

    if not resource_id:
        raise InvalidResourceError("resource_id cannot be empty")

    if len(resource_id) > RESOURCE_MAX_LENGTH:
        raise InvalidResourceError(
            f"resource_id too long: {len(resource_id)} > {RESOURCE_MAX_LENGTH} characters"
        )

    if not RESOURCE_PATTERN.match(resource_id) or ".." in resource_id:
        raise InvalidResourceError(f"resource_id contains invalid characters: {resource_id!r}")

    return resource_id


def validate_scope(scope: str) -> str:
    """
    Validate an access scope.

    Scopes match by exact string; no hierarchy or wildcards are recognized.

    Raises:
        InvalidResourceError: If the scope is malformed
    """
    if not scope:
        raise InvalidResourceError("scope cannot be empty")

    if len(scope) > SCOPE_MAX_LENGTH:
        raise InvalidResourceError(
            f"scope too long: {len(scope)} > {SCOPE_MAX_LENGTH} characters"
        )

    if not SCOPE_PATTERN.match(scope):
        raise InvalidResourceError(f"scope contains invalid characters: {scope!r}")

    return scope
