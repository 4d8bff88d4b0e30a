"""
AES-256-GCM envelope codec for MedVault.

Envelope layout (raw bytes at rest, base64 in transit):

    IV (12 bytes) | TAG (16 bytes) | CIPHERTEXT (n bytes)

The envelope is always exactly 28 + n bytes long; there is no padding
and no header beyond the fixed offsets. The ciphertext store holds these
bytes opaquely and never calls decrypt().

No associated data is bound by default. Callers that want an envelope
tied to one resource pass the same ``aad`` to encrypt() and decrypt();
see resource_aad().
"""

import base64
import binascii
import json
import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import VaultError
from .logging import get_logger

IV_LENGTH = 12    # 96-bit GCM nonce
TAG_LENGTH = 16   # 128-bit GCM tag
KEY_LENGTH = 32   # AES-256
HEADER_LENGTH = IV_LENGTH + TAG_LENGTH
MIN_ENVELOPE_LENGTH = HEADER_LENGTH


class EnvelopeError(VaultError):
    """Base exception for envelope codec errors"""
    pass


class MalformedEnvelope(EnvelopeError):
    """Raised when an envelope is too short or cannot be decoded"""
    pass


class AuthenticationFailure(EnvelopeError):
    """Raised when the GCM tag does not verify (tampering or wrong key)"""
    pass


class InvalidKeyLength(EnvelopeError):
    """Raised when a key is not exactly 32 bytes"""
    pass


def _check_key(key) -> None:
    if key is None or len(key) != KEY_LENGTH:
        length = 0 if key is None else len(key)
        raise InvalidKeyLength(f"Key must be {KEY_LENGTH} bytes, got {length}")


def generate_key() -> bytes:
    """Generate a random 32-byte key (for tooling and tests)."""
    return os.urandom(KEY_LENGTH)


def encrypt(plaintext: bytes, key: bytes, aad: Optional[bytes] = None) -> bytes:
    """
    Encrypt plaintext into an envelope.

    Args:
        plaintext: Bytes to encrypt (may be empty)
        key: 32-byte AES key
        aad: Optional associated data to authenticate but not encrypt

    Returns:
        IV | TAG | CIPHERTEXT, exactly 28 + len(plaintext) bytes
    """
    _check_key(key)
    iv = os.urandom(IV_LENGTH)
    # AESGCM appends the tag to the ciphertext
    sealed = AESGCM(key).encrypt(iv, bytes(plaintext), aad)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return iv + tag + ciphertext


def split_envelope(envelope: bytes) -> Tuple[bytes, bytes, bytes]:
    """
    Split an envelope at its fixed offsets.

    Returns:
        Tuple of (iv, tag, ciphertext)

    Raises:
        MalformedEnvelope: If the envelope is shorter than 28 bytes
    """
    if envelope is None or len(envelope) < MIN_ENVELOPE_LENGTH:
        length = 0 if envelope is None else len(envelope)
        raise MalformedEnvelope(
            f"Envelope too short: {length} bytes, need at least {MIN_ENVELOPE_LENGTH}"
        )
    envelope = bytes(envelope)
    return (
        envelope[:IV_LENGTH],
        envelope[IV_LENGTH:HEADER_LENGTH],
        envelope[HEADER_LENGTH:],
    )


def decrypt(envelope: bytes, key: bytes, aad: Optional[bytes] = None) -> bytes:
    """
    Decrypt an envelope produced by encrypt().

    The length check happens before any cryptographic work. On any
    authentication failure no plaintext is returned.

    Raises:
        MalformedEnvelope: If the envelope is shorter than 28 bytes
        AuthenticationFailure: If the tag does not verify
    """
    iv, tag, ciphertext = split_envelope(envelope)
    _check_key(key)
    try:
        return AESGCM(key).decrypt(iv, ciphertext + tag, aad)
    except InvalidTag:
        get_logger().warning(
            "Envelope authentication failed",
            envelope_length=len(envelope),
        )
        raise AuthenticationFailure(
            "Envelope authentication failed: wrong key or tampered data"
        ) from None


def encode_envelope(envelope: bytes) -> str:
    """Encode an envelope as base64 for transit."""
    return base64.b64encode(envelope).decode("ascii")


def decode_envelope(data: str) -> bytes:
    """
    Decode a base64 envelope received in transit.

    Raises:
        MalformedEnvelope: If the data is not valid base64 or too short
    """
    try:
        raw = base64.b64decode(data.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError, AttributeError) as e:
        raise MalformedEnvelope(f"Envelope is not valid base64: {e}") from e
    split_envelope(raw)
    return raw


def resource_aad(owner: str, resource_id: str) -> bytes:
    """Canonical associated data binding an envelope to one resource."""
    return json.dumps(
        {"owner": owner, "resource_id": resource_id},
        separators=(",", ":"),
        sort_keys=True,
    ).encode("utf-8")
