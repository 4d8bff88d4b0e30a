"""
Wallet-derived key material for MedVault.

A profile encryption key is never stored. Every operation asks the
owner's wallet to sign a fixed message and runs the signature through
HKDF-SHA256 (no salt, no info) to get 32 key bytes. The same wallet
always yields the same key because wallet signatures over a fixed
message are deterministic (Ed25519 / CIP-30 signData).

Features:
- SigningCapability interface for wallets
- derive_key() with an optional signing timeout
- key_session() context manager that wipes the key after use
- LocalWallet: an Ed25519 signer for tooling and tests
- WalletKeyManager: on-disk wallet keys under .medvault/wallets/
"""

import hashlib
import json
import os
import queue
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from .errors import VaultError
from .logging import get_logger, redact_wallet

DEFAULT_PRODUCT_NAME = "MedLedger"
DERIVED_KEY_LENGTH = 32
LOCAL_ADDRESS_PREFIX = "addr_local1"


class CryptoError(VaultError):
    """Base exception for key derivation and wallet errors"""
    pass


class SigningUnavailable(CryptoError):
    """
    Raised when a wallet cannot produce a signature.

    Covers locked wallets, user rejection, a missing capability and a
    signing timeout. Requires user action; never retried automatically.
    """
    pass


class WalletNotFoundError(CryptoError):
    """Raised when a stored wallet key does not exist"""
    pass


class SigningCapability(ABC):
    """
    A wallet's ability to sign messages.

    Implementations may block while waiting for the user to confirm.
    They raise SigningUnavailable when no signature can be produced.
    """

    # Wallet address this capability is bound to, if known
    address: Optional[str] = None

    @abstractmethod
    def sign(self, message: bytes) -> Union[bytes, str]:
        """Sign message and return the signature (bytes or hex string)."""
        raise NotImplementedError


def key_message(product_name: str = DEFAULT_PRODUCT_NAME) -> bytes:
    """The fixed message a wallet signs to derive its profile key."""
    return f"{product_name} Profile Encryption Key".encode("utf-8")


def _signature_bytes(signature: Union[bytes, bytearray, str, None]) -> bytes:
    """Normalize a wallet signature to raw bytes."""
    if signature is None:
        raise SigningUnavailable("Wallet returned no signature")
    if isinstance(signature, str):
        try:
            raw = bytes.fromhex(signature)
        except ValueError:
            raw = signature.encode("utf-8")
    else:
        raw = bytes(signature)
    if not raw:
        raise SigningUnavailable("Wallet returned an empty signature")
    return raw


def _request_signature(
    signer: SigningCapability,
    message: bytes,
    timeout: Optional[float],
) -> bytes:
    """Ask the signer for a signature, bounded by timeout if given."""
    if timeout is None:
        return _signature_bytes(signer.sign(message))

    results = queue.Queue(maxsize=1)

    def run():
        try:
            results.put((True, signer.sign(message)))
        except Exception as e:
            results.put((False, e))

    # Daemon so a wallet still waiting on the user never holds up exit
    threading.Thread(target=run, name="medvault-sign", daemon=True).start()
    try:
        ok, value = results.get(timeout=timeout)
    except queue.Empty:
        raise SigningUnavailable(f"Wallet did not respond within {timeout}s") from None
    if not ok:
        raise value
    return _signature_bytes(value)


def derive_key(
    wallet_address: str,
    signer: Optional[SigningCapability],
    product_name: str = DEFAULT_PRODUCT_NAME,
    timeout: Optional[float] = None,
) -> bytes:
    """
    Derive the 32-byte profile encryption key for a wallet.

    Args:
        wallet_address: Address of the wallet whose key is derived
        signer: Signing capability bound to that wallet
        product_name: Product name embedded in the fixed message
        timeout: Seconds to wait for the signature (None = wait forever)

    Returns:
        32 key bytes

    Raises:
        SigningUnavailable: If no signature could be obtained
    """
    if signer is None:
        raise SigningUnavailable("No signing capability available")

    bound_address = getattr(signer, "address", None)
    if bound_address is not None and bound_address != wallet_address:
        raise SigningUnavailable(
            f"Signer is bound to a different wallet ({redact_wallet(bound_address)})"
        )

    message = key_message(product_name)
    try:
        signature = _request_signature(signer, message, timeout)
    except SigningUnavailable:
        raise
    except Exception as e:
        raise SigningUnavailable(f"Wallet could not sign: {e}") from e

    hkdf = HKDF(algorithm=hashes.SHA256(), length=DERIVED_KEY_LENGTH, salt=None, info=None)
    key = hkdf.derive(signature)
    get_logger().debug("Derived profile key", wallet=redact_wallet(wallet_address))
    return key


def wipe(buffer: bytearray) -> None:
    """Overwrite a mutable key buffer with zeros."""
    for i in range(len(buffer)):
        buffer[i] = 0


@contextmanager
def key_session(
    wallet_address: str,
    signer: Optional[SigningCapability],
    product_name: str = DEFAULT_PRODUCT_NAME,
    timeout: Optional[float] = None,
):
    """
    Derive a key for the duration of one operation.

    The key is yielded as a bytearray and zeroed when the block exits.

    Usage:
        with key_session(address, wallet) as key:
            envelope = encrypt(plaintext, key)
    """
    key = bytearray(derive_key(wallet_address, signer, product_name, timeout))
    try:
        yield key
    finally:
        wipe(key)


def address_from_public_key(public_bytes: bytes) -> str:
    """Build a local wallet address from a raw Ed25519 public key."""
    return LOCAL_ADDRESS_PREFIX + hashlib.sha256(public_bytes).hexdigest()[:48]


class LocalWallet(SigningCapability):
    """
    Ed25519 signing capability held in process.

    Used by the CLI and tests in place of a browser wallet. A locked
    wallet refuses to sign, like a wallet extension waiting for unlock.
    """

    def __init__(self, private_key: Optional[Ed25519PrivateKey] = None, locked: bool = False):
        self._private_key = private_key or Ed25519PrivateKey.generate()
        self.locked = locked
        self.address = address_from_public_key(self.public_bytes())

    @classmethod
    def generate(cls) -> "LocalWallet":
        return cls()

    def public_bytes(self) -> bytes:
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )

    def sign(self, message: bytes) -> bytes:
        if self.locked:
            raise SigningUnavailable("Wallet is locked")
        return self._private_key.sign(message)

    def private_pem(self, password: Optional[str] = None) -> bytes:
        if password:
            encryption = serialization.BestAvailableEncryption(password.encode())
        else:
            encryption = serialization.NoEncryption()
        return self._private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=encryption,
        )

    def public_pem(self) -> bytes:
        return self._private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    @classmethod
    def from_pem(cls, pem_data: bytes, password: Optional[str] = None) -> "LocalWallet":
        try:
            pwd = password.encode() if password else None
            private_key = serialization.load_pem_private_key(pem_data, password=pwd)
        except (ValueError, TypeError) as e:
            raise CryptoError(f"Failed to load wallet key: {e}") from e
        if not isinstance(private_key, Ed25519PrivateKey):
            raise CryptoError("Wallet key is not an Ed25519 key")
        return cls(private_key)


@dataclass
class WalletInfo:
    """Stored wallet metadata (never the key itself)"""
    name: str
    address: str
    created_at: str
    encrypted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "created_at": self.created_at,
            "encrypted": self.encrypted,
        }


class WalletKeyManager:
    """
    Manages local wallet keys for a vault directory.

    Keys are stored in .medvault/wallets/:
        .medvault/wallets/
        ├── default.key      # Private key (PKCS#8 PEM, optionally encrypted)
        ├── default.pub      # Public key
        └── wallets.json     # Wallet metadata
    """

    def __init__(self, vault_dir: Path):
        self.vault_dir = Path(vault_dir)
        self.wallets_dir = self.vault_dir / "wallets"
        self.metadata_file = self.wallets_dir / "wallets.json"

    def _ensure_dir(self) -> None:
        self.wallets_dir.mkdir(parents=True, exist_ok=True)

    def _load_metadata(self) -> Dict[str, Any]:
        if self.metadata_file.exists():
            with open(self.metadata_file, "r") as f:
                return json.load(f)
        return {"wallets": {}, "default_wallet": None}

    def _save_metadata(self, metadata: Dict[str, Any]) -> None:
        self._ensure_dir()
        with open(self.metadata_file, "w") as f:
            json.dump(metadata, f, indent=2)

    def create_wallet(
        self,
        name: str = "default",
        password: Optional[str] = None,
        set_default: bool = True,
    ) -> WalletInfo:
        """
        Generate and store a new wallet key.

        Args:
            name: Name for the wallet
            password: Optional password for private key encryption
            set_default: If True, make it the default wallet

        Returns:
            WalletInfo for the new wallet
        """
        self._ensure_dir()
        wallet = LocalWallet.generate()

        private_path = self.wallets_dir / f"{name}.key"
        with open(private_path, "wb") as f:
            f.write(wallet.private_pem(password))
        os.chmod(private_path, 0o600)

        with open(self.wallets_dir / f"{name}.pub", "wb") as f:
            f.write(wallet.public_pem())

        info = WalletInfo(
            name=name,
            address=wallet.address,
            created_at=datetime.now().isoformat(),
            encrypted=password is not None,
        )

        metadata = self._load_metadata()
        metadata["wallets"][name] = info.to_dict()
        if set_default or metadata.get("default_wallet") is None:
            metadata["default_wallet"] = name
        self._save_metadata(metadata)

        get_logger().info("Created wallet", name=name, wallet=redact_wallet(wallet.address))
        return info

    def resolve_name(self, name: Optional[str] = None) -> str:
        name = name or self.get_default_name()
        if not name:
            raise WalletNotFoundError("No wallet specified and no default wallet set")
        return name

    def load_wallet(self, name: Optional[str] = None, password: Optional[str] = None) -> LocalWallet:
        """
        Load a wallet by name (default wallet if omitted).

        Raises:
            WalletNotFoundError: If the wallet doesn't exist
        """
        name = self.resolve_name(name)
        private_path = self.wallets_dir / f"{name}.key"
        if not private_path.exists():
            raise WalletNotFoundError(f"Wallet '{name}' not found")
        with open(private_path, "rb") as f:
            return LocalWallet.from_pem(f.read(), password)

    def get_info(self, name: Optional[str] = None) -> WalletInfo:
        name = self.resolve_name(name)
        meta = self._load_metadata().get("wallets", {}).get(name)
        if meta is None:
            raise WalletNotFoundError(f"Wallet '{name}' not found")
        return WalletInfo(**meta)

    def list_wallets(self) -> Dict[str, Dict[str, Any]]:
        return self._load_metadata().get("wallets", {})

    def get_default_name(self) -> Optional[str]:
        return self._load_metadata().get("default_wallet")

    def set_default(self, name: str) -> None:
        metadata = self._load_metadata()
        if name not in metadata.get("wallets", {}):
            raise WalletNotFoundError(f"Wallet '{name}' not found")
        metadata["default_wallet"] = name
        self._save_metadata(metadata)

    def export_public_key(self, name: Optional[str] = None) -> str:
        name = self.resolve_name(name)
        public_path = self.wallets_dir / f"{name}.pub"
        if not public_path.exists():
            raise WalletNotFoundError(f"Public key for wallet '{name}' not found")
        return public_path.read_text()
