"""
Ciphertext storage for MedVault.

A CiphertextStore keeps envelopes as opaque bytes under a resource key.
It never decrypts and never inspects anything past the bytes it is given.
"""

import hashlib
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional

from .errors import VaultError
from .filelock import atomic_write_bytes

BLOBS_DIR = "blobs"


class BlobStoreError(VaultError):
    """Base exception for ciphertext store errors"""
    pass


class StorageUnavailable(BlobStoreError):
    """Raised when the store cannot be read or written"""
    pass


class NotFound(BlobStoreError):
    """Raised when no envelope is stored under a key"""
    pass


class CiphertextStore(ABC):
    """Opaque envelope store"""

    @abstractmethod
    def put(self, resource_key: str, envelope: bytes) -> None:
        """Store envelope bytes, replacing any previous value."""

    @abstractmethod
    def get(self, resource_key: str) -> bytes:
        """
        Return the stored envelope bytes.

        Raises:
            NotFound: If nothing is stored under resource_key
        """


class InMemoryCiphertextStore(CiphertextStore):
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, resource_key: str, envelope: bytes) -> None:
        with self._lock:
            self._blobs[resource_key] = bytes(envelope)

    def get(self, resource_key: str) -> bytes:
        with self._lock:
            if resource_key not in self._blobs:
                raise NotFound(f"No envelope stored for '{resource_key}'")
            return self._blobs[resource_key]


class FileCiphertextStore(CiphertextStore):
    """
    One file per envelope, named by the SHA-256 of its resource key.

    Hashing the key keeps wallet addresses out of file names.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, resource_key: str) -> Path:
        digest = hashlib.sha256(resource_key.encode("utf-8")).hexdigest()
        return self.root / f"{digest}.bin"

    def put(self, resource_key: str, envelope: bytes) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            atomic_write_bytes(self._path(resource_key), bytes(envelope))
        except OSError as e:
            raise StorageUnavailable(f"Cannot write envelope: {e}") from e

    def get(self, resource_key: str) -> bytes:
        path = self._path(resource_key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            raise NotFound(f"No envelope stored for '{resource_key}'") from None
        except OSError as e:
            raise StorageUnavailable(f"Cannot read envelope: {e}") from e


def blob_key(owner: str, resource_id: str) -> str:
    """Storage key for an owner's resource."""
    return f"{owner}/{resource_id}"


def load_ciphertext_store(backend: str = "file", vault_dir: Optional[Path] = None) -> CiphertextStore:
    if backend == "memory":
        return InMemoryCiphertextStore()
    if backend == "file":
        base = Path(vault_dir) if vault_dir else Path(".medvault")
        return FileCiphertextStore(base / BLOBS_DIR)
    raise BlobStoreError(f"Unknown blob backend: {backend}")
