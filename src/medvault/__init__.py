"""
MedVault: wallet-encrypted records with consent-gated sharing

Profiles and records are encrypted client-side under a key derived from
the owner's wallet signature. Storage only ever sees ciphertext. Sharing
goes through a permission lifecycle whose approvals are recorded on a
consent ledger.
"""

__version__ = "0.1.0"
__author__ = "MedVault Contributors"

from .errors import VaultError
from .envelope import (
    encrypt,
    decrypt,
    generate_key,
    encode_envelope,
    decode_envelope,
    resource_aad,
    EnvelopeError,
    MalformedEnvelope,
    AuthenticationFailure,
    InvalidKeyLength,
)
from .crypto import (
    SigningCapability,
    LocalWallet,
    WalletKeyManager,
    derive_key,
    key_session,
    key_message,
    CryptoError,
    SigningUnavailable,
    WalletNotFoundError,
)
from .models import PermissionKey, PermissionRecord, PermissionStatus
from .permissions import (
    PermissionStateMachine,
    AccessDecision,
    DenialReason,
    ConsentError,
    Unauthorized,
    Conflict,
    RecordNotFound,
)
from .store import (
    PermissionStore,
    InMemoryPermissionStore,
    JsonPermissionStore,
    SQLitePermissionStore,
    PermissionStoreError,
    PermissionStoreUnavailable,
)
from .ledger import (
    ConsentLedger,
    ConsentProof,
    LocalConsentLedger,
    LedgerError,
    LedgerUnavailable,
    LedgerRejected,
)
from .blobstore import (
    CiphertextStore,
    InMemoryCiphertextStore,
    FileCiphertextStore,
    BlobStoreError,
    StorageUnavailable,
    NotFound,
)
from .profile import Profile, ProfileError
from .config import VaultConfig, ConfigError, find_vault_root, init_vault, load_config
from .service import ConsentVault, AccessDeniedError

__all__ = [
    "VaultError",
    # Envelope
    "encrypt",
    "decrypt",
    "generate_key",
    "encode_envelope",
    "decode_envelope",
    "resource_aad",
    "EnvelopeError",
    "MalformedEnvelope",
    "AuthenticationFailure",
    "InvalidKeyLength",
    # Keys
    "SigningCapability",
    "LocalWallet",
    "WalletKeyManager",
    "derive_key",
    "key_session",
    "key_message",
    "CryptoError",
    "SigningUnavailable",
    "WalletNotFoundError",
    # Permissions
    "PermissionKey",
    "PermissionRecord",
    "PermissionStatus",
    "PermissionStateMachine",
    "AccessDecision",
    "DenialReason",
    "ConsentError",
    "Unauthorized",
    "Conflict",
    "RecordNotFound",
    "PermissionStore",
    "InMemoryPermissionStore",
    "JsonPermissionStore",
    "SQLitePermissionStore",
    "PermissionStoreError",
    "PermissionStoreUnavailable",
    # Ledger
    "ConsentLedger",
    "ConsentProof",
    "LocalConsentLedger",
    "LedgerError",
    "LedgerUnavailable",
    "LedgerRejected",
    # Ciphertext storage
    "CiphertextStore",
    "InMemoryCiphertextStore",
    "FileCiphertextStore",
    "BlobStoreError",
    "StorageUnavailable",
    "NotFound",
    # Profiles, config, facade
    "Profile",
    "ProfileError",
    "VaultConfig",
    "ConfigError",
    "find_vault_root",
    "init_vault",
    "load_config",
    "ConsentVault",
    "AccessDeniedError",
]
