"""
ConsentVault: the outward surface of MedVault.

Wires key derivation, the envelope codec, the permission state machine,
the consent ledger and the ciphertext store together, and returns plain
dict results suitable for an API layer.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

from .blobstore import CiphertextStore, InMemoryCiphertextStore, blob_key, load_ciphertext_store
from .config import VaultConfig, vault_dir_for
from .crypto import SigningCapability, key_session
from .envelope import decode_envelope, decrypt, encrypt, resource_aad, split_envelope
from .ledger import ConsentLedger, LocalConsentLedger
from .logging import get_logger, log_context
from .models import PermissionRecord, PermissionStatus
from .permissions import AccessDecision, ConsentError, PermissionStateMachine
from .profile import Profile, decrypt_profile, encrypt_profile
from .store import InMemoryPermissionStore, PermissionStore, load_permission_store
from .validation import DEFAULT_RESOURCE_ID, validate_resource_id, validate_wallet

GENERIC_DENIAL = "NOT_AUTHORIZED"
CONSENT_UNVERIFIED = "CONSENT_UNVERIFIED"


class AccessDeniedError(ConsentError):
    """Raised when a requester fetches an envelope without access"""

    def __init__(self, decision: Dict[str, Any]):
        super().__init__(f"Access denied: {decision.get('reason')}")
        self.decision = decision


class ConsentVault:
    """
    Facade over the vault's components.

    Usage:
        vault = ConsentVault()
        vault.request_access(doctor, patient, "lab_results", "read")
        vault.approve_access(patient, doctor, "lab_results", "read")
        vault.check_access(patient, doctor, "lab_results", "read")
        # {"allow": True}
    """

    def __init__(
        self,
        store: Optional[PermissionStore] = None,
        ledger: Optional[ConsentLedger] = None,
        blobs: Optional[CiphertextStore] = None,
        config: Optional[VaultConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config or VaultConfig()
        self.store = store or InMemoryPermissionStore()
        self.ledger = ledger or LocalConsentLedger(salt=self.config.ledger_salt)
        self.blobs = blobs or InMemoryCiphertextStore()
        self.permissions = PermissionStateMachine(self.store, self.ledger, clock)
        self.logger = get_logger()

    @classmethod
    def from_config(cls, root: Path, config: VaultConfig) -> "ConsentVault":
        """Build a vault with the backends named in config, rooted at root."""
        vault_dir = vault_dir_for(root)
        if config.ledger_backend == "file":
            ledger = LocalConsentLedger(vault_dir, salt=config.ledger_salt)
        else:
            ledger = LocalConsentLedger(salt=config.ledger_salt)
        return cls(
            store=load_permission_store(config.permission_backend, vault_dir),
            ledger=ledger,
            blobs=load_ciphertext_store(config.blob_backend, vault_dir),
            config=config,
        )

    def close(self) -> None:
        self.store.close()

    # -- encryption -------------------------------------------------------

    def _aad(self, owner: str, resource_id: str) -> Optional[bytes]:
        if self.config.bind_resource_aad:
            return resource_aad(owner, resource_id)
        return None

    def _key_session(self, owner: str, signer: Optional[SigningCapability]):
        return key_session(owner, signer, self.config.product_name, self.config.signing_timeout)

    def derive_key(self, owner: str, signer: Optional[SigningCapability]) -> bytes:
        """Derive the owner's key. Prefer encrypt()/decrypt(), which wipe it."""
        with self._key_session(owner, signer) as key:
            return bytes(key)

    def encrypt(
        self,
        owner: str,
        signer: Optional[SigningCapability],
        plaintext: bytes,
        resource_id: Optional[str] = None,
    ) -> bytes:
        """Encrypt plaintext under the owner's wallet-derived key."""
        owner = validate_wallet(owner, "owner")
        resource_id = validate_resource_id(resource_id)
        with self._key_session(owner, signer) as key:
            return encrypt(plaintext, key, self._aad(owner, resource_id))

    def decrypt(
        self,
        owner: str,
        signer: Optional[SigningCapability],
        envelope: bytes,
        resource_id: Optional[str] = None,
    ) -> bytes:
        """Decrypt an envelope with the owner's wallet-derived key."""
        owner = validate_wallet(owner, "owner")
        resource_id = validate_resource_id(resource_id)
        split_envelope(envelope)
        with self._key_session(owner, signer) as key:
            return decrypt(envelope, key, self._aad(owner, resource_id))

    # -- ciphertext storage -----------------------------------------------

    def store_envelope(
        self,
        owner: str,
        envelope: Union[bytes, str],
        resource_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Store an envelope (raw bytes, or base64 as received in transit).

        Only the shape is checked; the vault never decrypts what it stores.
        """
        owner = validate_wallet(owner, "owner")
        resource_id = validate_resource_id(resource_id)
        if isinstance(envelope, str):
            envelope = decode_envelope(envelope)
        else:
            split_envelope(envelope)
        self.blobs.put(blob_key(owner, resource_id), envelope)
        with log_context(owner=owner, resource_id=resource_id, operation="store"):
            self.logger.info("Envelope stored", size=len(envelope))
        return {"resourceId": resource_id, "size": len(envelope)}

    def fetch_envelope(
        self,
        owner: str,
        requester: str,
        resource_id: Optional[str],
        scope: str,
    ) -> bytes:
        """
        Return the stored envelope if requester may read it.

        The owner always may. Anyone else needs check_access to allow and,
        where the ledger can verify, the recorded consent to check out.

        Raises:
            AccessDeniedError: Carrying the denial decision
            NotFound: If access is allowed but nothing is stored
        """
        owner = validate_wallet(owner, "owner")
        requester = validate_wallet(requester, "requester")
        resource_id = validate_resource_id(resource_id)
        if requester != owner:
            decision = self.check_access(owner, requester, resource_id, scope)
            if not decision["allow"]:
                raise AccessDeniedError(decision)
            if not self._consent_verified(owner, requester, resource_id, scope):
                reason = GENERIC_DENIAL if self.config.collapse_denials else CONSENT_UNVERIFIED
                raise AccessDeniedError({"allow": False, "reason": reason})
        return self.blobs.get(blob_key(owner, resource_id))

    def _consent_verified(self, owner: str, requester: str, resource_id: str, scope: str) -> bool:
        record = self.permissions.get_record(owner, requester, resource_id, scope)
        if record is None or not record.tx_id:
            return False
        verify = getattr(self.ledger, "verify_consent", None)
        if verify is None:
            return True
        verified = verify(record.tx_id, owner, requester, resource_id, scope, proof=record.proof)
        if verified is False:
            with log_context(owner=owner, requester=requester, resource_id=resource_id,
                             scope=scope, operation="fetch"):
                self.logger.warning("Consent proof failed ledger verification", tx_id=record.tx_id)
            return False
        # None: ledger offers no verification
        return True

    # -- profiles ---------------------------------------------------------

    def save_profile(
        self,
        owner: str,
        signer: Optional[SigningCapability],
        profile: Profile,
    ) -> Dict[str, Any]:
        owner = validate_wallet(owner, "owner")
        with self._key_session(owner, signer) as key:
            envelope = encrypt_profile(profile, key, self._aad(owner, DEFAULT_RESOURCE_ID))
        return self.store_envelope(owner, envelope, DEFAULT_RESOURCE_ID)

    def load_profile(self, owner: str, signer: Optional[SigningCapability]) -> Profile:
        owner = validate_wallet(owner, "owner")
        envelope = self.blobs.get(blob_key(owner, DEFAULT_RESOURCE_ID))
        with self._key_session(owner, signer) as key:
            return decrypt_profile(envelope, key, self._aad(owner, DEFAULT_RESOURCE_ID))

    # -- permissions ------------------------------------------------------

    def request_access(
        self,
        requester: str,
        owner: str,
        resource_id: Optional[str] = None,
        scope: str = "read",
    ) -> Dict[str, Any]:
        record = self.permissions.request(requester, owner, resource_id, scope)
        return {"status": record.status.value}

    def approve_access(
        self,
        owner: str,
        requester: str,
        resource_id: Optional[str] = None,
        scope: str = "read",
        expires_at: Optional[datetime] = None,
        caller: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = self.permissions.approve(owner, requester, resource_id, scope, expires_at, caller)
        return {"status": record.status.value, "txId": record.tx_id, "proof": record.proof}

    def deny_access(
        self,
        owner: str,
        requester: str,
        resource_id: Optional[str] = None,
        scope: str = "read",
        caller: Optional[str] = None,
    ) -> Dict[str, Any]:
        record = self.permissions.deny(owner, requester, resource_id, scope, caller)
        return {"status": record.status.value}

    def revoke_access(
        self,
        owner: str,
        requester: str,
        resource_id: Optional[str] = None,
        caller: Optional[str] = None,
    ) -> Dict[str, Any]:
        revoked = self.permissions.revoke(owner, requester, resource_id, caller)
        return {"status": PermissionStatus.REVOKED.value, "count": len(revoked)}

    def check_access(
        self,
        owner: str,
        requester: str,
        resource_id: Optional[str] = None,
        scope: str = "read",
    ) -> Dict[str, Any]:
        """
        {"allow": True} or {"allow": False, "reason": ...}.

        With collapse_denials set, every denial reports NOT_AUTHORIZED so
        callers cannot tell whether a relationship ever existed.
        """
        decision: AccessDecision = self.permissions.check_access(owner, requester, resource_id, scope)
        result = decision.to_dict()
        if not decision.allow and self.config.collapse_denials:
            result["reason"] = GENERIC_DENIAL
        return result

    def list_pending(self, owner: str) -> List[PermissionRecord]:
        return self.permissions.list_pending(owner)

    def list_records(self, **filters) -> List[PermissionRecord]:
        return self.permissions.list_records(**filters)
