"""
Permission lifecycle for MedVault.

A requester asks for access to one (owner, resource_id, scope). The owner
approves through the consent ledger, may deny a pending request, and may
revoke a granted one. Expiry is derived from time when access is checked.

    REQUESTED ──approve──> APPROVED ──revoke──> REVOKED
        │                     │
        └──deny──> DENIED     └──(expires_at passed, on check)──> EXPIRED

Every transition is one compare-and-set on the permission store, so two
racing approvals cannot both win.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .errors import VaultError
from .ledger import ConsentLedger, LedgerError
from .logging import get_logger, log_context
from .models import (
    PermissionKey,
    PermissionRecord,
    PermissionStatus,
    as_utc,
    utc_now,
)
from .store import PermissionStore
from .validation import validate_resource_id, validate_scope, validate_wallet


class ConsentError(VaultError):
    """Base exception for permission lifecycle errors"""
    pass


class Unauthorized(ConsentError):
    """Raised when someone other than the record owner acts on it"""
    pass


class Conflict(ConsentError):
    """Raised when the record is not in the state the transition needs"""
    pass


class RecordNotFound(ConsentError):
    """Raised when a transition targets a record that does not exist"""
    pass


class DenialReason(Enum):
    """Why check_access refused"""
    NOT_FOUND = "NOT_FOUND"
    NOT_APPROVED = "NOT_APPROVED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"


_STATUS_REASONS = {
    PermissionStatus.REQUESTED: DenialReason.NOT_APPROVED,
    PermissionStatus.DENIED: DenialReason.NOT_APPROVED,
    PermissionStatus.REVOKED: DenialReason.REVOKED,
    PermissionStatus.EXPIRED: DenialReason.EXPIRED,
}


@dataclass
class AccessDecision:
    """Outcome of check_access. Denials are results, not exceptions."""
    allow: bool
    reason: Optional[DenialReason] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"allow": self.allow}
        if self.reason is not None:
            data["reason"] = self.reason.value
        return data


class PermissionStateMachine:
    """
    Drives permission records through their lifecycle.

    Args:
        store: Transactional permission store
        ledger: Consent ledger written on every approval
        clock: Returns the current time (aware UTC); injectable for tests
    """

    def __init__(
        self,
        store: PermissionStore,
        ledger: ConsentLedger,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.ledger = ledger
        self.clock = clock or utc_now
        self.logger = get_logger()

    def _now(self) -> datetime:
        return as_utc(self.clock())

    @staticmethod
    def _key(owner: str, requester: str, resource_id: Optional[str], scope: str) -> PermissionKey:
        return PermissionKey(
            owner=validate_wallet(owner, "owner"),
            requester=validate_wallet(requester, "requester"),
            resource_id=validate_resource_id(resource_id),
            scope=validate_scope(scope),
        )

    @staticmethod
    def _check_caller(owner: str, caller: Optional[str]) -> None:
        if caller is not None and caller != owner:
            raise Unauthorized("Only the data owner may change this permission")

    def _existing(self, key: PermissionKey) -> PermissionRecord:
        record = self.store.get(key)
        if record is None:
            raise RecordNotFound(f"No access request for resource '{key.resource_id}'")
        return record

    def request(
        self,
        requester: str,
        owner: str,
        resource_id: Optional[str],
        scope: str,
    ) -> PermissionRecord:
        """
        Ask the owner for access. Idempotent per natural key.

        Returns:
            The new REQUESTED record, or the existing record unchanged
        """
        key = self._key(owner, requester, resource_id, scope)
        record = PermissionRecord(
            owner=key.owner,
            requester=key.requester,
            resource_id=key.resource_id,
            scope=key.scope,
            created_at=self._now(),
        )
        stored, created = self.store.create_if_absent(record)
        with log_context(owner=key.owner, requester=key.requester,
                         resource_id=key.resource_id, scope=key.scope, operation="request"):
            if created:
                self.logger.info("Access requested")
            else:
                self.logger.debug("Access request already exists", status=stored.status.value)
        return stored

    def approve(
        self,
        owner: str,
        requester: str,
        resource_id: Optional[str],
        scope: str,
        expires_at: Optional[datetime] = None,
        caller: Optional[str] = None,
    ) -> PermissionRecord:
        """
        Grant a pending request after recording consent on the ledger.

        Args:
            owner: Data owner's wallet
            requester: Requesting wallet
            resource_id: Resource being shared ("profile" if None)
            scope: Access scope
            expires_at: Optional expiry; None means no expiry
            caller: Identity performing the call (defaults to owner)

        Raises:
            Unauthorized: If caller is not the owner
            RecordNotFound: If nothing was requested for this key
            Conflict: If the record is not REQUESTED, or a concurrent
                approval won the race
            LedgerUnavailable, LedgerRejected: If the ledger write fails;
                the record stays REQUESTED
        """
        key = self._key(owner, requester, resource_id, scope)
        self._check_caller(key.owner, caller)
        expires_at = as_utc(expires_at)

        with log_context(owner=key.owner, requester=key.requester,
                         resource_id=key.resource_id, scope=key.scope, operation="approve"):
            record = self._existing(key)
            if record.status != PermissionStatus.REQUESTED:
                raise Conflict(f"Cannot approve a {record.status.value} permission")

            try:
                with self.logger.timed("ledger_write"):
                    consent = self.ledger.record_approval(
                        key.owner, key.requester, key.resource_id, key.scope, expires_at
                    )
            except LedgerError as e:
                self.logger.warning("Ledger write failed; request left pending", error=str(e))
                raise

            updated = self.store.compare_and_set(
                key,
                PermissionStatus.REQUESTED,
                {
                    "status": PermissionStatus.APPROVED,
                    "approved_at": self._now(),
                    "expires_at": expires_at,
                    "tx_id": consent.tx_id,
                    "proof": consent.proof,
                },
            )
            if updated is None:
                self.logger.warning("Concurrent approval lost the race", tx_id=consent.tx_id)
                raise Conflict("Permission was changed concurrently; re-fetch and retry")

            self.logger.info("Access approved", tx_id=consent.tx_id,
                             expires_at=expires_at.isoformat() if expires_at else None)
            return updated

    def deny(
        self,
        owner: str,
        requester: str,
        resource_id: Optional[str],
        scope: str,
        caller: Optional[str] = None,
    ) -> PermissionRecord:
        """Reject a pending request (REQUESTED -> DENIED). No ledger write."""
        key = self._key(owner, requester, resource_id, scope)
        self._check_caller(key.owner, caller)

        with log_context(owner=key.owner, requester=key.requester,
                         resource_id=key.resource_id, scope=key.scope, operation="deny"):
            record = self._existing(key)
            if record.status == PermissionStatus.DENIED:
                return record
            if record.status != PermissionStatus.REQUESTED:
                raise Conflict(f"Cannot deny a {record.status.value} permission")

            updated = self.store.compare_and_set(
                key,
                PermissionStatus.REQUESTED,
                {"status": PermissionStatus.DENIED, "denied_at": self._now()},
            )
            if updated is None:
                raise Conflict("Permission was changed concurrently; re-fetch and retry")
            self.logger.info("Access request denied")
            return updated

    def revoke(
        self,
        owner: str,
        requester: str,
        resource_id: Optional[str] = None,
        caller: Optional[str] = None,
    ) -> List[PermissionRecord]:
        """
        Revoke granted access. Idempotent.

        With resource_id omitted, every APPROVED record between owner and
        requester is revoked; otherwise only the ones for that resource.
        Absent or already revoked records are a no-op.

        Returns:
            The records this call moved to REVOKED
        """
        owner = validate_wallet(owner, "owner")
        requester = validate_wallet(requester, "requester")
        if resource_id is not None:
            resource_id = validate_resource_id(resource_id)
        self._check_caller(owner, caller)

        with log_context(owner=owner, requester=requester,
                         resource_id=resource_id, operation="revoke"):
            candidates = self.store.find(
                owner=owner,
                requester=requester,
                resource_id=resource_id,
                status=PermissionStatus.APPROVED,
            )
            revoked = []
            now = self._now()
            for record in candidates:
                updated = self.store.compare_and_set(
                    record.key,
                    PermissionStatus.APPROVED,
                    {"status": PermissionStatus.REVOKED, "revoked_at": now},
                )
                # None means a concurrent revoke or expiry got there first
                if updated is not None:
                    revoked.append(updated)

            self.logger.info("Access revoked", count=len(revoked))
            return revoked

    def check_access(
        self,
        owner: str,
        requester: str,
        resource_id: Optional[str],
        scope: str,
    ) -> AccessDecision:
        """
        Decide whether requester may read the resource right now.

        An APPROVED record past its expiry is flipped to EXPIRED here.
        REVOKED and DENIED records are reported as stored and never
        rewritten, whatever their expiry.
        """
        key = self._key(owner, requester, resource_id, scope)
        record = self.store.get(key)
        if record is None:
            return AccessDecision(False, DenialReason.NOT_FOUND)

        if record.status != PermissionStatus.APPROVED:
            return AccessDecision(False, _STATUS_REASONS[record.status])

        if not record.is_past_expiry(self._now()):
            return AccessDecision(True)

        expired = self.store.compare_and_set(
            key, PermissionStatus.APPROVED, {"status": PermissionStatus.EXPIRED}
        )
        if expired is None:
            # Lost to a concurrent revoke or expiry; report what is stored now
            current = self.store.get(key)
            if current is None or current.status == PermissionStatus.APPROVED:
                return AccessDecision(False, DenialReason.EXPIRED)
            return AccessDecision(False, _STATUS_REASONS[current.status])

        with log_context(owner=key.owner, requester=key.requester,
                         resource_id=key.resource_id, scope=key.scope, operation="check"):
            self.logger.info("Access expired")
        return AccessDecision(False, DenialReason.EXPIRED)

    def get_record(
        self,
        owner: str,
        requester: str,
        resource_id: Optional[str],
        scope: str,
    ) -> Optional[PermissionRecord]:
        return self.store.get(self._key(owner, requester, resource_id, scope))

    def list_pending(self, owner: str) -> List[PermissionRecord]:
        """Requests awaiting the owner's decision, oldest first."""
        records = self.store.find(
            owner=validate_wallet(owner, "owner"),
            status=PermissionStatus.REQUESTED,
        )
        return sorted(records, key=lambda r: r.created_at)

    def list_records(
        self,
        owner: Optional[str] = None,
        requester: Optional[str] = None,
        status: Optional[PermissionStatus] = None,
    ) -> List[PermissionRecord]:
        records = self.store.find(owner=owner, requester=requester, status=status)
        return sorted(records, key=lambda r: r.created_at)
