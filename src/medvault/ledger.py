"""
Consent ledger for MedVault.

Every approval is recorded on a consent ledger before the permission
record flips to APPROVED. The ledger returns a transaction id and an
opaque proof; both are stored on the record.

LocalConsentLedger is a tamper-evident stand-in for a privacy chain:
entries are hash-chained (prev_hash links, like an append-only audit log)
and carry only hashes of the consent inputs, never raw wallet addresses.

Proof format:
    zkp_ + SHA256(owner|requester|timestamp_ms|resource_id|scope|salt)
"""

import hashlib
import json
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .errors import VaultError
from .filelock import FileLockTimeout, file_lock
from .logging import get_logger, redact_wallet

GENESIS_HASH = "0" * 64
LEDGER_FILE = "consent_ledger.jsonl"
TX_PREFIX = "ledger_tx_"
PROOF_PREFIX = "zkp_"
DEFAULT_PROOF_SALT = "medvault-local-consent-v1"


class LedgerError(VaultError):
    """Base exception for consent ledger errors"""
    pass


class LedgerUnavailable(LedgerError):
    """Raised when the ledger cannot be reached (retryable)"""
    pass


class LedgerRejected(LedgerError):
    """Raised when the ledger refuses to record a consent"""
    pass


@dataclass
class ConsentProof:
    """What the ledger hands back for a recorded approval"""
    tx_id: str
    proof: str


class ConsentLedger(ABC):
    """Abstract consent ledger"""

    @abstractmethod
    def record_approval(
        self,
        owner: str,
        requester: str,
        resource_id: str,
        scope: str,
        expires_at: Optional[datetime] = None,
    ) -> ConsentProof:
        """
        Record an approval.

        Raises:
            LedgerUnavailable: If the ledger cannot be reached
            LedgerRejected: If the ledger refuses the consent
        """

    def verify_consent(
        self,
        tx_id: str,
        owner: str,
        requester: str,
        resource_id: str,
        scope: str,
        proof: Optional[str] = None,
    ) -> Optional[bool]:
        """
        Check a recorded consent. None means this ledger cannot verify.
        """
        return None


def compute_proof(
    owner: str,
    requester: str,
    resource_id: str,
    scope: str,
    timestamp_ms: int,
    salt: str = DEFAULT_PROOF_SALT,
) -> str:
    """Deterministic proof hash over the consent inputs."""
    inputs = "|".join([owner, requester, str(timestamp_ms), resource_id, scope, salt])
    return PROOF_PREFIX + hashlib.sha256(inputs.encode("utf-8")).hexdigest()


def compute_subject_hash(owner: str, requester: str, resource_id: str, scope: str) -> str:
    """Hash identifying the consent subject without exposing the wallets."""
    inputs = "|".join([owner, requester, resource_id, scope])
    return hashlib.sha256(inputs.encode("utf-8")).hexdigest()


def generate_tx_id() -> str:
    """ledger_tx_<hex millis>_<16 hex>"""
    return f"{TX_PREFIX}{int(time.time() * 1000):x}_{uuid.uuid4().hex[:16]}"


@dataclass
class LedgerEntry:
    """One hash-chained ledger entry"""
    tx_id: str
    sequence: int
    timestamp_ms: int
    subject_hash: str
    proof: str
    expires_at: Optional[str]
    prev_hash: str
    entry_hash: str = ""

    def content(self) -> Dict[str, Any]:
        return {
            "tx_id": self.tx_id,
            "sequence": self.sequence,
            "timestamp_ms": self.timestamp_ms,
            "subject_hash": self.subject_hash,
            "proof": self.proof,
            "expires_at": self.expires_at,
            "prev_hash": self.prev_hash,
        }

    def compute_hash(self) -> str:
        canonical = json.dumps(self.content(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        data = self.content()
        data["entry_hash"] = self.entry_hash
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LedgerEntry":
        return cls(
            tx_id=data["tx_id"],
            sequence=data["sequence"],
            timestamp_ms=data["timestamp_ms"],
            subject_hash=data["subject_hash"],
            proof=data["proof"],
            expires_at=data.get("expires_at"),
            prev_hash=data["prev_hash"],
            entry_hash=data.get("entry_hash", ""),
        )


@dataclass
class ChainVerificationResult:
    """Result of ledger chain verification"""
    valid: bool
    entries_checked: int
    head_hash: str
    errors: List[str] = field(default_factory=list)
    broken_at: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "entries_checked": self.entries_checked,
            "head_hash": self.head_hash,
            "errors": self.errors,
            "broken_at": self.broken_at,
        }


def verify_entries(entries: List[LedgerEntry]) -> ChainVerificationResult:
    """
    Verify hash links, entry hashes and sequence numbers of a ledger.
    """
    errors = []
    broken_at = None
    expected_prev = GENESIS_HASH

    for i, entry in enumerate(entries):
        problems = []
        if entry.sequence != i:
            problems.append(f"Sequence gap at position {i}: got {entry.sequence}")
        if entry.prev_hash != expected_prev:
            problems.append(f"Chain break at sequence {entry.sequence}: prev_hash mismatch")
        if entry.compute_hash() != entry.entry_hash:
            problems.append(f"Entry hash mismatch at sequence {entry.sequence}: entry modified")
        if problems and broken_at is None:
            broken_at = i
        errors.extend(problems)
        expected_prev = entry.entry_hash

    return ChainVerificationResult(
        valid=not errors,
        entries_checked=len(entries),
        head_hash=entries[-1].entry_hash if entries else GENESIS_HASH,
        errors=errors,
        broken_at=broken_at,
    )


class LocalConsentLedger(ConsentLedger):
    """
    Hash-chained consent ledger kept in memory or in a JSONL file.

    With ledger_dir set, entries are appended to consent_ledger.jsonl
    under an exclusive file lock; otherwise they live in memory.
    """

    def __init__(self, ledger_dir: Optional[Path] = None, salt: str = DEFAULT_PROOF_SALT):
        self.salt = salt
        self.ledger_file = Path(ledger_dir) / LEDGER_FILE if ledger_dir else None
        self._entries: List[LedgerEntry] = []
        self._lock = threading.Lock()
        if self.ledger_file:
            self.ledger_file.parent.mkdir(parents=True, exist_ok=True)

    def _read_file(self) -> List[LedgerEntry]:
        entries = []
        if not self.ledger_file.exists():
            return entries
        with open(self.ledger_file, "r") as f:
            for line in f:
                line = line.strip()
                if line:
                    entries.append(LedgerEntry.from_dict(json.loads(line)))
        return entries

    def entries(self) -> List[LedgerEntry]:
        """All ledger entries, oldest first."""
        if self.ledger_file is None:
            with self._lock:
                return list(self._entries)
        try:
            with file_lock(self.ledger_file, exclusive=False):
                return self._read_file()
        except (OSError, ValueError, FileLockTimeout) as e:
            raise LedgerUnavailable(f"Cannot read consent ledger: {e}") from e

    def _append(self, build) -> LedgerEntry:
        if self.ledger_file is None:
            with self._lock:
                entry = build(self._entries)
                self._entries.append(entry)
                return entry
        try:
            with self._lock, file_lock(self.ledger_file):
                entry = build(self._read_file())
                with open(self.ledger_file, "a") as f:
                    f.write(json.dumps(entry.to_dict(), sort_keys=True) + "\n")
                return entry
        except (OSError, ValueError, FileLockTimeout) as e:
            raise LedgerUnavailable(f"Cannot write consent ledger: {e}") from e

    def record_approval(self, owner, requester, resource_id, scope, expires_at=None):
        timestamp_ms = int(time.time() * 1000)
        proof = compute_proof(owner, requester, resource_id, scope, timestamp_ms, self.salt)

        def build(existing: List[LedgerEntry]) -> LedgerEntry:
            entry = LedgerEntry(
                tx_id=generate_tx_id(),
                sequence=len(existing),
                timestamp_ms=timestamp_ms,
                subject_hash=compute_subject_hash(owner, requester, resource_id, scope),
                proof=proof,
                expires_at=expires_at.isoformat() if expires_at else None,
                prev_hash=existing[-1].entry_hash if existing else GENESIS_HASH,
            )
            entry.entry_hash = entry.compute_hash()
            return entry

        entry = self._append(build)
        get_logger().info(
            "Consent recorded on ledger",
            tx_id=entry.tx_id,
            sequence=entry.sequence,
            owner=redact_wallet(owner),
            requester=redact_wallet(requester),
        )
        return ConsentProof(tx_id=entry.tx_id, proof=entry.proof)

    def find_entry(self, tx_id: str) -> Optional[LedgerEntry]:
        for entry in self.entries():
            if entry.tx_id == tx_id:
                return entry
        return None

    def verify_consent(
        self,
        tx_id: str,
        owner: str,
        requester: str,
        resource_id: str,
        scope: str,
        proof: Optional[str] = None,
    ) -> bool:
        """
        Check that tx_id records consent for exactly these inputs.

        Recomputes the proof from the inputs and the entry's timestamp.
        A proof passed in must also match the one on the entry.
        """
        entry = self.find_entry(tx_id)
        if entry is None:
            return False
        if proof is not None and proof != entry.proof:
            return False
        if entry.subject_hash != compute_subject_hash(owner, requester, resource_id, scope):
            return False
        expected = compute_proof(owner, requester, resource_id, scope, entry.timestamp_ms, self.salt)
        return entry.proof == expected

    def verify_chain(self) -> ChainVerificationResult:
        return verify_entries(self.entries())

    def get_stats(self) -> Dict[str, Any]:
        entries = self.entries()
        return {
            "entries": len(entries),
            "head_hash": entries[-1].entry_hash if entries else GENESIS_HASH,
            "first_tx": entries[0].tx_id if entries else None,
            "last_tx": entries[-1].tx_id if entries else None,
            "path": str(self.ledger_file) if self.ledger_file else None,
        }
