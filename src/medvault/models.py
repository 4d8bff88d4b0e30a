"""
Permission data model for MedVault.

A PermissionRecord is identified by its natural key
(owner, requester, resource_id, scope). At most one record exists per
key. It is mutated in place through status transitions and never deleted.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC; convert aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


class PermissionStatus(Enum):
    """Lifecycle states of a permission record."""
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    REVOKED = "REVOKED"
    EXPIRED = "EXPIRED"
    DENIED = "DENIED"


@dataclass(frozen=True)
class PermissionKey:
    """Natural key of a permission record."""
    owner: str
    requester: str
    resource_id: str
    scope: str

    def as_tuple(self) -> Tuple[str, str, str, str]:
        return (self.owner, self.requester, self.resource_id, self.scope)


@dataclass
class PermissionRecord:
    """
    One access grant between a data owner and a requester.

    tx_id and proof are filled in from the consent ledger on approval.
    """
    owner: str
    requester: str
    resource_id: str
    scope: str
    status: PermissionStatus = PermissionStatus.REQUESTED
    created_at: datetime = field(default_factory=utc_now)
    approved_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    denied_at: Optional[datetime] = None
    tx_id: Optional[str] = None
    proof: Optional[str] = None

    @property
    def key(self) -> PermissionKey:
        return PermissionKey(self.owner, self.requester, self.resource_id, self.scope)

    def copy(self) -> "PermissionRecord":
        return replace(self)

    def is_past_expiry(self, now: datetime) -> bool:
        """True if an expiry is set and has been reached."""
        return self.expires_at is not None and as_utc(self.expires_at) <= as_utc(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "owner": self.owner,
            "requester": self.requester,
            "resource_id": self.resource_id,
            "scope": self.scope,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "approved_at": _iso(self.approved_at),
            "expires_at": _iso(self.expires_at),
            "revoked_at": _iso(self.revoked_at),
            "denied_at": _iso(self.denied_at),
            "tx_id": self.tx_id,
            "proof": self.proof,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PermissionRecord":
        return cls(
            owner=data["owner"],
            requester=data["requester"],
            resource_id=data["resource_id"],
            scope=data["scope"],
            status=PermissionStatus(data.get("status", "REQUESTED")),
            created_at=_parse(data.get("created_at")) or utc_now(),
            approved_at=_parse(data.get("approved_at")),
            expires_at=_parse(data.get("expires_at")),
            revoked_at=_parse(data.get("revoked_at")),
            denied_at=_parse(data.get("denied_at")),
            tx_id=data.get("tx_id"),
            proof=data.get("proof"),
        )
