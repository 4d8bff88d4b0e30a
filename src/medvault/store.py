"""
Permission stores for MedVault.

Every store enforces the uniqueness of the natural key and offers an
atomic compare-and-set on a record's status. The state machine relies on
these two guarantees alone, so any backend that provides them can hold
the permission table.

Backends:
- InMemoryPermissionStore: process-local, guarded by a lock
- JsonPermissionStore: one JSON file, guarded by a file lock
- SQLitePermissionStore: SQLite table with a composite primary key
"""

import json
import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .errors import VaultError
from .filelock import FileLockTimeout, atomic_write_bytes, file_lock
from .models import PermissionKey, PermissionRecord, PermissionStatus

PERMISSIONS_FILE = "permissions.json"
PERMISSIONS_DB = "permissions.db"

# Fields a compare-and-set may change
MUTABLE_FIELDS = frozenset({
    "status", "approved_at", "expires_at", "revoked_at", "denied_at", "tx_id", "proof",
})


class PermissionStoreError(VaultError):
    """Base exception for permission store errors"""
    pass


class PermissionStoreUnavailable(PermissionStoreError):
    """Raised when the backing store cannot be read or written"""
    pass


def _check_changes(changes: Dict[str, Any]) -> None:
    illegal = set(changes) - MUTABLE_FIELDS
    if illegal:
        raise PermissionStoreError(f"Cannot change fields: {', '.join(sorted(illegal))}")


def _matches(
    record: PermissionRecord,
    owner: Optional[str],
    requester: Optional[str],
    resource_id: Optional[str],
    status: Optional[PermissionStatus],
) -> bool:
    if owner is not None and record.owner != owner:
        return False
    if requester is not None and record.requester != requester:
        return False
    if resource_id is not None and record.resource_id != resource_id:
        return False
    if status is not None and record.status != status:
        return False
    return True


class PermissionStore(ABC):
    """Transactional permission table keyed by the natural key."""

    @abstractmethod
    def get(self, key: PermissionKey) -> Optional[PermissionRecord]:
        """Return a copy of the record for key, or None."""

    @abstractmethod
    def create_if_absent(self, record: PermissionRecord) -> Tuple[PermissionRecord, bool]:
        """
        Insert record unless its key exists.

        Returns:
            Tuple of (stored record, created flag)
        """

    @abstractmethod
    def compare_and_set(
        self,
        key: PermissionKey,
        expected: PermissionStatus,
        changes: Dict[str, Any],
    ) -> Optional[PermissionRecord]:
        """
        Apply changes only if the record's current status is expected.

        Returns:
            The updated record, or None if absent or the status differs
        """

    @abstractmethod
    def find(
        self,
        owner: Optional[str] = None,
        requester: Optional[str] = None,
        resource_id: Optional[str] = None,
        status: Optional[PermissionStatus] = None,
    ) -> List[PermissionRecord]:
        """Return copies of all records matching the given filters."""

    def close(self) -> None:
        pass


class InMemoryPermissionStore(PermissionStore):
    """Permission table held in a dict; one lock serializes all writes."""

    def __init__(self):
        self._records: Dict[PermissionKey, PermissionRecord] = {}
        self._lock = threading.Lock()

    def get(self, key: PermissionKey) -> Optional[PermissionRecord]:
        with self._lock:
            record = self._records.get(key)
            return record.copy() if record else None

    def create_if_absent(self, record: PermissionRecord) -> Tuple[PermissionRecord, bool]:
        with self._lock:
            existing = self._records.get(record.key)
            if existing is not None:
                return existing.copy(), False
            self._records[record.key] = record.copy()
            return record.copy(), True

    def compare_and_set(self, key, expected, changes):
        _check_changes(changes)
        with self._lock:
            record = self._records.get(key)
            if record is None or record.status != expected:
                return None
            for name, value in changes.items():
                setattr(record, name, value)
            return record.copy()

    def find(self, owner=None, requester=None, resource_id=None, status=None):
        with self._lock:
            return [
                r.copy() for r in self._records.values()
                if _matches(r, owner, requester, resource_id, status)
            ]


class JsonPermissionStore(PermissionStore):
    """
    Permission table persisted as one JSON document.

    Each operation runs a full read-modify-write cycle under an exclusive
    file lock, so compare-and-set stays atomic across processes.
    """

    def __init__(self, path: Path, lock_timeout: float = 10.0):
        self.path = Path(path)
        self.lock_timeout = lock_timeout
        self._thread_lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> Dict[PermissionKey, PermissionRecord]:
        if not self.path.exists():
            return {}
        with open(self.path, "r") as f:
            data = json.load(f)
        records = {}
        for item in data.get("records", []):
            record = PermissionRecord.from_dict(item)
            records[record.key] = record
        return records

    def _save(self, records: Dict[PermissionKey, PermissionRecord]) -> None:
        payload = {"version": 1, "records": [r.to_dict() for r in records.values()]}
        atomic_write_bytes(self.path, json.dumps(payload, indent=2).encode("utf-8"))

    def _transaction(self, fn):
        try:
            with self._thread_lock, file_lock(self.path, timeout=self.lock_timeout):
                return fn()
        except (OSError, ValueError, FileLockTimeout) as e:
            raise PermissionStoreUnavailable(f"Permission store unavailable: {e}") from e

    def get(self, key):
        def op():
            record = self._load().get(key)
            return record.copy() if record else None
        return self._transaction(op)

    def create_if_absent(self, record):
        def op():
            records = self._load()
            existing = records.get(record.key)
            if existing is not None:
                return existing, False
            records[record.key] = record.copy()
            self._save(records)
            return record.copy(), True
        return self._transaction(op)

    def compare_and_set(self, key, expected, changes):
        _check_changes(changes)

        def op():
            records = self._load()
            record = records.get(key)
            if record is None or record.status != expected:
                return None
            for name, value in changes.items():
                setattr(record, name, value)
            self._save(records)
            return record.copy()
        return self._transaction(op)

    def find(self, owner=None, requester=None, resource_id=None, status=None):
        def op():
            return [
                r for r in self._load().values()
                if _matches(r, owner, requester, resource_id, status)
            ]
        return self._transaction(op)


class SQLitePermissionStore(PermissionStore):
    """
    Permission table in SQLite.

    The composite primary key enforces one record per natural key and a
    conditional UPDATE provides compare-and-set.
    """

    COLUMNS = (
        "owner", "requester", "resource_id", "scope", "status", "created_at",
        "approved_at", "expires_at", "revoked_at", "denied_at", "tx_id", "proof",
    )

    def __init__(self, path: str = PERMISSIONS_DB):
        dir_path = os.path.dirname(str(path)) or "."
        os.makedirs(dir_path, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self.db = sqlite3.connect(str(path), check_same_thread=False)
            self._init()
        except sqlite3.Error as e:
            raise PermissionStoreUnavailable(f"Cannot open permission database: {e}") from e

    def _init(self) -> None:
        self.db.execute("""CREATE TABLE IF NOT EXISTS permissions(
            owner TEXT NOT NULL,
            requester TEXT NOT NULL,
            resource_id TEXT NOT NULL,
            scope TEXT NOT NULL,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            approved_at TEXT,
            expires_at TEXT,
            revoked_at TEXT,
            denied_at TEXT,
            tx_id TEXT,
            proof TEXT,
            PRIMARY KEY (owner, requester, resource_id, scope)
        )""")
        self.db.execute(
            "CREATE INDEX IF NOT EXISTS idx_permissions_status ON permissions(status)"
        )
        self.db.commit()

    def _row_to_record(self, row) -> PermissionRecord:
        return PermissionRecord.from_dict(dict(zip(self.COLUMNS, row)))

    def _select(self, where: str, params: tuple) -> List[PermissionRecord]:
        cur = self.db.execute(
            f"SELECT {', '.join(self.COLUMNS)} FROM permissions {where}", params
        )
        return [self._row_to_record(row) for row in cur.fetchall()]

    def _run(self, fn):
        try:
            with self._lock:
                return fn()
        except sqlite3.Error as e:
            self.db.rollback()
            raise PermissionStoreUnavailable(f"Permission database error: {e}") from e

    _KEY_WHERE = "WHERE owner=? AND requester=? AND resource_id=? AND scope=?"

    def get(self, key):
        def op():
            rows = self._select(self._KEY_WHERE, key.as_tuple())
            return rows[0] if rows else None
        return self._run(op)

    def create_if_absent(self, record):
        def op():
            data = record.to_dict()
            cur = self.db.execute(
                f"INSERT OR IGNORE INTO permissions({', '.join(self.COLUMNS)}) "
                f"VALUES({', '.join('?' * len(self.COLUMNS))})",
                tuple(data[c] for c in self.COLUMNS),
            )
            self.db.commit()
            stored = self._select(self._KEY_WHERE, record.key.as_tuple())[0]
            return stored, cur.rowcount == 1
        return self._run(op)

    def compare_and_set(self, key, expected, changes):
        _check_changes(changes)

        def op():
            encoded = PermissionRecord(
                owner=key.owner, requester=key.requester,
                resource_id=key.resource_id, scope=key.scope,
            )
            for name, value in changes.items():
                setattr(encoded, name, value)
            data = encoded.to_dict()
            assignments = ", ".join(f"{name}=?" for name in changes)
            cur = self.db.execute(
                f"UPDATE permissions SET {assignments} {self._KEY_WHERE} AND status=?",
                tuple(data[name] for name in changes) + key.as_tuple() + (expected.value,),
            )
            self.db.commit()
            if cur.rowcount != 1:
                return None
            return self._select(self._KEY_WHERE, key.as_tuple())[0]
        return self._run(op)

    def find(self, owner=None, requester=None, resource_id=None, status=None):
        clauses, params = [], []
        for column, value in (("owner", owner), ("requester", requester), ("resource_id", resource_id)):
            if value is not None:
                clauses.append(f"{column}=?")
                params.append(value)
        if status is not None:
            clauses.append("status=?")
            params.append(status.value)
        where = ("WHERE " + " AND ".join(clauses)) if clauses else ""
        return self._run(lambda: self._select(where + " ORDER BY created_at", tuple(params)))

    def close(self) -> None:
        self.db.close()


def load_permission_store(backend: str = "json", vault_dir: Optional[Path] = None) -> PermissionStore:
    """
    Factory resolver for the permission store backend.

    Supported: memory, json (default), sqlite
    """
    if backend == "memory":
        return InMemoryPermissionStore()

    base = Path(vault_dir) if vault_dir else Path(".medvault")
    if backend == "json":
        return JsonPermissionStore(base / PERMISSIONS_FILE)
    if backend == "sqlite":
        return SQLitePermissionStore(str(base / PERMISSIONS_DB))
    raise PermissionStoreError(f"Unknown permission backend: {backend}")
