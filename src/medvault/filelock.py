"""
Advisory file locking for the MedVault file backends.

The JSON permission store, the file ledger and the file ciphertext store
all serialize their read-modify-write cycles through these locks so that
several processes can share one vault directory.

On Unix fcntl.flock() is used; elsewhere an exclusive-create sidecar
.lock file serves as the lock.
"""

import os
import time
from contextlib import contextmanager
from pathlib import Path

from .errors import VaultError

try:
    import fcntl
    LOCK_BACKEND = "fcntl"
except ImportError:
    fcntl = None
    LOCK_BACKEND = "lockfile"


class FileLockTimeout(VaultError):
    """Raised when a lock cannot be acquired in time."""
    pass


class FileLock:
    """
    Exclusive or shared lock on a vault file.

    Usage:
        with FileLock(path):
            ...
    """

    LOCK_SUFFIX = ".lock"

    def __init__(
        self,
        path: Path,
        exclusive: bool = True,
        timeout: float = 10.0,
        poll_interval: float = 0.05,
    ):
        self.path = Path(path)
        self.exclusive = exclusive
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._handle = None
        self._sidecar = None

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()
        return False

    def acquire(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        if LOCK_BACKEND == "fcntl":
            self._acquire_flock()
        else:
            self._acquire_sidecar()

    def release(self) -> None:
        if self._handle is not None:
            try:
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            finally:
                self._handle.close()
                self._handle = None
        if self._sidecar is not None:
            try:
                os.unlink(self._sidecar)
            except FileNotFoundError:
                pass
            self._sidecar = None

    def _deadline_passed(self, start: float) -> bool:
        return time.monotonic() - start >= self.timeout

    def _acquire_flock(self) -> None:
        # Lock a sibling file so the data file itself can be replaced atomically
        lock_path = Path(str(self.path) + self.LOCK_SUFFIX)
        handle = open(lock_path, "a+")
        mode = fcntl.LOCK_EX if self.exclusive else fcntl.LOCK_SH

        start = time.monotonic()
        while True:
            try:
                fcntl.flock(handle.fileno(), mode | fcntl.LOCK_NB)
                self._handle = handle
                return
            except OSError:
                if self._deadline_passed(start):
                    handle.close()
                    raise FileLockTimeout(
                        f"Could not lock {self.path} within {self.timeout}s"
                    )
                time.sleep(self.poll_interval)

    def _acquire_sidecar(self) -> None:
        lock_path = Path(str(self.path) + self.LOCK_SUFFIX)

        start = time.monotonic()
        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode())
                os.close(fd)
                self._sidecar = lock_path
                return
            except FileExistsError:
                if self._deadline_passed(start):
                    raise FileLockTimeout(
                        f"Could not lock {self.path} within {self.timeout}s"
                    )
                time.sleep(self.poll_interval)


@contextmanager
def file_lock(path: Path, exclusive: bool = True, timeout: float = 10.0):
    """
    Context manager for file locking.

    Usage:
        with file_lock(Path("permissions.json")):
            ...
    """
    lock = FileLock(path, exclusive=exclusive, timeout=timeout)
    lock.acquire()
    try:
        yield lock
    finally:
        lock.release()


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write data to path via a temporary file and rename."""
    path = Path(path)
    tmp_path = path.with_name(path.name + ".tmp")
    with open(tmp_path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)
