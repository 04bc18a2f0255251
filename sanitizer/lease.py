import os
import threading
import time
from pathlib import Path

from .utils import LeaseError, audit


class Lease:
    """Named mutual-exclusion lease guarding the config read-modify-write."""

    name = "lease"

    def acquire(self):
        raise NotImplementedError

    def release(self):
        raise NotImplementedError

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


class FileLease(Lease):
    """Advisory lock file created with O_EXCL.

    Retries for ``attempts * interval`` seconds, then treats the existing lock
    as left behind by a crashed holder, removes it and takes it over.
    """

    def __init__(self, path, attempts=50, interval=0.1):
        self.path = Path(path)
        self.name = str(self.path)
        self.attempts = max(1, int(attempts))
        self.interval = max(0.0, float(interval))
        self._fd = None

    def _try_create(self):
        try:
            return os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return None

    def acquire(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        for attempt in range(self.attempts):
            fd = self._try_create()
            if fd is not None:
                self._fd = fd
                return
            if attempt < self.attempts - 1:
                time.sleep(self.interval)

        audit("LEASE", f"Stale lock overridden: {self.path}", "WARNING")
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            raise LeaseError(f"Cannot clear stale lock {self.path}: {exc}")

        fd = self._try_create()
        if fd is None:
            raise LeaseError(f"Lock was re-taken while clearing stale lease: {self.path}")
        self._fd = fd

    def release(self):
        if self._fd is not None:
            try:
                os.close(self._fd)
            finally:
                self._fd = None
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class MemoryLease(Lease):
    """In-process lease for single-process deployments and tests."""

    name = "memory"

    def __init__(self):
        self._lock = threading.Lock()

    def acquire(self):
        self._lock.acquire()

    def release(self):
        if self._lock.locked():
            self._lock.release()
