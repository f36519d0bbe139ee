"""Cross-process file locks for the diagnosis cache.

Locks are process-safe via fcntl.flock and thread-safe via a threading.Lock
wrapper. The cache takes one exclusive lock per cache key so that at most one
process computes a given entry at a time:

    locks = KeyLockRegistry(cache_root / "locks")
    with locks.lock(key.digest):
        ...
"""

from __future__ import annotations

import fcntl
import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from design_foundry.errors import DesignFoundryError


class LockError(DesignFoundryError):
    """Base exception for locking errors."""


class LockAcquisitionError(LockError):
    """Raised when a lock cannot be acquired within the timeout."""


class LockNotHeldError(LockError):
    """Raised when attempting to release a lock that is not held."""


class FileLock:
    """Exclusive cross-process lock backed by a lock file.

    Example usage:
        lock = FileLock(Path("/tmp/mylock.lock"))
        with lock.exclusive():
            # Critical section
            ...
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        self._fd: int | None = None
        self._thread_lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> None:
        """Acquire the lock, waiting at most ``timeout`` seconds (None waits forever).

        Raises:
            LockAcquisitionError: If the timeout expires while waiting.
        """
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)

        if not self._thread_lock.acquire(timeout=-1 if timeout is None else timeout):
            raise LockAcquisitionError(f"Timeout acquiring lock on {self.lock_path}")

        try:
            self._fd = os.open(str(self.lock_path), os.O_RDWR | os.O_CREAT)
            if timeout is None:
                fcntl.flock(self._fd, fcntl.LOCK_EX)
                return

            start_time = time.monotonic()
            while True:
                try:
                    fcntl.flock(self._fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    return
                except BlockingIOError:
                    elapsed = time.monotonic() - start_time
                    if elapsed >= timeout:
                        raise LockAcquisitionError(
                            f"Timeout acquiring lock on {self.lock_path} after {timeout:.2f}s"
                        ) from None
                    time.sleep(min(0.01, timeout - elapsed))
        except Exception:
            if self._fd is not None:
                os.close(self._fd)
                self._fd = None
            self._thread_lock.release()
            raise

    def release(self) -> None:
        """Release the lock.

        Raises:
            LockNotHeldError: If the lock is not currently held.
        """
        if self._fd is None:
            raise LockNotHeldError(f"Lock not held: {self.lock_path}")

        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            os.close(self._fd)
        finally:
            self._fd = None
            self._thread_lock.release()

    @property
    def is_locked(self) -> bool:
        return self._fd is not None

    @contextmanager
    def exclusive(self, timeout: float | None = None) -> Iterator[None]:
        self.acquire(timeout=timeout)
        try:
            yield
        finally:
            self.release()


class KeyLockRegistry:
    """One FileLock per key, created lazily under ``locks_dir``.

    A FileLock is kept in memory only while some thread holds or waits on it.
    Lock files on disk are left in place; unlinking a flock file that another
    process has open would let two processes lock different inodes.
    """

    def __init__(self, locks_dir: Path) -> None:
        self.locks_dir = locks_dir
        self._locks: dict[str, tuple[FileLock, int]] = {}
        self._mutex = threading.Lock()

    def __len__(self) -> int:
        with self._mutex:
            return len(self._locks)

    def _checkout(self, name: str) -> FileLock:
        with self._mutex:
            if name in self._locks:
                lock, users = self._locks[name]
            else:
                lock, users = FileLock(self.locks_dir / f"{name}.lock"), 0
            self._locks[name] = (lock, users + 1)
            return lock

    def _checkin(self, name: str) -> None:
        with self._mutex:
            lock, users = self._locks[name]
            if users == 1:
                del self._locks[name]
            else:
                self._locks[name] = (lock, users - 1)

    @contextmanager
    def lock(self, name: str, timeout: float | None = None) -> Iterator[None]:
        file_lock = self._checkout(name)
        try:
            with file_lock.exclusive(timeout=timeout):
                yield
        finally:
            self._checkin(name)
