"""Sentinel-file locking for the wpid instance registry.

The registry is guarded by a single zero-byte sentinel file created with
``O_CREAT | O_EXCL``. Acquisition never waits: if the sentinel already exists
another wpid process is (or was) mid-mutation and the caller fails fast with
:class:`LockHeldError`. A process that crashes while holding the lock leaves
the sentinel behind; ``wpid meta unlock`` removes it via :func:`break_lock`.

:class:`LockManager` wraps the sentinel in a re-entrant context manager so a
command can widen the critical section around a whole read-decide-write
sequence while helpers it calls take the same lock again without
self-deadlocking.
"""
from __future__ import annotations

import os
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

LOCK_SUFFIX = ".lock"


class LockError(RuntimeError):
    """Raised when a sentinel lock cannot be created or removed."""


class LockHeldError(LockError):
    """Raised when the sentinel already exists."""

    def __init__(self, path: Path) -> None:
        super().__init__(
            f"Registry is locked by another wpid process ({path}). "
            "If no other wpid command is running, remove the stale lock with "
            "`wpid meta unlock`."
        )
        self.path = path


@dataclass(frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class SentinelLock:
    """Exclusive-create sentinel file used as a cross-process mutex."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def lock(self) -> None:
        """Create the sentinel or raise :class:`LockHeldError` if it exists."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
        except FileExistsError as exc:
            raise LockHeldError(self.path) from exc
        except OSError as exc:
            raise LockError(f"Failed to create lock file {self.path}: {exc}") from exc
        os.close(fd)

    def unlock(self) -> None:
        """Remove the sentinel; a missing file is not an error."""
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise LockError(f"Failed to remove lock file {self.path}: {exc}") from exc

    def is_held(self) -> bool:
        """Return ``True`` when the sentinel currently exists."""
        return self.path.exists()

    @contextmanager
    def held(self) -> Iterator[LockHandle]:
        """Hold the sentinel for the duration of the ``with`` block."""
        start = time.perf_counter()
        self.lock()
        wait_ms = int((time.perf_counter() - start) * 1000)
        try:
            yield LockHandle(path=self.path, wait_ms=wait_ms)
        finally:
            self.unlock()


class LockManager:
    """Coordinate registry locking for one storage directory."""

    def __init__(self, sentinel_path: Path) -> None:
        self.sentinel = SentinelLock(sentinel_path)
        self._guard = threading.RLock()
        self._depth = 0

    @property
    def path(self) -> Path:
        """Return the sentinel file path."""
        return self.sentinel.path

    @contextmanager
    def registry_lock(self) -> Iterator[LockHandle]:
        """Hold the registry sentinel; nested calls reuse the outer hold."""
        start = time.perf_counter()
        with self._guard:
            if self._depth == 0:
                self.sentinel.lock()
            self._depth += 1
            wait_ms = int((time.perf_counter() - start) * 1000)
            try:
                yield LockHandle(path=self.sentinel.path, wait_ms=wait_ms)
            finally:
                self._depth -= 1
                if self._depth == 0:
                    self.sentinel.unlock()

    def is_held(self) -> bool:
        """Return ``True`` when any process currently holds the sentinel."""
        return self.sentinel.is_held()


def sentinel_path_for(registry_path: Path) -> Path:
    """Return the sentinel path that guards *registry_path*."""
    return registry_path.with_name(registry_path.name + LOCK_SUFFIX)


def break_lock(path: Path) -> bool:
    """Remove a stale sentinel; return ``True`` when one was present."""
    lock = SentinelLock(path)
    if not lock.is_held():
        return False
    lock.unlock()
    return True


__all__ = [
    "LOCK_SUFFIX",
    "LockError",
    "LockHandle",
    "LockHeldError",
    "LockManager",
    "SentinelLock",
    "break_lock",
    "sentinel_path_for",
]
