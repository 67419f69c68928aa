"""Keyed state store abstraction over the shared dev-dir files.

Every mutation of shared coordination state goes through ``with_lock`` plus
``write_atomic``; readers call ``read`` without locking and see either the
previous or the next whole-file version, never a partial write.
"""

from __future__ import annotations

import os
import tempfile
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path
from typing import Protocol

from taskfleet.errors import LockTimeoutError
from taskfleet.storage.mutex import (
    DEFAULT_INTERVAL_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_STALE_AFTER_SECONDS,
    DirectoryMutex,
)

BACKLOG_LOCK = "backlog"


def write_atomically(path: Path, content: str) -> None:
    """Write ``content`` to a sibling temp file and rename it over ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


class StateStore(Protocol):
    """Read/replace/lock contract shared by file and in-memory stores."""

    def read(self, key: str) -> str:
        """Return current content, empty string when absent."""
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        """Whether the key currently holds content."""
        raise NotImplementedError

    def write_atomic(self, key: str, content: str) -> None:
        """Replace the whole value; readers never observe a partial write."""
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        """Remove the key; return False when it was already absent."""
        raise NotImplementedError

    def modified_at(self, key: str) -> float | None:
        """Epoch seconds of the last write, or None when absent."""
        raise NotImplementedError

    def with_lock(self, lock_key: str = BACKLOG_LOCK) -> AbstractContextManager[None]:
        """Hold the named exclusive lock; raise ``LockTimeoutError`` when not obtained."""
        raise NotImplementedError


class FileStateStore:
    """Production store: one file per key under ``root``, mutexes under ``lock_prefix``."""

    def __init__(  # noqa: PLR0913
        self,
        root: Path,
        *,
        lock_prefix: str,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.root = Path(root)
        self.lock_prefix = lock_prefix
        self._mutex_options = {
            "max_attempts": max_attempts,
            "interval_seconds": interval_seconds,
            "stale_after_seconds": stale_after_seconds,
            "clock": clock,
            "sleep": sleep,
        }

    def path(self, key: str) -> Path:
        return self.root / key

    def lock_path(self, lock_key: str = BACKLOG_LOCK) -> Path:
        return Path(f"{self.lock_prefix}-{lock_key}.lock")

    def mutex(self, lock_key: str = BACKLOG_LOCK) -> DirectoryMutex:
        return DirectoryMutex(self.lock_path(lock_key), **self._mutex_options)

    def read(self, key: str) -> str:
        try:
            return self.path(key).read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""

    def exists(self, key: str) -> bool:
        return self.path(key).is_file()

    def write_atomic(self, key: str, content: str) -> None:
        write_atomically(self.path(key), content)

    def delete(self, key: str) -> bool:
        try:
            self.path(key).unlink()
        except FileNotFoundError:
            return False
        return True

    def modified_at(self, key: str) -> float | None:
        try:
            return self.path(key).stat().st_mtime
        except FileNotFoundError:
            return None

    @contextmanager
    def with_lock(self, lock_key: str = BACKLOG_LOCK) -> Iterator[None]:
        with self.mutex(lock_key).held():
            yield


class MemoryStateStore:
    """In-memory store honouring the same whole-value replace and exclusion contracts."""

    def __init__(
        self,
        initial: dict[str, str] | None = None,
        *,
        lock_timeout_seconds: float = DEFAULT_MAX_ATTEMPTS * DEFAULT_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._values: dict[str, str] = dict(initial or {})
        self._modified: dict[str, float] = {key: clock() for key in self._values}
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._lock_timeout_seconds = lock_timeout_seconds
        self._clock = clock

    def read(self, key: str) -> str:
        with self._guard:
            return self._values.get(key, "")

    def exists(self, key: str) -> bool:
        with self._guard:
            return key in self._values

    def write_atomic(self, key: str, content: str) -> None:
        with self._guard:
            self._values[key] = content
            self._modified[key] = self._clock()

    def delete(self, key: str) -> bool:
        with self._guard:
            self._modified.pop(key, None)
            return self._values.pop(key, None) is not None

    def modified_at(self, key: str) -> float | None:
        with self._guard:
            return self._modified.get(key)

    def snapshot(self) -> dict[str, str]:
        with self._guard:
            return dict(self._values)

    @contextmanager
    def with_lock(self, lock_key: str = BACKLOG_LOCK) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(lock_key, threading.Lock())
        if not lock.acquire(timeout=self._lock_timeout_seconds):
            raise LockTimeoutError(f"memory:{lock_key}", DEFAULT_MAX_ATTEMPTS)
        try:
            yield
        finally:
            lock.release()
