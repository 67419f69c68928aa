"""Directory-based inter-process mutex.

``mkdir`` is atomic on every filesystem the fleet runs on and fails when the
directory already exists, so the existence of the marker directory *is* the
held state. The marker's mtime is the lock age used for stale reclamation.
"""

from __future__ import annotations

import logging
import os
import shutil
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from taskfleet.errors import LockTimeoutError

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 50
DEFAULT_INTERVAL_SECONDS = 0.1
DEFAULT_STALE_AFTER_SECONDS = 30.0


class DirectoryMutex:
    """Bounded-retry mutex over an exclusive marker directory."""

    def __init__(  # noqa: PLR0913
        self,
        path: Path,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        stale_after_seconds: float = DEFAULT_STALE_AFTER_SECONDS,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1.")
        self.path = Path(path)
        self.max_attempts = max_attempts
        self.interval_seconds = interval_seconds
        self.stale_after_seconds = stale_after_seconds
        self._clock = clock
        self._sleep = sleep

    def acquire(self) -> bool:
        """Try to create the marker; return False once the attempt budget is spent."""

        for attempt in range(1, self.max_attempts + 1):
            if self._try_create():
                return True
            if attempt == self.max_attempts:
                return self._reclaim_if_stale()
            self._sleep(self.interval_seconds)
        return False

    def release(self) -> None:
        """Remove the marker. Missing marker is fine; errors are logged, never raised."""

        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            return
        except OSError as error:
            logger.warning("Failed to release lock %s: %s", self.path, error)

    def age_seconds(self) -> float | None:
        """Marker age by mtime, or None when no marker exists."""

        try:
            modified = self.path.stat().st_mtime
        except FileNotFoundError:
            return None
        return max(0.0, self._clock() - modified)

    @contextmanager
    def held(self) -> Iterator[None]:
        """Hold the mutex for the duration of the block or raise ``LockTimeoutError``."""

        if not self.acquire():
            raise LockTimeoutError(str(self.path), self.max_attempts)
        try:
            yield
        finally:
            self.release()

    def _try_create(self) -> bool:
        try:
            os.mkdir(self.path)
        except FileExistsError:
            return False
        return True

    def _reclaim_if_stale(self) -> bool:
        age = self.age_seconds()
        if age is None:
            # Holder released between our last attempt and the stat.
            return self._try_create()
        if age <= self.stale_after_seconds:
            return False
        logger.warning(
            "Reclaiming stale lock %s (age %.1fs > %.1fs)",
            self.path,
            age,
            self.stale_after_seconds,
        )
        shutil.rmtree(self.path, ignore_errors=True)
        return self._try_create()
