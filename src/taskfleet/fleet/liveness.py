"""Worker liveness: PID slot locks, heartbeat files and current-task files."""

from __future__ import annotations

import logging
import os
import re
import shutil
import time
from collections.abc import Callable, Iterable
from datetime import UTC
from pathlib import Path

from taskfleet.errors import SlotBusyError
from taskfleet.fleet.models import CurrentTask, ProcessProbe, SlotState, WorkerStatus
from taskfleet.fleet.records import format_current_task, parse_current_task
from taskfleet.storage.state_store import write_atomically

logger = logging.getLogger(__name__)

_PID_RE = re.compile(r"^\d+$")
_WORKER_SLOT_RE = re.compile(r"^dev-worker-(\d+)$")


def pid_is_running(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def worker_index(slot: str) -> int | None:
    """``dev-worker-3`` -> 3; None for slots without per-worker files."""

    match = _WORKER_SLOT_RE.match(slot)
    return int(match.group(1)) if match else None


class LivenessTracker:
    """Read-only liveness inspection plus the owner-side heartbeat writers."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        dev_dir: Path,
        lock_prefix: str,
        stale_minutes: int = 45,
        long_running_hours: int = 24,
        clock: Callable[[], float] = time.time,
        probe: Callable[[int], bool] = pid_is_running,
    ) -> None:
        self.dev_dir = Path(dev_dir)
        self.lock_prefix = lock_prefix
        self.stale_after_seconds = stale_minutes * 60
        self.long_running_seconds = long_running_hours * 3600
        self._clock = clock
        self._probe = probe

    def slot_lock_path(self, slot: str) -> Path:
        return Path(f"{self.lock_prefix}-{slot}.lock")

    def read_pid(self, slot: str) -> str | None:
        """Recorded PID text; None when no lock exists, "" when it records nothing."""

        path = self.slot_lock_path(slot)
        try:
            if path.is_dir():
                pid_file = path / "pid"
                return pid_file.read_text(encoding="utf-8").strip() if pid_file.is_file() else ""
            if path.is_file():
                return path.read_text(encoding="utf-8").strip()
        except OSError as error:
            logger.debug("Unreadable slot lock %s: %s", path, error)
            return ""
        return None

    def is_alive(self, slot: str) -> ProcessProbe:
        pid = self.read_pid(slot) or ""
        if not _PID_RE.match(pid) or int(pid) <= 0:
            return ProcessProbe(alive=False, pid=pid)
        return ProcessProbe(alive=self._probe(int(pid)), pid=pid)

    def slot_state(self, slot: str) -> SlotState:
        if self.read_pid(slot) is None:
            return SlotState.IDLE
        if self.is_alive(slot).alive:
            return SlotState.ACTIVE
        return SlotState.STALE_LOCK

    def clear_stale_lock(self, slot: str) -> bool:
        """Remove the slot lock only when its process is gone."""

        if self.slot_state(slot) is not SlotState.STALE_LOCK:
            return False
        path = self.slot_lock_path(slot)
        if path.is_dir():
            shutil.rmtree(path, ignore_errors=True)
        else:
            path.unlink(missing_ok=True)
        logger.warning("Cleared stale lock for slot %s", slot)
        return True

    def heartbeat_path(self, worker_id: int) -> Path:
        return self.dev_dir / f"worker-{worker_id}.heartbeat"

    def heartbeat_age(self, worker_id: int) -> float | None:
        """Seconds since the last heartbeat; None when missing or unparsable."""

        try:
            raw = self.heartbeat_path(worker_id).read_text(encoding="utf-8").strip()
        except OSError:
            return None
        try:
            epoch = float(raw)
        except ValueError:
            return None
        return self.age_since(epoch)

    def age_since(self, epoch: float) -> float:
        return max(0.0, self._clock() - epoch)

    def is_heartbeat_stale(self, worker_id: int) -> bool:
        age = self.heartbeat_age(worker_id)
        return age is not None and age > self.stale_after_seconds

    def write_heartbeat(self, worker_id: int) -> None:
        write_atomically(self.heartbeat_path(worker_id), f"{int(self._clock())}\n")

    def clear_heartbeat(self, worker_id: int) -> None:
        self.heartbeat_path(worker_id).unlink(missing_ok=True)

    def current_task_path(self, worker_id: int) -> Path:
        return self.dev_dir / f"current-task-{worker_id}.md"

    def current_task(self, worker_id: int) -> CurrentTask | None:
        try:
            text = self.current_task_path(worker_id).read_text(encoding="utf-8")
        except OSError:
            return None
        return parse_current_task(text)

    def write_current_task(self, worker_id: int, task: CurrentTask) -> None:
        write_atomically(self.current_task_path(worker_id), format_current_task(task))

    def is_long_running(self, task: CurrentTask | None) -> bool:
        if task is None or task.started is None or task.status != "in_progress":
            return False
        started = task.started.astimezone(UTC).timestamp()
        return self._clock() - started > self.long_running_seconds

    def worker_statuses(self, slots: Iterable[str]) -> list[WorkerStatus]:
        statuses = []
        for slot in slots:
            probe = self.is_alive(slot)
            status = WorkerStatus(slot=slot, state=self.slot_state(slot), pid=probe.pid or None)
            index = worker_index(slot)
            if index is not None:
                status.heartbeat_age_seconds = self.heartbeat_age(index)
                status.heartbeat_stale = self.is_heartbeat_stale(index)
                current = self.current_task(index)
                if current is not None and current.status == "in_progress":
                    status.current_task = current.title
            statuses.append(status)
        return statuses


class SlotLock:
    """Owner-side PID lock for one worker slot.

    A lock left behind by a dead process is reclaimed; a lock held by a live
    process makes ``acquire`` return False.
    """

    def __init__(self, tracker: LivenessTracker, slot: str, *, pid: int | None = None) -> None:
        self.tracker = tracker
        self.slot = slot
        self.pid = pid if pid is not None else os.getpid()
        self.path = tracker.slot_lock_path(slot)

    def acquire(self) -> bool:
        if not self._create():
            if self.tracker.slot_state(self.slot) is SlotState.ACTIVE:
                return False
            self.tracker.clear_stale_lock(self.slot)
            if not self._create():
                return False
        return True

    def release(self) -> None:
        if self.tracker.read_pid(self.slot) != str(self.pid):
            return
        shutil.rmtree(self.path, ignore_errors=True)

    def __enter__(self) -> SlotLock:
        if not self.acquire():
            probe = self.tracker.is_alive(self.slot)
            raise SlotBusyError(f"Slot {self.slot} is held by running process {probe.pid}.")
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()

    def _create(self) -> bool:
        # Staged so the lock never exists without its pid file.
        staging = self.path.with_name(f"{self.path.name}.{self.pid}.tmp")
        shutil.rmtree(staging, ignore_errors=True)
        staging.mkdir()
        (staging / "pid").write_text(f"{self.pid}\n", encoding="utf-8")
        try:
            if self.path.exists():
                return False
            os.rename(staging, self.path)
        except OSError:
            return False
        finally:
            shutil.rmtree(staging, ignore_errors=True)
        return True
