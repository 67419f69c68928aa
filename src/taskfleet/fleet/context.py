"""Wiring of stores and fleet components from ``Settings``."""

from __future__ import annotations

from dataclasses import dataclass

from taskfleet.config import Settings
from taskfleet.fleet.failure_ledger import FailureLedger
from taskfleet.fleet.liveness import LivenessTracker
from taskfleet.fleet.store_adapter import StoreAdapter
from taskfleet.fleet.task_queue import TaskQueue
from taskfleet.storage.state_store import FileStateStore


@dataclass(slots=True)
class FleetContext:
    settings: Settings
    store: FileStateStore
    queue: TaskQueue
    ledger: FailureLedger
    tracker: LivenessTracker
    mirror: StoreAdapter | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> FleetContext:
        store = FileStateStore(
            settings.paths.dev_dir,
            lock_prefix=settings.paths.lock_prefix,
            max_attempts=settings.queue.lock_max_attempts,
            interval_seconds=settings.queue.lock_interval_seconds,
            stale_after_seconds=settings.queue.lock_stale_after_seconds,
        )
        mirror = StoreAdapter(settings.paths.db_path) if settings.worker.use_store else None
        return cls(
            settings=settings,
            store=store,
            queue=TaskQueue(store, mirror=mirror),
            ledger=FailureLedger(store, mirror=mirror),
            tracker=LivenessTracker(
                dev_dir=settings.paths.dev_dir,
                lock_prefix=settings.paths.lock_prefix,
                stale_minutes=settings.liveness.stale_minutes,
                long_running_hours=settings.liveness.long_running_hours,
            ),
            mirror=mirror,
        )

    def close(self) -> None:
        if self.mirror is not None:
            self.mirror.close()
