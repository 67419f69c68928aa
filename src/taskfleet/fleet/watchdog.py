"""Recovery of slots whose worker process died mid-task."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from taskfleet.fleet.events import append_event
from taskfleet.fleet.liveness import LivenessTracker, worker_index
from taskfleet.fleet.models import SlotState
from taskfleet.fleet.task_queue import TaskQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WatchdogReport:
    cleared_slots: list[str] = field(default_factory=list)
    requeued: list[str] = field(default_factory=list)
    active_slots: list[str] = field(default_factory=list)

    def lines(self) -> list[str]:
        if not self.cleared_slots:
            return [f"No stale slots ({len(self.active_slots)} active)."]
        output = [f"Cleared stale lock: {slot}" for slot in self.cleared_slots]
        output.extend(f"Requeued: {title}" for title in self.requeued)
        return output


def recover_stale_slots(
    tracker: LivenessTracker,
    queue: TaskQueue,
    slots: Iterable[str],
) -> WatchdogReport:
    """Clear stale slot locks and return their in-progress tasks to pending."""

    report = WatchdogReport()
    for slot in slots:
        state = tracker.slot_state(slot)
        if state is SlotState.ACTIVE:
            report.active_slots.append(slot)
            continue
        if state is not SlotState.STALE_LOCK or not tracker.clear_stale_lock(slot):
            continue
        report.cleared_slots.append(slot)
        append_event(tracker.dev_dir, "watchdog-clear", slot)

        index = worker_index(slot)
        if index is None:
            continue
        tracker.clear_heartbeat(index)
        current = tracker.current_task(index)
        if current is None or current.status != "in_progress" or not current.title:
            continue
        if queue.unclaim(current.title):
            report.requeued.append(current.title)
            append_event(tracker.dev_dir, "watchdog-requeue", current.title)
            logger.warning("Requeued %r from dead slot %s", current.title, slot)
        tracker.write_current_task(
            index,
            replace(current, status="recovered", started=None, note="worker died; requeued"),
        )
    return report
