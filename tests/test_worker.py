from __future__ import annotations

import os
from pathlib import Path

import allure
import pytest
from conftest import fleet_values

from taskfleet.config import Settings
from taskfleet.errors import InvalidTaskError, SlotBusyError
from taskfleet.fleet.context import FleetContext
from taskfleet.fleet.events import EVENTS_KEY, parse_events
from taskfleet.fleet.executor import ExecutionResult, TaskExecutor
from taskfleet.fleet.liveness import SlotLock
from taskfleet.fleet.models import BacklogTask, FailureStatus, TaskStatus
from taskfleet.fleet.pause import pause
from taskfleet.fleet.task_queue import BACKLOG_KEY
from taskfleet.fleet.worker import FleetWorker

pytestmark = [
    allure.epic("Workers"),
    allure.feature("Slot Worker"),
]

BACKLOG = """# Backlog

- [ ] [API] Session store
- [ ] [UI] Login page — email form
"""


class _RecordingExecutor:
    def __init__(self, *results: ExecutionResult) -> None:
        self.results = list(results)
        self.calls: list[tuple[str, str]] = []

    def __call__(self, task: BacklogTask, branch: str) -> ExecutionResult:
        self.calls.append((task.display_title, branch))
        if self.results:
            return self.results.pop(0)
        return ExecutionResult(ok=True, notes="ok")


class _CrashingExecutor:
    def __call__(self, task: BacklogTask, branch: str) -> ExecutionResult:
        raise OSError("agent binary vanished")


def _worker(context: FleetContext, executor: TaskExecutor) -> FleetWorker:
    context.store.write_atomic(BACKLOG_KEY, BACKLOG)
    return FleetWorker(context, slot="dev-worker-1", executor=executor)


def _event_names(context: FleetContext) -> list[str]:
    return [event.event for event in parse_events(context.store.read(EVENTS_KEY))]


def test_run_once_completes_claimed_task(context: FleetContext) -> None:
    executor = _RecordingExecutor(ExecutionResult(ok=True, notes="merged"))
    worker = _worker(context, executor)

    summary = worker.run_once()

    assert (summary.processed, summary.succeeded, summary.failed) == (1, 1, 0)
    assert executor.calls == [("[API] Session store", "dev/session-store")]
    assert "- [x] [API] Session store" in context.store.read(BACKLOG_KEY)
    [completion] = context.queue.completions()
    assert (completion.task, completion.branch, completion.notes) == (
        "[API] Session store",
        "dev/session-store",
        "merged",
    )
    current = context.tracker.current_task(1)
    assert current is not None
    assert (current.status, current.note) == ("completed", "merged")
    assert context.tracker.heartbeat_age(1) is not None
    assert _event_names(context) == ["task-start", "task-done"]


def test_run_once_records_failure(context: FleetContext) -> None:
    worker = _worker(context, _RecordingExecutor(ExecutionResult(ok=False, error="tests red")))

    summary = worker.run_once()

    assert summary.failed == 1
    assert "- [x] [API] Session store" in context.store.read(BACKLOG_KEY)
    [record] = context.ledger.records()
    assert (record.title, record.branch, record.error) == (
        "[API] Session store",
        "dev/session-store",
        "tests red",
    )
    assert record.status is FailureStatus.PENDING
    assert context.queue.completions() == []
    assert context.tracker.current_task(1).status == "failed"
    assert _event_names(context)[-1] == "task-failed"


def test_executor_crash_becomes_failure(context: FleetContext) -> None:
    worker = _worker(context, _CrashingExecutor())

    summary = worker.run_once()

    assert summary.failed == 1
    assert context.ledger.records()[0].error == "agent binary vanished"


def test_paused_pipeline_claims_nothing(context: FleetContext) -> None:
    executor = _RecordingExecutor()
    worker = _worker(context, executor)
    pause(context.store, paused_by="ops")

    summary = worker.run_once()

    assert summary.paused_polls == 1
    assert executor.calls == []
    assert context.queue.counts()[TaskStatus.PENDING] == 2


def test_empty_backlog_is_an_idle_poll(context: FleetContext) -> None:
    worker = FleetWorker(context, slot="dev-worker-1", executor=_RecordingExecutor())

    assert worker.run_once().idle_polls == 1


def test_run_loop_drains_backlog_and_releases_slot(context: FleetContext) -> None:
    executor = _RecordingExecutor(ExecutionResult(ok=True), ExecutionResult(ok=False, error="x"))
    worker = _worker(context, executor)

    summary = worker.run_loop(max_idle_polls=1)

    assert (summary.processed, summary.succeeded, summary.failed) == (2, 1, 1)
    assert summary.idle_polls == 1
    assert context.tracker.read_pid("dev-worker-1") is None
    assert context.tracker.heartbeat_age(1) is None
    names = _event_names(context)
    assert names[0] == "worker-start"
    assert names[-1] == "worker-stop"


def test_run_loop_honours_max_tasks(context: FleetContext) -> None:
    worker = _worker(context, _RecordingExecutor())

    summary = worker.run_loop(max_tasks=1, max_idle_polls=None)

    assert summary.processed == 1
    assert context.queue.counts()[TaskStatus.PENDING] == 1


def test_run_loop_stops_on_request(context: FleetContext) -> None:
    worker: FleetWorker

    class _StoppingExecutor(_RecordingExecutor):
        def __call__(self, task: BacklogTask, branch: str) -> ExecutionResult:
            worker.request_stop(reason="test")
            return super().__call__(task, branch)

    worker = _worker(context, _StoppingExecutor())

    summary = worker.run_loop(max_idle_polls=None)

    assert summary.processed == 1
    assert worker.stop_requested is True


def test_run_loop_refuses_busy_slot(context: FleetContext) -> None:
    worker = _worker(context, _RecordingExecutor())

    with SlotLock(context.tracker, "dev-worker-1", pid=os.getpid()):
        with pytest.raises(SlotBusyError):
            worker.run_loop()

    assert context.queue.counts()[TaskStatus.PENDING] == 2


def test_run_loop_reclaims_stale_slot(context: FleetContext) -> None:
    lock_path = context.tracker.slot_lock_path("dev-worker-1")
    lock_path.mkdir(parents=True)
    (lock_path / "pid").write_text("999999999\n", encoding="utf-8")
    worker = _worker(context, _RecordingExecutor())

    summary = worker.run_loop()

    assert summary.processed == 2
    assert not Path(lock_path).exists()


def test_worker_slot_must_be_numbered(context: FleetContext) -> None:
    with pytest.raises(InvalidTaskError):
        FleetWorker(context, slot="watchdog", executor=_RecordingExecutor())


def test_run_loop_clears_mirrored_heartbeat(tmp_path: Path) -> None:
    settings = Settings.from_mapping(
        fleet_values(tmp_path, USE_STORE="true"),
        project_dir=tmp_path,
    )
    context = FleetContext.from_settings(settings)
    settings.paths.dev_dir.mkdir(parents=True, exist_ok=True)
    try:
        mirror = context.mirror
        assert mirror is not None
        mirror.init_schema()
        worker = _worker(context, _RecordingExecutor())

        summary = worker.run_loop(max_idle_polls=1)

        assert summary.succeeded == 2
        assert mirror.heartbeats() == {}
        assert mirror.task_counts_by_raw_status() == {"completed": 2}
    finally:
        context.close()
