from __future__ import annotations

import json
import os
from collections.abc import Iterator
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from conftest import fleet_values
from sqlmodel import Session

from taskfleet.config import Settings
from taskfleet.fleet.context import FleetContext
from taskfleet.fleet.failure_ledger import FAILED_KEY
from taskfleet.fleet.liveness import SlotLock
from taskfleet.fleet.models import (
    BacklogTask,
    CompletionRecord,
    FailureStatus,
    HealthLabel,
    MissionStatus,
    SlotState,
    TaskStatus,
)
from taskfleet.fleet.pause import pause
from taskfleet.fleet.records import FAILURE_HEADER
from taskfleet.fleet.status import (
    BLOCKERS_KEY,
    MISSION_KEY,
    FleetReader,
    build_snapshot,
    render_status_lines,
)
from taskfleet.fleet.task_queue import BACKLOG_KEY
from taskfleet.storage.common import utc_now
from taskfleet.storage.sqlmodel_models import WorkerHeartbeat

pytestmark = [
    allure.epic("Observability"),
    allure.feature("Status Snapshot"),
]

BACKLOG = """# Backlog

- [ ] [API] Session store
- [ ] [UI] Login page
- [>] [UI] Dashboard shell
- [x] [API] Auth API
"""

FAILURES = FAILURE_HEADER + "\n".join(
    [
        "| 2026-10-01 | [API] Broken import | dev/broken-import | ImportError | 1 | pending |",
        "| 2026-10-02 | Flaky test | dev/flaky-test | timeout | 2 | fixed |",
        "| 2026-10-03 | Lint | dev/lint | ruff | 1 | superseded |",
        "| 2026-10-04 | Infra | dev/infra | disk full | 3 | blocked |",
        "",
    ],
)

BLOCKERS = "# Blockers\n\n## Active\n- CI is red\n\n## Resolved\n- Old outage\n"

MISSION = """# Mission

## Success Criteria

1. Dashboard covers the core handlers
2. Failures self-correct
3. Watchdog log stays clean
4. Ship the release notes

## Notes
- The mission is long-lived
"""


def _seed(context: FleetContext) -> None:
    store = context.store
    store.write_atomic(BACKLOG_KEY, BACKLOG)
    store.write_atomic(FAILED_KEY, FAILURES)
    store.write_atomic(BLOCKERS_KEY, BLOCKERS)
    store.write_atomic(MISSION_KEY, MISSION)
    context.queue.record_completion(
        CompletionRecord(date="2026-10-05", task="[API] Auth API", branch="dev/auth-api"),
    )
    context.tracker.heartbeat_path(1).write_text("0\n", encoding="utf-8")


def test_snapshot_derives_counts_and_health(context: FleetContext) -> None:
    _seed(context)

    snapshot = build_snapshot(context)

    assert snapshot.tasks == {"pending": 2, "claimed": 1, "completed": 1, "failed": 1}
    assert snapshot.blockers == 1
    # 100 - 5 (pending failure) - 10 (blocker) - 2 (stale heartbeat)
    assert snapshot.health_score == 83
    assert snapshot.health_label is HealthLabel.GOOD
    assert snapshot.self_correction_rate == 67
    assert [worker.slot for worker in snapshot.workers][:2] == ["dev-worker-1", "dev-worker-2"]
    assert all(worker.state is SlotState.IDLE for worker in snapshot.workers)
    assert snapshot.workers[0].heartbeat_stale is True
    assert [item.status for item in snapshot.mission_progress] == [
        MissionStatus.NOT_MET,
        MissionStatus.PARTIAL,
        MissionStatus.MET,
        MissionStatus.NOT_MET,
    ]
    assert snapshot.last_activity is not None


def test_as_dict_keeps_published_keys(context: FleetContext) -> None:
    _seed(context)

    payload = build_snapshot(context).as_dict()

    assert set(payload) == {
        "project",
        "paused",
        "tasks",
        "workers",
        "healthScore",
        "healthLabel",
        "selfCorrectionRate",
        "blockers",
        "missionProgress",
        "lastActivity",
    }
    assert set(payload["workers"][0]) == {
        "name",
        "status",
        "pid",
        "heartbeatAgeSeconds",
        "heartbeatStale",
        "currentTask",
    }
    assert json.loads(json.dumps(payload))["healthLabel"] == "good"


def test_empty_project_is_healthy(context: FleetContext) -> None:
    snapshot = build_snapshot(context)

    assert snapshot.tasks == {"pending": 0, "claimed": 0, "completed": 0, "failed": 0}
    assert snapshot.health_score == 100
    assert snapshot.mission_progress == []
    assert snapshot.last_activity is None


class _EmptyMirror:
    def is_ready(self) -> bool:
        return True

    def task_counts(self) -> dict[str, int]:
        return {"pending": 0, "claimed": 0, "completed": 0, "failed": 0}

    def failure_status_counts(self) -> dict[FailureStatus, int]:
        return {status: 0 for status in FailureStatus}


class _CountingMirror(_EmptyMirror):
    def task_counts(self) -> dict[str, int]:
        return {"pending": 7, "claimed": 2, "completed": 30, "failed": 0}


def test_reader_falls_back_to_files_when_mirror_is_empty(context: FleetContext) -> None:
    _seed(context)
    reader = FleetReader(replace(context, mirror=_EmptyMirror()))

    assert reader.task_counts()["pending"] == 2
    assert reader.failure_counts()[FailureStatus.FIXED] == 1


def test_reader_prefers_mirror_counts(context: FleetContext) -> None:
    _seed(context)
    reader = FleetReader(replace(context, mirror=_CountingMirror()))

    assert reader.task_counts()["completed"] == 30


def test_render_status_lines(context: FleetContext) -> None:
    _seed(context)
    pause(context.store, paused_by="alice")

    lines = render_status_lines(build_snapshot(context))

    assert lines[0] == "Fleet status (demo)"
    paused = [line for line in lines if line.startswith("  Paused:")]
    assert paused[0].startswith("  Paused:    yes, since ")
    assert paused[0].endswith("by alice")
    assert "  Backlog:   2 pending, 1 claimed" in lines
    assert "  Health:    83/100 (good)" in lines
    assert "  Self-correction rate: 67%" in lines
    assert any("dev-worker-1" in line and "(stale)" in line for line in lines)
    assert (
        "    3. [met] Watchdog log stays clean (no zombie/deadlock entries in watchdog log)"
        in lines
    )


@pytest.fixture()
def mirrored(tmp_path: Path) -> Iterator[FleetContext]:
    settings = Settings.from_mapping(
        fleet_values(tmp_path, USE_STORE="true"),
        project_dir=tmp_path,
    )
    fleet = FleetContext.from_settings(settings)
    settings.paths.dev_dir.mkdir(parents=True, exist_ok=True)
    assert fleet.mirror is not None
    fleet.mirror.init_schema()
    try:
        yield fleet
    finally:
        fleet.close()


def _task(title: str) -> BacklogTask:
    return BacklogTask(status=TaskStatus.PENDING, title=title)


def test_mirrored_counts_follow_unclaim_and_remove(mirrored: FleetContext) -> None:
    queue = mirrored.queue
    queue.insert(_task("Alpha"), position="bottom")
    queue.insert(_task("Beta"), position="bottom")
    claimed = queue.claim_next()
    assert claimed is not None
    assert claimed.title == "Alpha"

    assert queue.unclaim("Alpha") is True
    assert queue.remove("- [ ] Beta") is True

    reader = FleetReader(mirrored)
    assert reader.file_task_counts() == {"pending": 1, "claimed": 0, "completed": 0, "failed": 0}
    assert reader.task_counts() == reader.file_task_counts()


def test_mirrored_counts_follow_line_edits_and_reopen(mirrored: FleetContext) -> None:
    queue = mirrored.queue
    mirror = mirrored.mirror
    assert mirror is not None
    queue.insert(_task("Alpha"), position="bottom")

    assert queue.mark_done("- [ ] Alpha", "- [>] Alpha")
    assert mirror.task_counts_by_raw_status() == {"claimed": 1}
    assert queue.mark_done("- [>] Alpha", "- [x] Alpha")
    assert mirror.task_counts_by_raw_status() == {"completed": 1}

    assert queue.uncheck_done("alpha") is True
    assert mirror.task_counts_by_raw_status() == {"pending": 1}

    assert queue.mark_done("- [ ] Alpha", "- [ ] Alpha two")
    assert mirror.task_counts_by_raw_status() == {"pending": 1}
    assert FleetReader(mirrored).task_counts()["pending"] == 1


def test_active_worker_without_heartbeat_file_uses_mirror_beat(mirrored: FleetContext) -> None:
    mirror = mirrored.mirror
    assert mirror is not None
    for slot in ("dev-worker-1", "dev-worker-2"):
        mirror.record_heartbeat(slot, slot=slot, pid=os.getpid(), current_task=None)
    with Session(mirror.engine) as session:
        row = session.get(WorkerHeartbeat, "dev-worker-2")
        assert row is not None
        row.beat_at = utc_now() - timedelta(hours=2)
        session.add(row)
        session.commit()

    with (
        SlotLock(mirrored.tracker, "dev-worker-1", pid=os.getpid()),
        SlotLock(mirrored.tracker, "dev-worker-2", pid=os.getpid()),
    ):
        snapshot = build_snapshot(mirrored)

    fresh, stale = snapshot.workers[0], snapshot.workers[1]
    assert fresh.state is SlotState.ACTIVE
    assert fresh.heartbeat_age_seconds is not None
    assert fresh.heartbeat_age_seconds < 60
    assert fresh.heartbeat_stale is False
    assert stale.heartbeat_stale is True
    assert snapshot.health_score == 98
