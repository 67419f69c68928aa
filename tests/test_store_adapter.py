from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest
from sqlmodel import Session, select

from taskfleet.fleet.models import BacklogTask, FailureRecord, FailureStatus, TaskStatus
from taskfleet.fleet.store_adapter import StoreAdapter, store_status_for_failure
from taskfleet.storage.sqlmodel_models import FleetTask, WorkerHeartbeat

pytestmark = [
    allure.epic("Relational Mirror"),
    allure.feature("Store Adapter"),
]


@pytest.fixture()
def adapter(tmp_path: Path) -> Iterator[StoreAdapter]:
    store = StoreAdapter(tmp_path / "fleet.db")
    try:
        yield store
    finally:
        store.close()


def _row(adapter: StoreAdapter, title: str) -> FleetTask:
    with Session(adapter.engine) as session:
        return session.exec(select(FleetTask).where(FleetTask.title == title)).one()


def _pending(title: str, tag: str | None = None) -> BacklogTask:
    return BacklogTask(status=TaskStatus.PENDING, title=title, tag=tag)


def test_alembic_schema_is_initialized_to_head(adapter: StoreAdapter) -> None:
    assert adapter.is_ready() is False

    adapter.init_schema()
    adapter.init_schema()

    assert adapter.is_ready() is True
    with sqlite3.connect(adapter.db_path) as connection:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchone()
        tables = connection.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' "
            "AND name IN ('tasks', 'worker_heartbeats') ORDER BY name",
        ).fetchall()
    assert version == ("20261019_0001",)
    assert tables == [("tasks",), ("worker_heartbeats",)]


def test_mirror_writes_are_skipped_without_database(adapter: StoreAdapter) -> None:
    assert adapter.mirror_insert(_pending("Login page")) is False
    assert adapter.mirror_reset("Login page") is False
    assert not adapter.db_path.exists()


def test_mirror_lifecycle_and_counts(adapter: StoreAdapter) -> None:
    adapter.init_schema()

    assert adapter.mirror_insert(_pending("Login page", "UI"))
    assert adapter.mirror_insert(_pending("Session store", "API"))
    assert adapter.mirror_insert(_pending("Docs"))
    assert adapter.mirror_claim(_pending("Login page", "UI"), worker_id="dev-worker-1")
    assert adapter.mirror_done("Docs", duration_secs=600)
    assert adapter.mirror_failure(
        FailureRecord("2026-10-19", "[API] Session store", "dev/session-store", "tests red"),
    )

    assert adapter.task_counts() == {"pending": 0, "claimed": 1, "completed": 1, "failed": 1}
    claimed = _row(adapter, "Login page")
    assert claimed.worker_id == "dev-worker-1"
    assert claimed.tag == "UI"
    assert claimed.claimed_at is not None
    assert _row(adapter, "Docs").duration_secs == 600
    failed = _row(adapter, "Session store")
    assert failed.branch == "dev/session-store"
    assert failed.error == "tests red"
    assert adapter.failure_status_counts()[FailureStatus.PENDING] == 1


def test_mirror_reset_only_touches_failed_rows(adapter: StoreAdapter) -> None:
    adapter.init_schema()
    adapter.mirror_insert(_pending("Login page"))
    adapter.mirror_failure(
        FailureRecord("2026-10-19", "Session store", "dev/session-store", "red", attempts=2),
    )

    assert adapter.mirror_reset("Login page") is False
    assert adapter.mirror_reset("session  STORE") is True

    row = _row(adapter, "Session store")
    assert row.status == "pending"
    assert row.attempts == 0
    assert row.error is None


def test_sync_from_files_lets_failures_win(adapter: StoreAdapter) -> None:
    adapter.init_schema()
    tasks = [
        BacklogTask(status=TaskStatus.DONE, title="Session store", tag="API"),
        BacklogTask(status=TaskStatus.CLAIMED, title="Login page", blocked_by=("Session store",)),
        _pending("Docs"),
    ]
    failures = [
        FailureRecord(
            "2026-10-19",
            "[API] Session store",
            "dev/session-store",
            "red",
            attempts=1,
            status=FailureStatus.FIXING_1,
        ),
    ]

    written = adapter.sync_from_files(tasks, failures)

    assert written == 4
    assert adapter.task_counts_by_raw_status() == {"claimed": 1, "fixing-1": 1, "pending": 1}
    assert _row(adapter, "Login page").blocked_by == "Session store"


def test_record_heartbeat_upserts(adapter: StoreAdapter) -> None:
    adapter.init_schema()

    assert adapter.record_heartbeat("dev-worker-1", slot="dev-worker-1", pid=10, current_task="A")
    assert adapter.record_heartbeat("dev-worker-1", slot="dev-worker-1", pid=11, current_task=None)

    with Session(adapter.engine) as session:
        rows = session.exec(select(WorkerHeartbeat)).all()
    assert [(row.worker_id, row.pid, row.current_task) for row in rows] == [
        ("dev-worker-1", 11, None),
    ]


def test_corrupt_database_degrades_to_logged_failures(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    db_path = tmp_path / "broken.db"
    db_path.write_bytes(b"this is not a sqlite database" * 10)
    adapter = StoreAdapter(db_path)
    try:
        assert adapter.is_ready() is False
        assert adapter.task_counts() is None
        assert adapter.failure_status_counts() is None
        assert adapter.mirror_insert(_pending("Login page")) is False
    finally:
        adapter.close()
    assert "files remain authoritative" in caplog.text


def test_failure_status_mapping() -> None:
    assert store_status_for_failure(FailureStatus.PENDING) == "failed"
    assert store_status_for_failure(FailureStatus.FIXING_2) == "fixing-2"
    assert store_status_for_failure(FailureStatus.SUPERSEDED) == "superseded"


def test_mirror_unclaim_and_remove(adapter: StoreAdapter) -> None:
    adapter.init_schema()
    adapter.mirror_insert(_pending("Login page"))
    adapter.mirror_claim(_pending("Login page"), worker_id="dev-worker-2")
    adapter.mirror_insert(_pending("Docs"))

    assert adapter.mirror_unclaim("Docs") is False
    assert adapter.mirror_unclaim("[UI] Login page") is True

    row = _row(adapter, "Login page")
    assert row.status == "pending"
    assert row.worker_id is None
    assert row.claimed_at is None

    assert adapter.mirror_remove("Docs")
    assert adapter.task_counts_by_raw_status() == {"pending": 1}


def test_heartbeats_are_read_back_and_cleared(adapter: StoreAdapter) -> None:
    assert adapter.heartbeats() is None
    adapter.init_schema()
    adapter.record_heartbeat("dev-worker-1", slot="dev-worker-1", pid=10, current_task="A")
    adapter.record_heartbeat("dev-worker-2", slot="dev-worker-2", pid=11, current_task=None)

    assert sorted(adapter.heartbeats() or {}) == ["dev-worker-1", "dev-worker-2"]

    assert adapter.clear_heartbeat("dev-worker-1")
    assert list(adapter.heartbeats() or {}) == ["dev-worker-2"]
