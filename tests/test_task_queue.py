from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from taskfleet.errors import InvalidTaskError
from taskfleet.fleet.models import BacklogTask, CompletionRecord, TaskStatus
from taskfleet.fleet.task_queue import BACKLOG_KEY, TaskQueue, insertion_index, parse_entries
from taskfleet.storage.state_store import FileStateStore, MemoryStateStore

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Backlog State Machine"),
]

BACKLOG = """# Backlog

- [x] [API] Auth API
- [>] [UI] Dashboard shell
- [ ] [UI] Login page — email form | blockedBy: Auth API, Session store
- [ ] [API] Session store
- [x] Old chore
"""


def _queue(content: str = BACKLOG) -> tuple[TaskQueue, MemoryStateStore]:
    store = MemoryStateStore({BACKLOG_KEY: content})
    return TaskQueue(store), store


def _lines(store: MemoryStateStore) -> list[str]:
    return store.read(BACKLOG_KEY).split("\n")


def test_claim_next_skips_tasks_with_open_blockers() -> None:
    queue, store = _queue()

    claimed = queue.claim_next()

    assert claimed is not None
    assert claimed.title == "Session store"
    assert claimed.status is TaskStatus.CLAIMED
    assert "- [>] [API] Session store" in _lines(store)
    assert queue.claim_next() is None


def test_blocked_task_becomes_claimable_once_blockers_done() -> None:
    queue, _ = _queue()
    queue.claim_next()

    assert queue.complete("[API] Session store") is True
    claimed = queue.claim_next()

    assert claimed is not None
    assert claimed.title == "Login page"
    assert claimed.description == "email form"


def test_claim_on_missing_backlog_returns_none() -> None:
    queue = TaskQueue(MemoryStateStore())
    assert queue.claim_next() is None


def test_unclaim_only_moves_claimed_entries() -> None:
    queue, store = _queue()

    assert queue.unclaim("dashboard shell") is True
    assert "- [ ] [UI] Dashboard shell" in _lines(store)
    assert queue.unclaim("Dashboard shell") is False
    assert queue.unclaim("Auth API") is False


def test_complete_accepts_pending_or_claimed_but_not_done() -> None:
    queue, store = _queue()

    assert queue.complete("Dashboard shell") is True
    assert queue.complete("Session store") is True
    assert queue.complete("Old chore") is False
    assert queue.counts() == {
        TaskStatus.PENDING: 1,
        TaskStatus.CLAIMED: 0,
        TaskStatus.DONE: 4,
    }
    assert _lines(store)[0] == "# Backlog"


def test_mark_done_and_remove_match_exact_lines() -> None:
    queue, store = _queue()
    old = "- [>] [UI] Dashboard shell"
    new = "- [x] [UI] Dashboard shell"

    assert queue.mark_done(old, new) is True
    assert queue.mark_done(old, new) is False
    assert queue.remove("- [x] Old chore") is True
    assert queue.remove("- [x] Old chore") is False
    assert "- [x] Old chore" not in _lines(store)
    assert new in _lines(store)


def test_mark_done_rejects_multiline_replacement() -> None:
    queue, _ = _queue()
    with pytest.raises(InvalidTaskError):
        queue.mark_done("- [x] Old chore", "- [x] Old\nchore")


def test_insert_top_lands_before_first_open_entry() -> None:
    queue, store = _queue()

    line = queue.insert(BacklogTask(status=TaskStatus.DONE, title="Hotfix", tag="OPS"))

    assert line == "- [ ] [OPS] Hotfix"
    lines = _lines(store)
    assert lines.index(line) == lines.index("- [>] [UI] Dashboard shell") - 1


def test_insert_bottom_lands_before_first_done_entry() -> None:
    queue, store = _queue("# Backlog\n\n- [ ] One\n- [x] Two\n- [ ] Three\n")

    line = queue.insert(BacklogTask(status=TaskStatus.PENDING, title="Four"), position="bottom")

    assert _lines(store) == ["# Backlog", "", "- [ ] One", line, "- [x] Two", "- [ ] Three", ""]


def test_insert_appends_without_anchor() -> None:
    queue, store = _queue("# Backlog\n\n")

    queue.insert(BacklogTask(status=TaskStatus.PENDING, title="First"))

    assert store.read(BACKLOG_KEY) == "# Backlog\n- [ ] First\n\n"


def test_insert_keeps_trailing_blank_lines() -> None:
    queue, store = _queue("# Backlog\n\n- [x] Done\n\n\n")

    queue.insert(BacklogTask(status=TaskStatus.PENDING, title="Next"))

    assert store.read(BACKLOG_KEY) == "# Backlog\n\n- [x] Done\n- [ ] Next\n\n\n"


def test_insert_into_file_without_final_newline() -> None:
    queue, store = _queue("# Backlog")

    queue.insert(BacklogTask(status=TaskStatus.PENDING, title="First"))

    assert store.read(BACKLOG_KEY) == "# Backlog\n- [ ] First\n"


def test_insert_into_missing_backlog_writes_header() -> None:
    store = MemoryStateStore()
    TaskQueue(store).insert(BacklogTask(status=TaskStatus.PENDING, title="First"))

    content = store.read(BACKLOG_KEY)
    assert content.startswith("# Backlog\n")
    assert [entry.task.title for entry in parse_entries(content)] == ["First"]


def test_insert_rejects_duplicate_open_title_but_allows_done_one() -> None:
    queue, _ = _queue()

    with pytest.raises(InvalidTaskError, match="already queued"):
        queue.insert(BacklogTask(status=TaskStatus.PENDING, title="  session   STORE "))
    queue.insert(BacklogTask(status=TaskStatus.PENDING, title="Old chore"))


def test_insert_rejects_line_breaks() -> None:
    queue, store = _queue()
    before = store.read(BACKLOG_KEY)

    with pytest.raises(InvalidTaskError):
        queue.insert(BacklogTask(status=TaskStatus.PENDING, title="a\nb"))
    assert store.read(BACKLOG_KEY) == before


def test_insertion_index_rejects_unknown_position() -> None:
    with pytest.raises(ValueError, match="Unsupported insert position"):
        insertion_index([], "middle")  # type: ignore[arg-type]


def test_uncheck_done_reopens_first_matching_entry() -> None:
    queue, store = _queue()

    assert queue.uncheck_done("auth api") is True
    assert "- [ ] [API] Auth API" in _lines(store)
    assert queue.uncheck_done("auth api") is False


def test_record_completion_appends_rows() -> None:
    queue, store = _queue()
    record = CompletionRecord("2026-10-19", "[API] Session store", "dev/session-store", "12m")

    queue.record_completion(record)
    queue.record_completion(record)

    assert store.read("completed.md").startswith("# Completed Tasks")
    assert queue.completions() == [record, record]


def test_concurrent_claims_are_disjoint(tmp_path: Path) -> None:
    store = FileStateStore(
        tmp_path / "dev",
        lock_prefix=str(tmp_path / "demo"),
        max_attempts=10_000,
        interval_seconds=0.001,
    )
    titles = [f"Task {index}" for index in range(12)]
    store.write_atomic(
        BACKLOG_KEY,
        "# Backlog\n\n" + "".join(f"- [ ] {title}\n" for title in titles),
    )
    queue = TaskQueue(store)
    claimed: list[str] = []
    guard = threading.Lock()
    start = threading.Event()

    def _worker() -> None:
        start.wait(timeout=5)
        while True:
            task = queue.claim_next()
            if task is None:
                return
            with guard:
                claimed.append(task.title)

    threads = [threading.Thread(target=_worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=60)

    assert sorted(claimed) == sorted(titles)
    assert queue.counts()[TaskStatus.CLAIMED] == len(titles)
