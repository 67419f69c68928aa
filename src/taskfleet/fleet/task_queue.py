"""Backlog state machine: pending -> claimed -> done, with claimed -> pending recovery."""

from __future__ import annotations

import logging
from collections import Counter
from typing import TYPE_CHECKING, Literal

from taskfleet.errors import InvalidTaskError
from taskfleet.fleet.models import (
    BacklogEntry,
    BacklogTask,
    CompletionRecord,
    TaskStatus,
    normalize_title,
)
from taskfleet.fleet.records import (
    BACKLOG_HEADER,
    COMPLETED_HEADER,
    format_backlog_line,
    format_completion_row,
    format_duration,
    parse_backlog_line,
    parse_completion_row,
    set_line_status,
    strip_tag,
)
from taskfleet.storage.common import utc_now
from taskfleet.storage.state_store import BACKLOG_LOCK, StateStore

if TYPE_CHECKING:
    from taskfleet.fleet.store_adapter import StoreAdapter

logger = logging.getLogger(__name__)

BACKLOG_KEY = "backlog.md"
COMPLETED_KEY = "completed.md"

InsertPosition = Literal["top", "bottom"]


def parse_entries(content: str) -> list[BacklogEntry]:
    entries: list[BacklogEntry] = []
    for index, line in enumerate(content.split("\n")):
        task = parse_backlog_line(line)
        if task is not None:
            entries.append(BacklogEntry(line_index=index, line=line, task=task))
    return entries


def task_key(title: str) -> str:
    """Identity key for a title given with or without its ``[TAG]`` prefix."""

    return normalize_title(strip_tag(title))


def insertion_index(entries: list[BacklogEntry], position: InsertPosition) -> int | None:
    """Line index to insert before, or None to append at end of file."""

    if position == "top":
        wanted = {TaskStatus.PENDING, TaskStatus.CLAIMED}
    elif position == "bottom":
        wanted = {TaskStatus.DONE}
    else:
        raise ValueError(f"Unsupported insert position: {position!r}")
    for entry in entries:
        if entry.task.status in wanted:
            return entry.line_index
    return None


def append_line(lines: list[str], line: str) -> None:
    """Add ``line`` after the last non-blank line, keeping any trailing blank lines."""

    end = len(lines)
    while end > 0 and lines[end - 1] == "":
        end -= 1
    if end == len(lines):
        lines.extend([line, ""])
    else:
        lines.insert(end, line)


def uncheck_done(content: str, search: str) -> tuple[str, BacklogTask | None]:
    """Flip the first done entry containing ``search`` (case-insensitive) back to pending.

    Returns the new content and the reopened task, or None when nothing matched.
    """

    needle = search.casefold()
    lines = content.split("\n")
    for index, line in enumerate(lines):
        if line.startswith("- [x] ") and needle in line.casefold():
            lines[index] = set_line_status(line, TaskStatus.PENDING)
            return "\n".join(lines), parse_backlog_line(lines[index])
    return content, None


class TaskQueue:
    """Claim/unclaim/complete/insert/remove over the backlog file.

    Every mutation is lock -> read -> compute -> atomic replace -> unlock.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        mirror: StoreAdapter | None = None,
        backlog_key: str = BACKLOG_KEY,
        completed_key: str = COMPLETED_KEY,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.backlog_key = backlog_key
        self.completed_key = completed_key

    def entries(self) -> list[BacklogEntry]:
        return parse_entries(self.store.read(self.backlog_key))

    def list_tasks(self, status: TaskStatus | None = None) -> list[BacklogTask]:
        return [
            entry.task
            for entry in self.entries()
            if status is None or entry.task.status is status
        ]

    def counts(self) -> dict[TaskStatus, int]:
        counter = Counter(entry.task.status for entry in self.entries())
        return {status: counter.get(status, 0) for status in TaskStatus}

    def claim_next(self) -> BacklogTask | None:
        """Flip the first claimable pending entry to claimed and return it."""

        with self.store.with_lock(BACKLOG_LOCK):
            content = self.store.read(self.backlog_key)
            entries = parse_entries(content)
            done_keys = {
                entry.task.key for entry in entries if entry.task.status is TaskStatus.DONE
            }
            chosen = next(
                (
                    entry
                    for entry in entries
                    if entry.task.status is TaskStatus.PENDING
                    and all(task_key(blocker) in done_keys for blocker in entry.task.blocked_by)
                ),
                None,
            )
            if chosen is None:
                return None
            lines = content.split("\n")
            lines[chosen.line_index] = set_line_status(chosen.line, TaskStatus.CLAIMED)
            self.store.write_atomic(self.backlog_key, "\n".join(lines))

        claimed = chosen.task.with_status(TaskStatus.CLAIMED)
        logger.info("Claimed task %r", claimed.display_title)
        if self.mirror is not None:
            self.mirror.mirror_claim(claimed)
        return claimed

    def unclaim(self, title: str) -> bool:
        """Return a claimed entry to pending; False when no claimed entry matches."""

        changed = self._flip(title, TaskStatus.CLAIMED, TaskStatus.PENDING)
        if changed:
            logger.info("Unclaimed task %r", title)
            if self.mirror is not None:
                self.mirror.mirror_unclaim(title)
        return changed

    def complete(self, title: str) -> bool:
        """Mark the open entry with this title done."""

        changed = self._flip(title, None, TaskStatus.DONE)
        if changed and self.mirror is not None:
            self.mirror.mirror_done(strip_tag(title))
        return changed

    def uncheck_done(self, search: str) -> bool:
        """Reopen the first done entry whose line contains ``search``."""

        with self.store.with_lock(BACKLOG_LOCK):
            content, reopened = uncheck_done(self.store.read(self.backlog_key), search)
            if reopened is not None:
                self.store.write_atomic(self.backlog_key, content)
        if reopened is None:
            return False
        if self.mirror is not None and not self.mirror.mirror_reset(reopened.title):
            self.mirror.mirror_insert(reopened)
        return True

    def mark_done(self, old_line: str, new_line: str) -> bool:
        """Replace one exact line; False when ``old_line`` is not present."""

        if "\n" in new_line or "\r" in new_line:
            raise InvalidTaskError("Replacement line must not contain line breaks.")
        with self.store.with_lock(BACKLOG_LOCK):
            lines = self.store.read(self.backlog_key).split("\n")
            try:
                index = lines.index(old_line)
            except ValueError:
                return False
            lines[index] = new_line
            self.store.write_atomic(self.backlog_key, "\n".join(lines))
        self._mirror_replacement(parse_backlog_line(old_line), parse_backlog_line(new_line))
        return True

    def remove(self, line: str) -> bool:
        """Delete one exact line; False when it is not present."""

        with self.store.with_lock(BACKLOG_LOCK):
            lines = self.store.read(self.backlog_key).split("\n")
            try:
                lines.remove(line)
            except ValueError:
                return False
            self.store.write_atomic(self.backlog_key, "\n".join(lines))
        removed = parse_backlog_line(line)
        if removed is not None and self.mirror is not None:
            self.mirror.mirror_remove(removed.title)
        return True

    def insert(self, task: BacklogTask, position: InsertPosition = "top") -> str:
        """Insert a new pending entry and return its line.

        ``top`` lands before the first open entry, ``bottom`` before the first
        done entry; with no such entry the line is appended.
        """

        line = format_backlog_line(task.with_status(TaskStatus.PENDING))
        with self.store.with_lock(BACKLOG_LOCK):
            content = self.store.read(self.backlog_key) or BACKLOG_HEADER
            entries = parse_entries(content)
            if any(entry.task.status.is_open and entry.task.key == task.key for entry in entries):
                raise InvalidTaskError(f"Task already queued: {task.title!r}")
            lines = content.split("\n")
            index = insertion_index(entries, position)
            if index is None:
                append_line(lines, line)
            else:
                lines.insert(index, line)
            self.store.write_atomic(self.backlog_key, "\n".join(lines))
        logger.info("Inserted task %r at %s", task.title, position)
        if self.mirror is not None:
            self.mirror.mirror_insert(task.with_status(TaskStatus.PENDING))
        return line

    def record_completion(self, record: CompletionRecord) -> None:
        """Append a row to the completion log."""

        with self.store.with_lock(BACKLOG_LOCK):
            content = self.store.read(self.completed_key) or COMPLETED_HEADER
            if not content.endswith("\n"):
                content += "\n"
            row = format_completion_row(record)
            self.store.write_atomic(self.completed_key, f"{content}{row}\n")

    def completions(self) -> list[CompletionRecord]:
        records = []
        for line in self.store.read(self.completed_key).split("\n"):
            record = parse_completion_row(line)
            if record is not None:
                records.append(record)
        return records

    def _flip(self, title: str, source: TaskStatus | None, target: TaskStatus) -> bool:
        key = task_key(title)
        with self.store.with_lock(BACKLOG_LOCK):
            content = self.store.read(self.backlog_key)
            for entry in parse_entries(content):
                task = entry.task
                if task.key != key:
                    continue
                if source is None and not task.status.is_open:
                    continue
                if source is not None and task.status is not source:
                    continue
                lines = content.split("\n")
                lines[entry.line_index] = set_line_status(entry.line, target)
                self.store.write_atomic(self.backlog_key, "\n".join(lines))
                return True
        return False

    def _mirror_replacement(self, old: BacklogTask | None, new: BacklogTask | None) -> None:
        mirror = self.mirror
        if mirror is None:
            return
        if old is not None and (new is None or new.key != old.key):
            mirror.mirror_remove(old.title)
        if new is None:
            return
        if new.status is TaskStatus.DONE:
            mirror.mirror_done(new.title)
        elif new.status is TaskStatus.CLAIMED:
            mirror.mirror_claim(new)
        elif not mirror.mirror_unclaim(new.title):
            mirror.mirror_insert(new)


def completion_for(
    task: BacklogTask,
    *,
    branch: str,
    minutes: float,
    notes: str = "",
) -> CompletionRecord:
    return CompletionRecord(
        date=utc_now().strftime("%Y-%m-%d"),
        task=task.display_title,
        branch=branch,
        duration=format_duration(minutes),
        notes=notes,
    )
