"""Failure ledger: failed attempts, retry counts and how each failure was resolved."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING

from taskfleet.errors import AmbiguousMatchError, InvalidTaskError, NoMatchError
from taskfleet.fleet.health import self_correction_rate
from taskfleet.fleet.models import FailureRecord, FailureStatus, ResetResult
from taskfleet.fleet.records import (
    FAILURE_HEADER,
    format_failure_row,
    parse_failure_row,
    sanitize_cell,
    strip_tag,
)
from taskfleet.fleet.task_queue import BACKLOG_KEY, append_line, task_key, uncheck_done
from taskfleet.storage.common import utc_now
from taskfleet.storage.state_store import BACKLOG_LOCK, StateStore

if TYPE_CHECKING:
    from taskfleet.fleet.store_adapter import StoreAdapter

logger = logging.getLogger(__name__)

FAILED_KEY = "failed-tasks.md"


def parse_rows(content: str) -> list[tuple[int, FailureRecord]]:
    rows = []
    for index, line in enumerate(content.split("\n")):
        record = parse_failure_row(line)
        if record is not None:
            rows.append((index, record))
    return rows


class FailureLedger:
    """Record, advance and reset failure rows under the shared backlog lock."""

    def __init__(
        self,
        store: StateStore,
        *,
        mirror: StoreAdapter | None = None,
        failed_key: str = FAILED_KEY,
        backlog_key: str = BACKLOG_KEY,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.mirror = mirror
        self.failed_key = failed_key
        self.backlog_key = backlog_key
        self._clock = clock

    def records(self) -> list[FailureRecord]:
        return [record for _, record in parse_rows(self.store.read(self.failed_key))]

    def status_counts(self) -> dict[FailureStatus, int]:
        counter = Counter(record.status for record in self.records())
        return {status: counter.get(status, 0) for status in FailureStatus}

    def self_correction_rate(self) -> int:
        return self_correction_rate(self.status_counts())

    def record_failure(self, task_title: str, error: str, branch: str) -> FailureRecord:
        """Append a pending row, or bump attempts on the open row for this title."""

        key = task_key(task_title)
        with self.store.with_lock(BACKLOG_LOCK):
            content = self.store.read(self.failed_key) or FAILURE_HEADER
            lines = content.split("\n")
            for index, record in parse_rows(content):
                if task_key(record.title) != key or record.status.is_terminal:
                    continue
                updated = replace(
                    record,
                    error=sanitize_cell(error),
                    branch=branch or record.branch,
                    attempts=record.attempts + 1,
                )
                lines[index] = format_failure_row(updated)
                self.store.write_atomic(self.failed_key, "\n".join(lines))
                break
            else:
                updated = FailureRecord(
                    date=self._clock().strftime("%Y-%m-%d"),
                    title=task_title,
                    branch=branch,
                    error=sanitize_cell(error),
                )
                append_line(lines, format_failure_row(updated))
                self.store.write_atomic(self.failed_key, "\n".join(lines))

        logger.warning(
            "Recorded failure for %r (attempts=%d): %s",
            task_title,
            updated.attempts,
            updated.error,
        )
        if self.mirror is not None:
            self.mirror.mirror_failure(updated)
        return updated

    def set_status(self, title: str, status: FailureStatus) -> FailureRecord:
        """Move the uniquely matching row to ``status``."""

        return self._update(title, lambda record: replace(record, status=status))

    def begin_fix(self, title: str) -> FailureRecord:
        """Advance an open row to ``fixing-N`` where N is the next fix attempt."""

        def start(record: FailureRecord) -> FailureRecord:
            if record.status.is_terminal:
                raise InvalidTaskError(
                    f"Failure {record.title!r} is already {record.status.value}; reset it first.",
                )
            return replace(record, status=FailureStatus.fixing(record.attempts + 1))

        return self._update(title, start)

    def find(self, term: str) -> FailureRecord:
        """Unique case-insensitive title match, else ``NoMatchError``/``AmbiguousMatchError``."""

        return _unique_match(parse_rows(self.store.read(self.failed_key)), term)[1]

    def reset(self, title_substring: str) -> ResetResult:
        """Return a failed task to the queue: row to ``0 | pending``, backlog ``[x]`` to ``[ ]``.

        Both files are rewritten inside one lock scope so an observer never
        sees the ledger reset without the backlog entry reopened. Nothing is
        written when the term matches zero or several rows.
        """

        with self.store.with_lock(BACKLOG_LOCK):
            content = self.store.read(self.failed_key)
            index, record = _unique_match(parse_rows(content), title_substring)
            reset_record = replace(record, attempts=0, status=FailureStatus.PENDING)
            lines = content.split("\n")
            lines[index] = format_failure_row(reset_record)
            self.store.write_atomic(self.failed_key, "\n".join(lines))

            backlog, reopened = uncheck_done(
                self.store.read(self.backlog_key),
                strip_tag(record.title),
            )
            unchecked = reopened is not None
            if unchecked:
                self.store.write_atomic(self.backlog_key, backlog)

        result = ResetResult(
            title=record.title,
            branch=record.branch,
            backlog_unchecked=unchecked,
        )
        if not unchecked:
            result.warnings.append(
                f"No completed backlog entry found for {record.title!r}; backlog unchanged.",
            )
        if self.mirror is not None:
            result.store_updated = self.mirror.mirror_reset(strip_tag(record.title))
        logger.info("Reset failed task %r to pending", record.title)
        return result

    def _update(
        self,
        title: str,
        change: Callable[[FailureRecord], FailureRecord],
    ) -> FailureRecord:
        with self.store.with_lock(BACKLOG_LOCK):
            content = self.store.read(self.failed_key)
            index, record = _unique_match(parse_rows(content), title)
            updated = change(record)
            lines = content.split("\n")
            lines[index] = format_failure_row(updated)
            self.store.write_atomic(self.failed_key, "\n".join(lines))
        if self.mirror is not None:
            self.mirror.mirror_failure(updated)
        return updated


def _unique_match(
    rows: list[tuple[int, FailureRecord]],
    term: str,
) -> tuple[int, FailureRecord]:
    needle = term.strip().casefold()
    if not needle:
        raise NoMatchError("Search term must not be empty.")
    matches = [(index, record) for index, record in rows if needle in record.title.casefold()]
    if not matches:
        raise NoMatchError(f"No failed task matching {term!r}.")
    if len(matches) > 1:
        raise AmbiguousMatchError(term, [record.title for _, record in matches])
    return matches[0]
