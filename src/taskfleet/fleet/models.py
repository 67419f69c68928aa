"""Domain models for backlog, failure ledger, liveness and health."""

from __future__ import annotations

import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum

_WHITESPACE_RE = re.compile(r"\s+")


class TaskStatus(str, Enum):
    """Backlog entry lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"

    @property
    def marker(self) -> str:
        return _STATUS_MARKERS[self]

    @property
    def is_open(self) -> bool:
        return self is not TaskStatus.DONE


_STATUS_MARKERS = {
    TaskStatus.PENDING: " ",
    TaskStatus.CLAIMED: ">",
    TaskStatus.DONE: "x",
}


class FailureStatus(str, Enum):
    """Failure-ledger row lifecycle states."""

    PENDING = "pending"
    FIXING_1 = "fixing-1"
    FIXING_2 = "fixing-2"
    FIXING_3 = "fixing-3"
    FIXED = "fixed"
    BLOCKED = "blocked"
    SUPERSEDED = "superseded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_FAILURE_STATUSES

    @classmethod
    def fixing(cls, attempt: int) -> FailureStatus:
        return cls(f"fixing-{min(max(attempt, 1), 3)}")


TERMINAL_FAILURE_STATUSES = frozenset(
    {FailureStatus.FIXED, FailureStatus.BLOCKED, FailureStatus.SUPERSEDED},
)


class SlotState(str, Enum):
    """Liveness of one named worker slot."""

    ACTIVE = "active"
    STALE_LOCK = "stale-lock"
    IDLE = "idle"


class HealthLabel(str, Enum):
    GOOD = "good"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class MissionStatus(str, Enum):
    MET = "met"
    PARTIAL = "partial"
    NOT_MET = "not-met"


class BranchClass(str, Enum):
    MERGED = "merged"
    ACTIVE = "active"
    ORPHANED = "orphaned"


def normalize_title(title: str) -> str:
    """Identity key for a task title: case-folded, whitespace-collapsed."""

    return _WHITESPACE_RE.sub(" ", title).strip().casefold()


@dataclass(slots=True, frozen=True)
class BacklogTask:
    """One checkbox line of the backlog, parsed."""

    status: TaskStatus
    title: str
    tag: str | None = None
    description: str | None = None
    blocked_by: tuple[str, ...] = ()

    @property
    def key(self) -> str:
        return normalize_title(self.title)

    @property
    def display_title(self) -> str:
        """Title as carried into the failure ledger, completion log and branch slug."""

        return f"[{self.tag}] {self.title}" if self.tag else self.title

    def with_status(self, status: TaskStatus) -> BacklogTask:
        return replace(self, status=status)


@dataclass(slots=True, frozen=True)
class BacklogEntry:
    """A parsed task together with its position and raw text in the file."""

    line_index: int
    line: str
    task: BacklogTask


@dataclass(slots=True)
class FailureRecord:
    """One row of the failure ledger."""

    date: str
    title: str
    branch: str
    error: str
    attempts: int = 0
    status: FailureStatus = FailureStatus.PENDING


@dataclass(slots=True)
class CompletionRecord:
    """One row of the completion log."""

    date: str
    task: str
    branch: str
    duration: str = ""
    notes: str = ""


@dataclass(slots=True)
class CurrentTask:
    """What a slot worker is executing, as written to ``current-task-N.md``."""

    title: str | None
    status: str = "unknown"
    branch: str | None = None
    started: datetime | None = None
    worker: str | None = None
    note: str | None = None


@dataclass(slots=True, frozen=True)
class ProcessProbe:
    alive: bool
    pid: str


@dataclass(slots=True)
class WorkerStatus:
    """Per-slot liveness row for status reporting."""

    slot: str
    state: SlotState
    pid: str | None = None
    heartbeat_age_seconds: float | None = None
    heartbeat_stale: bool = False
    current_task: str | None = None


@dataclass(slots=True)
class ResetResult:
    """Outcome of resetting one failure-ledger row."""

    title: str
    branch: str
    backlog_unchecked: bool
    store_updated: bool = False
    branch_deleted: bool = False
    warnings: list[str] = field(default_factory=list)
