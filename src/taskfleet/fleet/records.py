"""Parse/format pairs for the line-oriented dev-dir files.

The textual formats stay compatible with hand editing; business logic only
ever sees the typed records produced here.
"""

from __future__ import annotations

import re

from taskfleet.errors import InvalidTaskError
from taskfleet.fleet.models import (
    BacklogTask,
    CompletionRecord,
    CurrentTask,
    FailureRecord,
    FailureStatus,
    TaskStatus,
)
from taskfleet.storage.common import from_iso, to_iso

TITLE_SEPARATOR = " — "

BACKLOG_HEADER = (
    "# Backlog\n\n<!-- - [ ] [TAG] Title — description | blockedBy: Other title -->\n\n"
)
FAILURE_HEADER = (
    "# Failed Tasks\n\n"
    "| Date | Title | Branch | Error | Attempts | Status |\n"
    "|------|-------|--------|-------|----------|--------|\n"
)
COMPLETED_HEADER = (
    "# Completed Tasks\n\n"
    "| Date | Task | Branch | Duration | Notes |\n"
    "|------|------|--------|----------|-------|\n"
)

_CHECKBOX_RE = re.compile(r"^- \[([ >x])\] ")
_BLOCKED_BY_RE = re.compile(r"\s*\|\s*blockedBy:\s*(.+)$", re.IGNORECASE)
_TAG_RE = re.compile(r"^\[([^\]]+)\]\s*")
_SEPARATOR_ROW_RE = re.compile(r"^\|[\s:|-]+$")
_DURATION_RE = re.compile(r"^(?:(\d+)h)?\s*(?:(\d+)m)?$")
_MARKER_STATUSES = {status.marker: status for status in TaskStatus}


def parse_backlog_line(line: str) -> BacklogTask | None:
    """Parse one checkbox line; None for headers, comments and blank lines."""

    match = _CHECKBOX_RE.match(line)
    if match is None:
        return None
    status = _MARKER_STATUSES[match.group(1)]
    text = line[match.end() :].rstrip("\n")

    blocked_by: tuple[str, ...] = ()
    meta = _BLOCKED_BY_RE.search(text)
    if meta is not None:
        blocked_by = tuple(part.strip() for part in meta.group(1).split(",") if part.strip())
        text = text[: meta.start()]

    tag = None
    tag_match = _TAG_RE.match(text)
    if tag_match is not None:
        tag = tag_match.group(1)
        text = text[tag_match.end() :]

    title, _, description = text.partition(TITLE_SEPARATOR)
    return BacklogTask(
        status=status,
        title=title.strip(),
        tag=tag,
        description=description.strip() or None,
        blocked_by=blocked_by,
    )


def format_backlog_line(task: BacklogTask) -> str:
    """Serialize a task to its checkbox line, rejecting values that would corrupt the file."""

    validate_task_fields(task)
    parts = [f"- [{task.status.marker}] "]
    if task.tag:
        parts.append(f"[{task.tag}] ")
    parts.append(task.title.strip())
    if task.description:
        parts.append(f"{TITLE_SEPARATOR}{task.description.strip()}")
    if task.blocked_by:
        parts.append(f" | blockedBy: {', '.join(task.blocked_by)}")
    return "".join(parts)


def validate_task_fields(task: BacklogTask) -> None:
    fields = {"title": task.title, "description": task.description or "", "tag": task.tag or ""}
    for name, value in fields.items():
        if "\n" in value or "\r" in value:
            raise InvalidTaskError(f"Task {name} must not contain line breaks.")
    if not task.title.strip():
        raise InvalidTaskError("Task title must not be empty.")
    if task.tag and not re.fullmatch(r"[A-Za-z0-9_-]+", task.tag):
        raise InvalidTaskError(f"Invalid task tag: {task.tag!r}.")
    if TITLE_SEPARATOR.strip() in task.title or "|" in task.title:
        raise InvalidTaskError("Task title must not contain '—' or '|'.")


def set_line_status(line: str, status: TaskStatus) -> str:
    """Flip the checkbox marker of a raw line, keeping the rest byte-for-byte."""

    if _CHECKBOX_RE.match(line) is None:
        raise ValueError(f"Not a backlog entry: {line!r}")
    return f"- [{status.marker}] {line[6:]}"


def _table_cells(line: str) -> list[str] | None:
    stripped = line.strip()
    if not stripped.startswith("|") or "| Date |" in stripped or "------" in stripped:
        return None
    if _SEPARATOR_ROW_RE.match(stripped):
        return None
    return [cell.strip() for cell in stripped.strip("|").split("|")]


def parse_failure_row(line: str) -> FailureRecord | None:
    """Parse one ledger row; header, separator and malformed rows yield None."""

    cells = _table_cells(line)
    if cells is None or len(cells) < 6:
        return None
    date, title, branch, error = cells[0], cells[1], cells[2], " | ".join(cells[3:-2])
    attempts_raw, status_raw = cells[-2], cells[-1]
    try:
        status = FailureStatus(status_raw)
    except ValueError:
        return None
    attempts = int(attempts_raw) if attempts_raw.isdigit() else 0
    return FailureRecord(
        date=date,
        title=title,
        branch=branch,
        error=error,
        attempts=attempts,
        status=status,
    )


def format_failure_row(record: FailureRecord) -> str:
    return (
        f"| {sanitize_cell(record.date)} | {sanitize_cell(record.title)} "
        f"| {sanitize_cell(record.branch)} | {sanitize_cell(record.error)} "
        f"| {max(record.attempts, 0)} | {record.status.value} |"
    )


def sanitize_cell(value: str, *, max_chars: int = 200) -> str:
    """Make free text safe for one table cell: no pipes, no line breaks."""

    flattened = " ".join(value.replace("|", "/").split())
    if len(flattened) > max_chars:
        return flattened[: max_chars - 3].rstrip() + "..."
    return flattened


def parse_completion_row(line: str) -> CompletionRecord | None:
    cells = _table_cells(line)
    if cells is None or len(cells) < 4:
        return None
    if len(cells) >= 5:
        return CompletionRecord(
            date=cells[0],
            task=cells[1],
            branch=cells[2],
            duration=cells[3],
            notes=" | ".join(cells[4:]),
        )
    return CompletionRecord(date=cells[0], task=cells[1], branch=cells[2], notes=cells[3])


def format_completion_row(record: CompletionRecord) -> str:
    return (
        f"| {sanitize_cell(record.date)} | {sanitize_cell(record.task)} "
        f"| {sanitize_cell(record.branch)} | {sanitize_cell(record.duration)} "
        f"| {sanitize_cell(record.notes)} |"
    )


def parse_duration_minutes(value: str) -> int | None:
    """``"23m"``, ``"1h"`` and ``"1h 12m"`` to minutes; anything else is None."""

    stripped = value.strip()
    match = _DURATION_RE.match(stripped)
    if not stripped or match is None or not any(match.groups()):
        return None
    hours, minutes = match.groups()
    return int(hours or 0) * 60 + int(minutes or 0)


def format_duration(minutes: float) -> str:
    if minutes < 1:
        return "< 1m"
    hours, remainder = divmod(round(minutes), 60)
    return f"{hours}h {remainder}m" if hours else f"{remainder}m"


def parse_current_task(text: str) -> CurrentTask | None:
    """Parse a ``current-task-N.md`` file; None when it carries no title."""

    title = _first_group(r"^## (.+)$", text)
    if title is None:
        return None
    started_raw = _first_group(r"\*\*Started:\*\* (.+)", text)
    started = None
    if started_raw:
        try:
            started = from_iso(started_raw.strip())
        except ValueError:
            started = None
    return CurrentTask(
        title=title.strip(),
        status=_first_group(r"\*\*Status:\*\* (\w[\w-]*)", text) or "unknown",
        branch=_first_group(r"\*\*Branch:\*\* (.+)", text),
        started=started,
        worker=_first_group(r"\*\*Worker:\*\* (.+)", text),
        note=_first_group(r"\*\*Note:\*\* (.+)", text),
    )


def format_current_task(task: CurrentTask) -> str:
    lines = [f"## {task.title}", "", f"**Status:** {task.status}"]
    if task.branch:
        lines.append(f"**Branch:** {task.branch}")
    if task.started:
        lines.append(f"**Started:** {to_iso(task.started)}")
    if task.worker:
        lines.append(f"**Worker:** {task.worker}")
    if task.note:
        lines.append(f"**Note:** {sanitize_cell(task.note, max_chars=500)}")
    return "\n".join(lines) + "\n"


def _first_group(pattern: str, text: str) -> str | None:
    match = re.search(pattern, text, re.MULTILINE)
    return match.group(1).strip() if match else None


def strip_tag(text: str) -> str:
    """Drop a leading ``[TAG] `` prefix."""

    return _TAG_RE.sub("", text.strip(), count=1)
