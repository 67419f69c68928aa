"""Throughput and self-correction figures from the completion log and failure ledger."""

from __future__ import annotations

import re
from collections import Counter
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field

from taskfleet.fleet.health import resolved_count, self_correction_rate
from taskfleet.fleet.models import CompletionRecord, FailureStatus
from taskfleet.fleet.records import format_duration, parse_duration_minutes

_TAG_RE = re.compile(r"^\[([^\]]+)\]")
UNTAGGED = "untagged"


@dataclass(slots=True)
class FleetMetrics:
    completed: int = 0
    timed: int = 0
    average_minutes: float | None = None
    by_tag: dict[str, int] = field(default_factory=dict)
    by_day: dict[str, int] = field(default_factory=dict)
    failures: dict[FailureStatus, int] = field(default_factory=dict)
    resolved: int = 0
    fix_rate: int = 0


def compute_metrics(
    completions: Sequence[CompletionRecord],
    failure_counts: Mapping[FailureStatus, int],
) -> FleetMetrics:
    durations = [
        minutes
        for minutes in (parse_duration_minutes(record.duration) for record in completions)
        if minutes is not None
    ]
    tags = Counter(_tag_of(record.task) for record in completions)
    days = Counter(record.date for record in completions if record.date)
    return FleetMetrics(
        completed=len(completions),
        timed=len(durations),
        average_minutes=sum(durations) / len(durations) if durations else None,
        by_tag=dict(tags.most_common()),
        by_day=dict(sorted(days.items())),
        failures={status: failure_counts.get(status, 0) for status in FailureStatus},
        resolved=resolved_count(failure_counts),
        fix_rate=self_correction_rate(failure_counts),
    )


def render_metrics_lines(metrics: FleetMetrics, *, days: int = 7) -> list[str]:
    lines = [f"Completed tasks: {metrics.completed}"]
    if metrics.average_minutes is None:
        lines.append("Average duration: n/a")
    else:
        lines.append(
            f"Average duration: {format_duration(metrics.average_minutes)}"
            f" (over {metrics.timed} timed tasks)",
        )
    if metrics.by_tag:
        lines.append("By tag:")
        lines.extend(f"  {tag}: {count}" for tag, count in metrics.by_tag.items())
    recent = list(metrics.by_day.items())[-days:]
    if recent:
        lines.append(f"Last {len(recent)} active days:")
        lines.extend(f"  {day}: {count}" for day, count in recent)
    lines.append("Failures:")
    lines.extend(
        f"  {status.value}: {count}" for status, count in metrics.failures.items() if count
    )
    if not any(metrics.failures.values()):
        lines.append("  none")
    if metrics.resolved:
        lines.append(f"Fix success rate: {metrics.fix_rate}% ({metrics.resolved} resolved)")
    else:
        lines.append("Fix success rate: n/a (nothing resolved yet)")
    return lines


def _tag_of(title: str) -> str:
    match = _TAG_RE.match(title.strip())
    return match.group(1) if match else UNTAGGED
