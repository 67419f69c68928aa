"""Read-only status snapshot consumed by the CLI, watch mode and dashboards.

The keys of ``StatusSnapshot.as_dict`` are a published contract; readers of
``status --json`` depend on them.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from taskfleet.fleet.context import FleetContext
from taskfleet.fleet.events import EVENTS_KEY
from taskfleet.fleet.failure_ledger import FAILED_KEY
from taskfleet.fleet.health import (
    HealthInputs,
    count_active_blockers,
    health_label,
    health_score,
    resolved_count,
    self_correction_rate,
)
from taskfleet.fleet.liveness import worker_index
from taskfleet.fleet.mission import (
    DEFAULT_RULES,
    CriterionRule,
    MissionEvidence,
    MissionProgress,
    count_files,
    count_source_files,
    count_watchdog_issues,
    mission_progress,
    parse_mission,
)
from taskfleet.fleet.models import (
    FailureStatus,
    HealthLabel,
    SlotState,
    TaskStatus,
    WorkerStatus,
)
from taskfleet.fleet.pause import PauseState, read_pause_state
from taskfleet.fleet.task_queue import BACKLOG_KEY, COMPLETED_KEY

logger = logging.getLogger(__name__)

BLOCKERS_KEY = "blockers.md"
MISSION_KEY = "mission.md"
ACTIVITY_KEYS = (BACKLOG_KEY, COMPLETED_KEY, FAILED_KEY, EVENTS_KEY)


@dataclass(slots=True)
class StatusSnapshot:
    project: str
    paused: PauseState
    tasks: dict[str, int]
    workers: list[WorkerStatus]
    health_score: int
    health_label: HealthLabel
    self_correction_rate: int
    blockers: int = 0
    mission_progress: list[MissionProgress] = field(default_factory=list)
    last_activity: str | None = None

    def as_dict(self) -> dict[str, object]:
        return {
            "project": self.project,
            "paused": self.paused.paused,
            "tasks": dict(self.tasks),
            "workers": [
                {
                    "name": worker.slot,
                    "status": worker.state.value,
                    "pid": worker.pid,
                    "heartbeatAgeSeconds": worker.heartbeat_age_seconds,
                    "heartbeatStale": worker.heartbeat_stale,
                    "currentTask": worker.current_task,
                }
                for worker in self.workers
            ],
            "healthScore": self.health_score,
            "healthLabel": self.health_label.value,
            "selfCorrectionRate": self.self_correction_rate,
            "blockers": self.blockers,
            "missionProgress": [item.as_dict() for item in self.mission_progress],
            "lastActivity": self.last_activity,
        }


class FleetReader:
    """Counts from the mirror store when it answers, otherwise from the files."""

    def __init__(self, context: FleetContext) -> None:
        self.context = context

    def task_counts(self) -> dict[str, int]:
        mirror = self.context.mirror
        if mirror is not None and mirror.is_ready():
            counts = mirror.task_counts()
            if counts is not None and sum(counts.values()) > 0:
                return counts
            logger.debug("Mirror store returned no task counts; reading files")
        return self.file_task_counts()

    def file_task_counts(self) -> dict[str, int]:
        backlog = self.context.queue.counts()
        failures = self.context.ledger.status_counts()
        return {
            "pending": backlog[TaskStatus.PENDING],
            "claimed": backlog[TaskStatus.CLAIMED],
            "completed": len(self.context.queue.completions()),
            "failed": failures[FailureStatus.PENDING],
        }

    def failure_counts(self) -> dict[FailureStatus, int]:
        mirror = self.context.mirror
        if mirror is not None and mirror.is_ready():
            counts = mirror.failure_status_counts()
            if counts is not None and sum(counts.values()) > 0:
                return counts
        return self.context.ledger.status_counts()

    def worker_statuses(self, slots: Sequence[str]) -> list[WorkerStatus]:
        """Slot liveness; active slots without a heartbeat file use the mirror's last beat."""

        tracker = self.context.tracker
        statuses = tracker.worker_statuses(slots)
        missing = [
            status
            for status in statuses
            if status.state is SlotState.ACTIVE and status.heartbeat_age_seconds is None
        ]
        mirror = self.context.mirror
        if not missing or mirror is None:
            return statuses
        beats = mirror.heartbeats()
        if not beats:
            return statuses
        for status in missing:
            beat_at = beats.get(status.slot)
            if beat_at is None:
                continue
            if beat_at.tzinfo is None:
                beat_at = beat_at.replace(tzinfo=UTC)
            age = tracker.age_since(beat_at.timestamp())
            status.heartbeat_age_seconds = age
            status.heartbeat_stale = age > tracker.stale_after_seconds
        return statuses


def build_snapshot(
    context: FleetContext,
    *,
    rules: Sequence[CriterionRule] = DEFAULT_RULES,
) -> StatusSnapshot:
    """Gather every advisory signal and derive health; never mutates state."""

    settings = context.settings
    reader = FleetReader(context)
    tasks = reader.task_counts()
    failures = reader.failure_counts()
    slots = settings.liveness.worker_slots()
    workers = reader.worker_statuses(slots)

    worker_ids = [index for index in map(worker_index, slots) if index is not None]
    stale_heartbeats = sum(1 for worker in workers if worker.heartbeat_stale)
    long_running = sum(
        1
        for index in worker_ids
        if context.tracker.is_long_running(context.tracker.current_task(index))
    )
    blockers = count_active_blockers(context.store.read(BLOCKERS_KEY))
    score = health_score(
        HealthInputs(
            pending_failures=failures[FailureStatus.PENDING],
            blockers=blockers,
            stale_heartbeats=stale_heartbeats,
            long_running_tasks=long_running,
        ),
    )
    rate = self_correction_rate(failures)
    evidence = MissionEvidence(
        handler_count=count_source_files(settings.mission.handlers_dir),
        agent_count=count_files(settings.mission.agents_dir),
        completed_tasks=tasks["completed"],
        self_correction_rate=rate,
        resolved_failures=resolved_count(failures),
        watchdog_issues=count_watchdog_issues(_read_text(settings.mission.watchdog_log)),
    )
    return StatusSnapshot(
        project=settings.paths.project_name,
        paused=read_pause_state(context.store),
        tasks=tasks,
        workers=workers,
        health_score=score,
        health_label=health_label(score),
        self_correction_rate=rate,
        blockers=blockers,
        mission_progress=mission_progress(
            parse_mission(context.store.read(MISSION_KEY)),
            evidence,
            rules,
        ),
        last_activity=last_activity(context),
    )


def last_activity(context: FleetContext) -> str | None:
    stamps = [context.store.modified_at(key) for key in ACTIVITY_KEYS]
    latest = max((stamp for stamp in stamps if stamp is not None), default=None)
    if latest is None:
        return None
    return datetime.fromtimestamp(latest, tz=UTC).isoformat()


def render_status_lines(snapshot: StatusSnapshot) -> list[str]:
    """Human-readable status block."""

    running = sum(1 for worker in snapshot.workers if worker.state is SlotState.ACTIVE)
    paused = snapshot.paused
    tasks = snapshot.tasks
    lines = [f"Fleet status ({snapshot.project})", ""]
    if paused.paused:
        if paused.corrupt:
            lines.append("  Paused:    yes (sentinel exists)")
        else:
            lines.append(f"  Paused:    yes, since {paused.paused_at} by {paused.paused_by}")
    lines.extend(
        [
            f"  Workers:   {running}/{len(snapshot.workers)} running",
            f"  Backlog:   {tasks['pending']} pending, {tasks['claimed']} claimed",
            f"  Completed: {tasks['completed']} total",
            f"  Failed:    {tasks['failed']} pending",
            f"  Blockers:  {snapshot.blockers or 'None'}",
            f"  Health:    {snapshot.health_score}/100 ({snapshot.health_label.value})",
            f"  Self-correction rate: {snapshot.self_correction_rate}%",
        ],
    )
    for worker in snapshot.workers:
        detail = worker.state.value
        if worker.pid:
            detail += f" pid={worker.pid}"
        if worker.heartbeat_age_seconds is not None:
            detail += f" heartbeat={int(worker.heartbeat_age_seconds)}s"
            if worker.heartbeat_stale:
                detail += " (stale)"
        if worker.current_task:
            detail += f" task={worker.current_task!r}"
        lines.append(f"    {worker.slot:<16} {detail}")
    if snapshot.mission_progress:
        lines.append("")
        lines.append("  Mission progress:")
        for item in snapshot.mission_progress:
            lines.append(
                f"    {item.id}. [{item.status.value}] {item.criterion} ({item.evidence})",
            )
    lines.append("")
    lines.append(f"  Last activity: {snapshot.last_activity or 'never'}")
    return lines


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError:
        return ""
