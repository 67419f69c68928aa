"""Controllers for fleet CLI commands."""

from __future__ import annotations

import json
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from taskfleet.config import CONFIG_RELATIVE_PATH, Settings, render_config_file
from taskfleet.errors import TaskfleetError
from taskfleet.fleet.branches import BranchReconciler, GitClient, branch_for
from taskfleet.fleet.context import FleetContext
from taskfleet.fleet.events import EVENTS_KEY, append_event, parse_events
from taskfleet.fleet.executor import CommandExecutor
from taskfleet.fleet.failure_ledger import FAILED_KEY
from taskfleet.fleet.metrics import compute_metrics, render_metrics_lines
from taskfleet.fleet.models import BacklogTask, FailureStatus, TaskStatus
from taskfleet.fleet.pause import pause, resume
from taskfleet.fleet.records import (
    BACKLOG_HEADER,
    COMPLETED_HEADER,
    FAILURE_HEADER,
    format_backlog_line,
)
from taskfleet.fleet.status import (
    BLOCKERS_KEY,
    MISSION_KEY,
    FleetReader,
    build_snapshot,
    render_status_lines,
)
from taskfleet.fleet.store_adapter import StoreAdapter
from taskfleet.fleet.task_queue import BACKLOG_KEY, COMPLETED_KEY, InsertPosition
from taskfleet.fleet.watchdog import recover_stale_slots
from taskfleet.fleet.worker import FleetWorker

BLOCKERS_TEMPLATE = "# Blockers\n\n## Active\n\nNo active blockers\n\n## Resolved\n\n"
MISSION_TEMPLATE = (
    "# Mission\n\n"
    "Describe what this fleet is building.\n\n"
    "## Success Criteria\n\n"
    "1. Dashboard covers every data source\n"
    "2. Failures are self-corrected without human help\n"
    "3. Watchdog log is free of zombie and deadlock reports\n"
)


@dataclass(slots=True)
class InitCommand:
    """CLI input for project scaffolding."""

    project_dir: Path | None
    project_name: str | None
    main_branch: str
    max_workers: int
    worker_command: str
    force: bool = False


@dataclass(slots=True)
class ProjectCommand:
    """CLI input for commands that only need the project location."""

    project_dir: Path | None


@dataclass(slots=True)
class TaskAddCommand:
    """CLI input for backlog insertion."""

    project_dir: Path | None
    title: str
    tag: str | None
    description: str | None
    blocked_by: tuple[str, ...]
    position: str = "top"


@dataclass(slots=True)
class TaskTitleCommand:
    """CLI input for unclaim/done by title."""

    project_dir: Path | None
    title: str


@dataclass(slots=True)
class TaskFailCommand:
    """CLI input for recording a task failure by hand."""

    project_dir: Path | None
    title: str
    error: str
    branch: str | None


@dataclass(slots=True)
class TaskListCommand:
    project_dir: Path | None
    status: str | None


@dataclass(slots=True)
class FailuresListCommand:
    project_dir: Path | None
    status: str | None


@dataclass(slots=True)
class FailureResetCommand:
    """CLI input for returning a failed task to the backlog."""

    project_dir: Path | None
    term: str
    delete_branch: bool = False


@dataclass(slots=True)
class FailureTermCommand:
    """CLI input for starting a fix on a failed task."""

    project_dir: Path | None
    term: str


@dataclass(slots=True)
class FailureResolveCommand:
    project_dir: Path | None
    term: str
    status: str


@dataclass(slots=True)
class EventsCommand:
    project_dir: Path | None
    limit: int = 20


@dataclass(slots=True)
class StatusCommand:
    project_dir: Path | None
    output_format: str = "text"
    quiet: bool = False


@dataclass(slots=True)
class MetricsCommand:
    project_dir: Path | None
    days: int = 7


@dataclass(slots=True)
class CleanupCommand:
    project_dir: Path | None
    force: bool = False


@dataclass(slots=True)
class PauseCommand:
    project_dir: Path | None
    paused_by: str | None


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for slot worker execution."""

    project_dir: Path | None
    slot: str
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1
    command_template: str | None = None


class FleetCliController:
    """Coordinates backlog, ledger, liveness and reporting CLI operations."""

    def init_project(self, command: InitCommand) -> list[str]:
        root = Path(command.project_dir or os.getcwd()).resolve()
        config_path = root / CONFIG_RELATIVE_PATH
        lines = []
        if config_path.exists() and not command.force:
            lines.append(f"Config exists, kept: {config_path}")
        else:
            config_path.parent.mkdir(parents=True, exist_ok=True)
            config_path.write_text(
                render_config_file(
                    {
                        "TASKFLEET_PROJECT_NAME": command.project_name or root.name,
                        "TASKFLEET_DEV_DIR": ".dev",
                        "TASKFLEET_MAIN_BRANCH": command.main_branch,
                        "TASKFLEET_MAX_WORKERS": str(command.max_workers),
                        "TASKFLEET_WORKER_COMMAND": command.worker_command,
                    },
                ),
                encoding="utf-8",
            )
            lines.append(f"Config written: {config_path}")

        settings = Settings.from_env(project_dir=root)
        scaffold = {
            BACKLOG_KEY: BACKLOG_HEADER,
            FAILED_KEY: FAILURE_HEADER,
            COMPLETED_KEY: COMPLETED_HEADER,
            BLOCKERS_KEY: BLOCKERS_TEMPLATE,
            MISSION_KEY: MISSION_TEMPLATE,
        }
        with _fleet(settings) as context:
            for key, content in scaffold.items():
                if context.store.exists(key):
                    lines.append(f"Exists, kept: {context.store.path(key)}")
                    continue
                context.store.write_atomic(key, content)
                lines.append(f"Created: {context.store.path(key)}")
            if context.mirror is not None:
                context.mirror.init_schema()
                lines.append(f"Store ready: {context.mirror.db_path}")
        return lines

    def add_task(self, command: TaskAddCommand) -> list[str]:
        task = BacklogTask(
            status=TaskStatus.PENDING,
            title=command.title.strip(),
            tag=(command.tag or "").strip() or None,
            description=(command.description or "").strip() or None,
            blocked_by=tuple(item.strip() for item in command.blocked_by if item.strip()),
        )
        with _fleet(Settings.from_env(project_dir=command.project_dir)) as context:
            line = context.queue.insert(task, position=_position(command.position))
        return [f"Task added: {line}"]

    def claim_task(self, command: ProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        with _fleet(settings) as context:
            task = context.queue.claim_next()
        if task is None:
            return ["No claimable task."]
        branch = branch_for(task.display_title, settings.git.branch_prefix)
        return [f"Claimed: {task.display_title}", f"Branch: {branch}"]

    def unclaim_task(self, command: TaskTitleCommand) -> list[str]:
        with _fleet(Settings.from_env(project_dir=command.project_dir)) as context:
            changed = context.queue.unclaim(command.title)
        if not changed:
            raise TaskfleetError(f"No claimed task matching {command.title!r}.")
        return [f"Unclaimed: {command.title}"]

    def complete_task(self, command: TaskTitleCommand) -> list[str]:
        with _fleet(Settings.from_env(project_dir=command.project_dir)) as context:
            changed = context.queue.complete(command.title)
        if not changed:
            raise TaskfleetError(f"No open task matching {command.title!r}.")
        return [f"Done: {command.title}"]

    def fail_task(self, command: TaskFailCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        branch = command.branch or branch_for(command.title, settings.git.branch_prefix)
        with _fleet(settings) as context:
            closed = context.queue.complete(command.title)
            record = context.ledger.record_failure(command.title, command.error, branch)
        lines = [
            f"Failure recorded: {record.title} (attempts={record.attempts} "
            f"status={record.status.value})",
        ]
        if not closed:
            lines.append(
                f"Warning: No open backlog entry matching {command.title!r}; backlog unchanged.",
            )
        return lines

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        status = TaskStatus(command.status) if command.status else None
        with _fleet(Settings.from_env(project_dir=command.project_dir)) as context:
            tasks = context.queue.list_tasks(status)
            counts = context.queue.counts()
        lines = [format_backlog_line(task) for task in tasks]
        lines.append(
            f"pending={counts[TaskStatus.PENDING]} claimed={counts[TaskStatus.CLAIMED]} "
            f"done={counts[TaskStatus.DONE]}",
        )
        return lines

    def list_failures(self, command: FailuresListCommand) -> list[str]:
        status = FailureStatus(command.status) if command.status else None
        with _fleet(Settings.from_env(project_dir=command.project_dir)) as context:
            records = [
                record
                for record in context.ledger.records()
                if status is None or record.status is status
            ]
        if not records:
            return ["No failed tasks."]
        return [
            f"{record.date} [{record.status.value}] attempts={record.attempts} "
            f"{record.title} ({record.branch or '-'}): {record.error}"
            for record in records
        ]

    def reset_failure(self, command: FailureResetCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        with _fleet(settings) as context:
            result = context.ledger.reset(command.term)
            if command.delete_branch and result.branch:
                reconciler = BranchReconciler(
                    GitClient(settings.paths.project_dir),
                    main_branch=settings.git.main_branch,
                    prefix=settings.git.branch_prefix,
                )
                result.branch_deleted = reconciler.delete_branch(result.branch)
                if not result.branch_deleted:
                    result.warnings.append(f"Branch {result.branch} was not deleted.")
            append_event(settings.paths.dev_dir, "task-reset", result.title)

        lines = [f"Reset: {result.title} -> pending"]
        if result.backlog_unchecked:
            lines.append("Backlog entry reopened.")
        if result.store_updated:
            lines.append("Store updated.")
        if result.branch_deleted:
            lines.append(f"Deleted branch: {result.branch}")
        lines.extend(f"Warning: {warning}" for warning in result.warnings)
        return lines

    def fix_failure(self, command: FailureTermCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        with _fleet(settings) as context:
            record = context.ledger.begin_fix(command.term)
        append_event(settings.paths.dev_dir, "failure-fix", record.title)
        return [
            f"Fixing: {record.title} (status={record.status.value} attempts={record.attempts})",
        ]

    def resolve_failure(self, command: FailureResolveCommand) -> list[str]:
        status = FailureStatus(command.status)
        if not status.is_terminal:
            raise ValueError(
                f"Resolution must be one of fixed, blocked, superseded; got {command.status!r}.",
            )
        settings = Settings.from_env(project_dir=command.project_dir)
        with _fleet(settings) as context:
            record = context.ledger.set_status(command.term, status)
            rate = context.ledger.self_correction_rate()
        append_event(settings.paths.dev_dir, "failure-resolve", f"{status.value} {record.title}")
        return [
            f"Resolved: {record.title} -> {record.status.value}",
            f"Self-correction rate: {rate}%",
        ]

    def events(self, command: EventsCommand) -> list[str]:
        with _fleet(Settings.from_env(project_dir=command.project_dir)) as context:
            events = parse_events(context.store.read(EVENTS_KEY), limit=command.limit)
        if not events:
            return ["No events recorded."]
        return [
            f"{event.ts.isoformat()} {event.event} {event.detail}".rstrip() for event in events
        ]

    def status(self, command: StatusCommand) -> list[str]:
        with _fleet(Settings.from_env(project_dir=command.project_dir)) as context:
            snapshot = build_snapshot(context)
        if command.quiet:
            return [str(snapshot.health_score)]
        if command.output_format == "json":
            return [json.dumps(snapshot.as_dict(), indent=2)]
        return render_status_lines(snapshot)

    def metrics(self, command: MetricsCommand) -> list[str]:
        with _fleet(Settings.from_env(project_dir=command.project_dir)) as context:
            metrics = compute_metrics(
                context.queue.completions(),
                FleetReader(context).failure_counts(),
            )
        return render_metrics_lines(metrics, days=command.days)

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        reconciler = BranchReconciler(
            GitClient(settings.paths.project_dir),
            main_branch=settings.git.main_branch,
            prefix=settings.git.branch_prefix,
        )
        with _fleet(settings) as context:
            report = reconciler.reconcile(
                context.queue.list_tasks(),
                context.ledger.records(),
                force=command.force,
            )
        if not report.branches:
            return [f"No {settings.git.branch_prefix}* branches found."]
        lines = [
            f"{branch.status.value:<9} {branch.name} ({branch.reason})"
            for branch in report.branches
        ]
        if report.dry_run:
            lines.append(
                f"Dry run: {len(report.deletable)} deletable, {len(report.active)} active. "
                "Re-run with --force to delete.",
            )
            return lines
        lines.extend(f"Deleted: {name}" for name in report.deleted)
        lines.extend(f"Failed: {name}: {detail}" for name, detail in report.failed.items())
        lines.extend(f"Skipped unsafe name: {name}" for name in report.skipped_invalid)
        if report.pruned:
            lines.append("Worktrees pruned.")
        return lines

    def pause(self, command: PauseCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        with _fleet(settings) as context:
            outcome = pause(context.store, paused_by=command.paused_by)
        state = outcome.state
        if not outcome.changed:
            if state.corrupt:
                return ["Already paused (sentinel exists)."]
            return [f"Already paused since {state.paused_at} by {state.paused_by}."]
        append_event(settings.paths.dev_dir, "pause", state.paused_by or "")
        return [f"Pipeline paused at {state.paused_at} by {state.paused_by}."]

    def resume(self, command: ProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        with _fleet(settings) as context:
            removed = resume(context.store)
        if not removed:
            return ["Pipeline was not paused."]
        append_event(settings.paths.dev_dir, "resume", "")
        return ["Pipeline resumed."]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        template = command.command_template or settings.worker.command_template
        with _fleet(settings) as context:
            executor = CommandExecutor(
                template,
                cwd=settings.paths.project_dir,
                log_path=settings.paths.dev_dir / "logs" / f"{command.slot}.log",
                timeout_seconds=settings.worker.task_timeout_minutes * 60,
                tick_interval_seconds=settings.liveness.heartbeat_interval_seconds,
            )
            worker = FleetWorker(context, slot=command.slot, executor=executor)
            executor.on_tick = worker.heartbeat
            executor.stop_requested = lambda: worker.stop_requested
            summary = (
                worker.run_once()
                if command.once
                else worker.run_loop(
                    max_tasks=command.max_tasks,
                    max_idle_polls=command.max_idle_polls,
                )
            )

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} idle_polls={summary.idle_polls} "
            f"paused_polls={summary.paused_polls}",
        ]

    def watchdog(self, command: ProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        with _fleet(settings) as context:
            report = recover_stale_slots(
                context.tracker,
                context.queue,
                settings.liveness.worker_slots(),
            )
        return report.lines()

    def store_init(self, command: ProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        with _fleet(settings) as context:
            mirror = _require_mirror(context)
            mirror.init_schema()
        return [f"Store migrated: {settings.paths.db_path}"]

    def store_sync(self, command: ProjectCommand) -> list[str]:
        settings = Settings.from_env(project_dir=command.project_dir)
        with _fleet(settings) as context:
            mirror = _require_mirror(context)
            mirror.init_schema()
            written = mirror.sync_from_files(
                context.queue.list_tasks(),
                context.ledger.records(),
            )
            counts = mirror.task_counts() or {}
        return [
            f"Synced {written} rows into {settings.paths.db_path}",
            " ".join(f"{status}={count}" for status, count in counts.items()),
        ]


def _require_mirror(context: FleetContext) -> StoreAdapter:
    if context.mirror is None:
        raise TaskfleetError("Relational store is disabled (TASKFLEET_USE_STORE=false).")
    return context.mirror


def _position(value: str) -> InsertPosition:
    if value == "bottom":
        return "bottom"
    if value == "top":
        return "top"
    raise ValueError(f"Unsupported insert position: {value!r}")


@contextmanager
def _fleet(settings: Settings) -> Iterator[FleetContext]:
    context = FleetContext.from_settings(settings)
    try:
        yield context
    finally:
        context.close()
