"""CLI entrypoint for taskfleet."""

import logging
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import TypeVar

import rich_click as click

from taskfleet import __version__
from taskfleet.errors import TaskfleetError
from taskfleet.fleet.controllers import (
    CleanupCommand,
    EventsCommand,
    FailureResetCommand,
    FailureResolveCommand,
    FailuresListCommand,
    FailureTermCommand,
    FleetCliController,
    InitCommand,
    MetricsCommand,
    PauseCommand,
    ProjectCommand,
    StatusCommand,
    TaskAddCommand,
    TaskFailCommand,
    TaskListCommand,
    TaskTitleCommand,
    WorkerCommand,
)
from taskfleet.fleet.models import TERMINAL_FAILURE_STATUSES, FailureStatus, TaskStatus

click.rich_click.USE_MARKDOWN = True
CommandT = TypeVar("CommandT")
FLEET_CONTROLLER = FleetCliController()


@click.group()
@click.version_option(version=__version__, prog_name="taskfleet")
@click.option(
    "--project-dir",
    type=click.Path(path_type=Path, file_okay=False),
    envvar="TASKFLEET_PROJECT_DIR",
    default=None,
    help="Project root holding `.dev/taskfleet.config.sh`. Defaults to the current directory.",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug details to stderr.")
@click.pass_context
def taskfleet(ctx: click.Context, project_dir: Path | None, verbose: bool) -> None:
    """Coordinate a fleet of autonomous coding workers over shared markdown state.

    Workers claim tasks from `backlog.md`, failures land in `failed-tasks.md`,
    and `status` derives a health score from both.
    """

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.obj = project_dir


@taskfleet.command("init")
@click.option("--name", "project_name", default=None, help="Project name; defaults to dir name.")
@click.option("--main-branch", default="main", show_default=True, help="Integration branch.")
@click.option(
    "--max-workers",
    type=click.IntRange(min=1, max=32),
    default=2,
    show_default=True,
    help="Number of dev-worker-N slots.",
)
@click.option(
    "--worker-command",
    default="",
    help="Command template run per task. Supports {title}, {tag}, {description}, {branch}.",
)
@click.option("--force", is_flag=True, help="Overwrite an existing config file.")
@click.pass_obj
def init(  # noqa: PLR0913
    project_dir: Path | None,
    project_name: str | None,
    main_branch: str,
    max_workers: int,
    worker_command: str,
    force: bool,
) -> None:
    """Scaffold the dev dir: config, backlog, ledgers, blockers and mission files."""

    _run(
        FLEET_CONTROLLER.init_project,
        InitCommand(
            project_dir=project_dir,
            project_name=project_name,
            main_branch=main_branch,
            max_workers=max_workers,
            worker_command=worker_command,
            force=force,
        ),
    )


@taskfleet.group()
def task() -> None:
    """Backlog commands."""


@task.command("add")
@click.argument("title")
@click.option("--tag", default=None, help="Short category, rendered as `[TAG]`.")
@click.option("--description", default=None, help="Text after the title separator.")
@click.option(
    "--blocked-by",
    "blocked_by",
    multiple=True,
    help="Title of a task that must be done first. Can be repeated.",
)
@click.option(
    "--position",
    type=click.Choice(["top", "bottom"], case_sensitive=False),
    default="top",
    show_default=True,
    help="Insert before the first open task (top) or the first done task (bottom).",
)
@click.pass_obj
def task_add(  # noqa: PLR0913
    project_dir: Path | None,
    title: str,
    tag: str | None,
    description: str | None,
    blocked_by: tuple[str, ...],
    position: str,
) -> None:
    """Add a pending task to the backlog."""

    _run(
        FLEET_CONTROLLER.add_task,
        TaskAddCommand(
            project_dir=project_dir,
            title=title,
            tag=tag,
            description=description,
            blocked_by=blocked_by,
            position=position.lower(),
        ),
    )


@task.command("claim")
@click.pass_obj
def task_claim(project_dir: Path | None) -> None:
    """Claim the first pending task whose blockers are done."""

    _run(FLEET_CONTROLLER.claim_task, ProjectCommand(project_dir=project_dir))


@task.command("unclaim")
@click.argument("title")
@click.pass_obj
def task_unclaim(project_dir: Path | None, title: str) -> None:
    """Return a claimed task to pending."""

    _run(FLEET_CONTROLLER.unclaim_task, TaskTitleCommand(project_dir=project_dir, title=title))


@task.command("done")
@click.argument("title")
@click.pass_obj
def task_done(project_dir: Path | None, title: str) -> None:
    """Mark an open task done."""

    _run(FLEET_CONTROLLER.complete_task, TaskTitleCommand(project_dir=project_dir, title=title))


@task.command("fail")
@click.argument("title")
@click.option("--error", required=True, help="One-line failure summary.")
@click.option("--branch", default=None, help="Work branch; derived from the title if omitted.")
@click.pass_obj
def task_fail(project_dir: Path | None, title: str, error: str, branch: str | None) -> None:
    """Close a task as failed and record it in the failure ledger."""

    _run(
        FLEET_CONTROLLER.fail_task,
        TaskFailCommand(project_dir=project_dir, title=title, error=error, branch=branch),
    )


@task.command("list")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.pass_obj
def task_list(project_dir: Path | None, status: str | None) -> None:
    """List backlog tasks."""

    _run(
        FLEET_CONTROLLER.list_tasks,
        TaskListCommand(project_dir=project_dir, status=status.lower() if status else None),
    )


@taskfleet.group()
def failures() -> None:
    """Failure ledger commands."""


@failures.command("list")
@click.option(
    "--status",
    type=click.Choice([status.value for status in FailureStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.pass_obj
def failures_list(project_dir: Path | None, status: str | None) -> None:
    """List failure-ledger rows."""

    _run(
        FLEET_CONTROLLER.list_failures,
        FailuresListCommand(project_dir=project_dir, status=status.lower() if status else None),
    )


@failures.command("reset")
@click.argument("term")
@click.option(
    "--delete-branch",
    is_flag=True,
    help="Also delete the failed task's work branch.",
)
@click.pass_obj
def failures_reset(project_dir: Path | None, term: str, delete_branch: bool) -> None:
    """Reset the one failed task whose title contains TERM back to pending."""

    _run(
        FLEET_CONTROLLER.reset_failure,
        FailureResetCommand(project_dir=project_dir, term=term, delete_branch=delete_branch),
    )


@failures.command("fix")
@click.argument("term")
@click.pass_obj
def failures_fix(project_dir: Path | None, term: str) -> None:
    """Start a fix attempt on the one failed task whose title contains TERM."""

    _run(FLEET_CONTROLLER.fix_failure, FailureTermCommand(project_dir=project_dir, term=term))


@failures.command("resolve")
@click.argument("term")
@click.option(
    "--status",
    type=click.Choice(
        [status.value for status in FailureStatus if status in TERMINAL_FAILURE_STATUSES],
        case_sensitive=False,
    ),
    required=True,
    help="How the failure ended.",
)
@click.pass_obj
def failures_resolve(project_dir: Path | None, term: str, status: str) -> None:
    """Close the one failed task whose title contains TERM."""

    _run(
        FLEET_CONTROLLER.resolve_failure,
        FailureResolveCommand(project_dir=project_dir, term=term, status=status.lower()),
    )


@taskfleet.command("status")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Output format.",
)
@click.option("--json", "as_json", is_flag=True, help="Shortcut for `--format json`.")
@click.option("-q", "--quiet", is_flag=True, help="Print only the health score.")
@click.pass_obj
def status(project_dir: Path | None, output_format: str, as_json: bool, quiet: bool) -> None:
    """Show fleet status, health score and mission progress."""

    _run(
        FLEET_CONTROLLER.status,
        StatusCommand(
            project_dir=project_dir,
            output_format="json" if as_json else output_format.lower(),
            quiet=quiet,
        ),
    )


@taskfleet.command("watch")
@click.option(
    "--interval",
    type=click.FloatRange(min=0.5),
    default=5.0,
    show_default=True,
    help="Seconds between refreshes.",
)
@click.option(
    "--count",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many refreshes (default: until interrupted).",
)
@click.pass_obj
def watch(project_dir: Path | None, interval: float, count: int | None) -> None:
    """Re-render fleet status until interrupted."""

    refreshes = 0
    try:
        while count is None or refreshes < count:
            if refreshes:
                time.sleep(interval)
                click.clear()
            try:
                _emit_lines(FLEET_CONTROLLER.status(StatusCommand(project_dir=project_dir)))
            except (TaskfleetError, ValueError) as error:
                click.echo(f"Status unavailable: {error}", err=True)
            refreshes += 1
    except KeyboardInterrupt:
        click.echo("Stopped.")


@taskfleet.command("metrics")
@click.option(
    "--days",
    type=click.IntRange(min=1, max=90),
    default=7,
    show_default=True,
    help="How many recent active days to list.",
)
@click.pass_obj
def metrics(project_dir: Path | None, days: int) -> None:
    """Show throughput, durations and fix success rate."""

    _run(FLEET_CONTROLLER.metrics, MetricsCommand(project_dir=project_dir, days=days))


@taskfleet.command("events")
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=20,
    show_default=True,
    help="How many recent events to show.",
)
@click.pass_obj
def events(project_dir: Path | None, limit: int) -> None:
    """Show the most recent fleet events."""

    _run(FLEET_CONTROLLER.events, EventsCommand(project_dir=project_dir, limit=limit))


@taskfleet.command("cleanup")
@click.option("--force", is_flag=True, help="Delete merged and orphaned branches.")
@click.pass_obj
def cleanup(project_dir: Path | None, force: bool) -> None:
    """Classify work branches; delete merged and orphaned ones with --force."""

    _run(FLEET_CONTROLLER.cleanup, CleanupCommand(project_dir=project_dir, force=force))


@taskfleet.command("pause")
@click.option("--by", "paused_by", default=None, help="Who paused; defaults to current user.")
@click.pass_obj
def pause(project_dir: Path | None, paused_by: str | None) -> None:
    """Stop workers from claiming new tasks."""

    _run(FLEET_CONTROLLER.pause, PauseCommand(project_dir=project_dir, paused_by=paused_by))


@taskfleet.command("resume")
@click.pass_obj
def resume(project_dir: Path | None) -> None:
    """Let workers claim tasks again."""

    _run(FLEET_CONTROLLER.resume, ProjectCommand(project_dir=project_dir))


@taskfleet.group()
def worker() -> None:
    """Slot worker commands."""


@worker.command("run")
@click.option("--slot", default="dev-worker-1", show_default=True, help="dev-worker-N slot.")
@click.option("--once", is_flag=True, help="Claim and run at most one task.")
@click.option("--max-tasks", type=click.IntRange(min=1), default=None, help="Stop after N tasks.")
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=0),
    default=1,
    show_default=True,
    help="Exit after N consecutive empty polls; 0 keeps polling forever.",
)
@click.option(
    "--command",
    "command_template",
    default=None,
    help="Override TASKFLEET_WORKER_COMMAND for this run.",
)
@click.pass_obj
def worker_run(  # noqa: PLR0913
    project_dir: Path | None,
    slot: str,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    command_template: str | None,
) -> None:
    """Run backlog tasks in one worker slot."""

    _run(
        FLEET_CONTROLLER.run_worker,
        WorkerCommand(
            project_dir=project_dir,
            slot=slot,
            once=once,
            max_tasks=max_tasks,
            max_idle_polls=max_idle_polls or None,
            command_template=command_template,
        ),
    )


@taskfleet.command("watchdog")
@click.pass_obj
def watchdog(project_dir: Path | None) -> None:
    """Clear stale slot locks and requeue their in-progress tasks."""

    _run(FLEET_CONTROLLER.watchdog, ProjectCommand(project_dir=project_dir))


@taskfleet.group()
def store() -> None:
    """Relational mirror commands."""


@store.command("init")
@click.pass_obj
def store_init(project_dir: Path | None) -> None:
    """Create or migrate the SQLite mirror."""

    _run(FLEET_CONTROLLER.store_init, ProjectCommand(project_dir=project_dir))


@store.command("sync")
@click.pass_obj
def store_sync(project_dir: Path | None) -> None:
    """Import backlog and failure ledger into the SQLite mirror."""

    _run(FLEET_CONTROLLER.store_sync, ProjectCommand(project_dir=project_dir))


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    with _fatal_errors():
        lines = handler(command)
    _emit_lines(lines)


@contextmanager
def _fatal_errors() -> Iterator[None]:
    try:
        yield
    except (TaskfleetError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskfleet()
