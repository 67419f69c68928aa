"""Slot worker: claim one backlog task at a time and run it."""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from taskfleet.errors import InvalidTaskError
from taskfleet.fleet.branches import branch_for
from taskfleet.fleet.context import FleetContext
from taskfleet.fleet.events import append_event
from taskfleet.fleet.executor import ExecutionResult, TaskExecutor
from taskfleet.fleet.liveness import SlotLock, worker_index
from taskfleet.fleet.models import BacklogTask, CurrentTask
from taskfleet.fleet.pause import read_pause_state
from taskfleet.fleet.task_queue import completion_for
from taskfleet.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    idle_polls: int = 0
    paused_polls: int = 0


class FleetWorker:
    """Runs backlog tasks in one ``dev-worker-N`` slot."""

    def __init__(  # noqa: PLR0913
        self,
        context: FleetContext,
        *,
        slot: str,
        executor: TaskExecutor,
        poll_interval_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
        pid: int | None = None,
    ) -> None:
        index = worker_index(slot)
        if index is None:
            raise InvalidTaskError(f"Worker slot must look like dev-worker-N, got {slot!r}.")
        self.context = context
        self.slot = slot
        self.index = index
        self.executor = executor
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else context.settings.liveness.poll_interval_seconds
        )
        self._clock = clock
        self.pid = pid if pid is not None else os.getpid()
        self._stop_requested = False

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def request_stop(self, *, reason: str = "requested") -> None:
        if not self._stop_requested:
            logger.info("Worker %s stopping (%s)", self.slot, reason)
        self._stop_requested = True

    def heartbeat(self, current_task: str | None = None) -> None:
        self.context.tracker.write_heartbeat(self.index)
        if self.context.mirror is not None:
            self.context.mirror.record_heartbeat(
                self.slot,
                slot=self.slot,
                pid=self.pid,
                current_task=current_task,
            )

    def run_once(self) -> WorkerRunSummary:
        """Claim and run at most one task."""

        summary = WorkerRunSummary()
        self.heartbeat()
        if read_pause_state(self.context.store).paused:
            summary.paused_polls = 1
            return summary

        task = self.context.queue.claim_next()
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        if self._execute(task).ok:
            summary.succeeded = 1
        else:
            summary.failed = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until the backlog stays idle, ``max_tasks`` is reached or a stop signal arrives.

        ``max_idle_polls=None`` keeps polling forever.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with SlotLock(self.context.tracker, self.slot, pid=self.pid), self._signal_handlers():
            append_event(self.context.settings.paths.dev_dir, "worker-start", self.slot)
            try:
                while not self._stop_requested:
                    if max_tasks is not None and aggregate.processed >= max_tasks:
                        break
                    summary = self.run_once()
                    aggregate.processed += summary.processed
                    aggregate.succeeded += summary.succeeded
                    aggregate.failed += summary.failed
                    aggregate.idle_polls += summary.idle_polls
                    aggregate.paused_polls += summary.paused_polls

                    if summary.processed == 0:
                        consecutive_idle += 1
                        if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                            break
                        self._sleep_with_stop(self.poll_interval_seconds)
                        continue
                    consecutive_idle = 0
            finally:
                self.context.tracker.clear_heartbeat(self.index)
                if self.context.mirror is not None:
                    self.context.mirror.clear_heartbeat(self.slot)
                append_event(self.context.settings.paths.dev_dir, "worker-stop", self.slot)
        return aggregate

    def _execute(self, task: BacklogTask) -> ExecutionResult:
        settings = self.context.settings
        title = task.display_title
        branch = branch_for(title, settings.git.branch_prefix)
        tracker = self.context.tracker
        tracker.write_current_task(
            self.index,
            CurrentTask(
                title=title,
                status="in_progress",
                branch=branch,
                started=utc_now(),
                worker=self.slot,
            ),
        )
        self.heartbeat(title)
        append_event(settings.paths.dev_dir, "task-start", f"{self.slot} {title}")

        started = self._clock()
        try:
            result = self.executor(task, branch)
        except (OSError, ValueError) as error:
            logger.exception("Executor crashed on %r", title)
            result = ExecutionResult(ok=False, error=str(error) or type(error).__name__)
        minutes = max(0.0, self._clock() - started) / 60

        queue = self.context.queue
        queue.complete(title)
        if result.ok:
            queue.record_completion(
                completion_for(task, branch=branch, minutes=minutes, notes=result.notes),
            )
            if self.context.mirror is not None:
                self.context.mirror.mirror_done(task.title, duration_secs=int(minutes * 60))
            logger.info("Task %r done in %.1f min", title, minutes)
            append_event(settings.paths.dev_dir, "task-done", f"{self.slot} {title}")
        else:
            self.context.ledger.record_failure(title, result.error or "unknown error", branch)
            logger.warning("Task %r failed: %s", title, result.error)
            append_event(settings.paths.dev_dir, "task-failed", f"{self.slot} {title}")

        tracker.write_current_task(
            self.index,
            CurrentTask(
                title=title,
                status="completed" if result.ok else "failed",
                branch=branch,
                worker=self.slot,
                note=result.notes or result.error or None,
            ),
        )
        self.heartbeat()
        return result

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(reason=name)

        try:
            original_sigint = signal.signal(signal.SIGINT, _handler)
            original_sigterm = signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in the main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
