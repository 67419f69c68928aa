"""Task executors: what a slot worker runs for a claimed task."""

from __future__ import annotations

import shlex
import subprocess
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from taskfleet.fleet.models import BacklogTask

TIMEOUT_EXIT_CODE = 124


@dataclass(slots=True)
class ExecutionResult:
    ok: bool
    error: str = ""
    notes: str = ""
    exit_code: int | None = None


class TaskExecutor(Protocol):
    """Runs one claimed task; must not raise for ordinary task failures."""

    def __call__(self, task: BacklogTask, branch: str) -> ExecutionResult:
        raise NotImplementedError


class CommandExecutor:
    """Run a shell-style command template per task as an argv list.

    Placeholders ``{title}``, ``{tag}``, ``{description}`` and ``{branch}`` are
    shell-quoted before splitting, so task text never becomes extra arguments.
    """

    def __init__(  # noqa: PLR0913
        self,
        template: str,
        *,
        cwd: Path,
        log_path: Path,
        timeout_seconds: float,
        on_tick: Callable[[], None] | None = None,
        tick_interval_seconds: float = 60.0,
        stop_requested: Callable[[], bool] | None = None,
    ) -> None:
        if not template.strip():
            raise ValueError("Worker command template is empty. Set TASKFLEET_WORKER_COMMAND.")
        self.template = template
        self.cwd = Path(cwd)
        self.log_path = Path(log_path)
        self.timeout_seconds = timeout_seconds
        self.on_tick = on_tick
        self.tick_interval_seconds = tick_interval_seconds
        self.stop_requested = stop_requested

    def render(self, task: BacklogTask, branch: str) -> list[str]:
        try:
            rendered = self.template.format(
                title=shlex.quote(task.display_title),
                tag=shlex.quote(task.tag or ""),
                description=shlex.quote(task.description or ""),
                branch=shlex.quote(branch),
            )
        except KeyError as error:
            raise ValueError(f"Unsupported command template placeholder: {error}") from error
        argv = shlex.split(rendered)
        if not argv:
            raise ValueError("Worker command template rendered empty command.")
        return argv

    def __call__(self, task: BacklogTask, branch: str) -> ExecutionResult:
        argv = self.render(task, branch)
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        with self.log_path.open("a+", encoding="utf-8") as log:
            offset = log.tell()
            log.write(f"--- {task.display_title} ({branch})\n")
            log.flush()
            try:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=str(self.cwd),
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    text=True,
                )
            except OSError as error:
                return ExecutionResult(ok=False, error=f"failed to start {argv[0]}: {error}")
            exit_code, timed_out = self._wait(process)
            log.flush()
            log.seek(offset)
            output = log.read()

        if timed_out:
            stopped = self.stop_requested is not None and self.stop_requested()
            return ExecutionResult(
                ok=False,
                error="interrupted by stop request"
                if stopped
                else f"timed out after {self.timeout_seconds:g}s",
                exit_code=TIMEOUT_EXIT_CODE,
            )
        if exit_code != 0:
            return ExecutionResult(
                ok=False,
                error=_last_line(output) or f"exit code {exit_code}",
                exit_code=exit_code,
            )
        return ExecutionResult(ok=True, notes=_last_line(output), exit_code=0)

    def _wait(self, process: subprocess.Popen[str]) -> tuple[int, bool]:
        started = time.monotonic()
        last_tick = started
        while True:
            returncode = process.poll()
            if returncode is not None:
                return returncode, False
            now = time.monotonic()
            if now - started >= self.timeout_seconds or (
                self.stop_requested is not None and self.stop_requested()
            ):
                _terminate_process(process)
                return TIMEOUT_EXIT_CODE, True
            if self.on_tick is not None and now - last_tick >= self.tick_interval_seconds:
                self.on_tick()
                last_tick = now
            time.sleep(0.1)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _last_line(output: str) -> str:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    if len(lines) <= 1:
        return ""
    return lines[-1]
