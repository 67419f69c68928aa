"""Runtime configuration for the worker fleet.

Settings come from the project's key/value config file
(``.dev/taskfleet.config.sh``, ``export KEY="value"`` lines) with any
``TASKFLEET_*`` environment variable taking precedence over the file.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from taskfleet.errors import ConfigMissingError

CONFIG_RELATIVE_PATH = Path(".dev") / "taskfleet.config.sh"
ENV_PREFIX = "TASKFLEET_"

_EXPORT_LINE_RE = re.compile(r'^export\s+(\w+)=(?:"(.*)"|(\S+))')
_INTERPOLATION_RE = re.compile(r"\$\{?(\w+)\}?")
_ESCAPE_RE = re.compile(r"\\(.)")
_BRANCH_NAME_RE = re.compile(r"^[a-zA-Z0-9._/-]+$")

FIXED_SLOTS = ("task-fixer", "project-driver", "watchdog", "health-check")


@dataclass(slots=True)
class PathSettings:
    """Where shared state lives."""

    project_name: str = "project"
    project_dir: Path = Path(".")
    dev_dir: Path = Path(".dev")
    lock_prefix: str = "/tmp/taskfleet-project"
    db_path: Path = Path(".dev/taskfleet.db")


@dataclass(slots=True)
class QueueSettings:
    """Backlog mutex budget."""

    lock_max_attempts: int = 50
    lock_interval_seconds: float = 0.1
    lock_stale_after_seconds: float = 30.0


@dataclass(slots=True)
class LivenessSettings:
    """Worker slots and staleness windows."""

    max_workers: int = 2
    max_fixers: int = 1
    stale_minutes: int = 45
    long_running_hours: int = 24
    heartbeat_interval_seconds: float = 60.0
    poll_interval_seconds: float = 30.0

    def worker_slots(self) -> tuple[str, ...]:
        workers = tuple(f"dev-worker-{index}" for index in range(1, self.max_workers + 1))
        fixers = tuple(
            f"task-fixer-{index}" for index in range(2, self.max_fixers + 1)
        )
        return workers + FIXED_SLOTS[:1] + fixers + FIXED_SLOTS[1:]


@dataclass(slots=True)
class GitSettings:
    """Branch naming used by workers and the reconciler."""

    main_branch: str = "main"
    branch_prefix: str = "dev/"


@dataclass(slots=True)
class MissionSettings:
    """Evidence locations for mission-criteria evaluation."""

    handlers_dir: Path = Path("packages/dashboard/src/handlers")
    agents_dir: Path = Path("scripts/agents")
    watchdog_log: Path = Path("scripts/watchdog.log")


@dataclass(slots=True)
class WorkerSettings:
    """Task execution settings for slot workers."""

    command_template: str = ""
    task_timeout_minutes: int = 45
    use_store: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    paths: PathSettings = field(default_factory=PathSettings)
    queue: QueueSettings = field(default_factory=QueueSettings)
    liveness: LivenessSettings = field(default_factory=LivenessSettings)
    git: GitSettings = field(default_factory=GitSettings)
    mission: MissionSettings = field(default_factory=MissionSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)

    @classmethod
    def from_env(cls, project_dir: Path | None = None) -> Settings:
        """Load settings from the project config file, overridden by environment."""

        root = Path(
            project_dir or os.getenv(f"{ENV_PREFIX}PROJECT_DIR") or Path.cwd(),
        ).resolve()
        config_path = root / CONFIG_RELATIVE_PATH
        if not config_path.is_file():
            raise ConfigMissingError(
                f"taskfleet config not found at {config_path}. Run 'taskfleet init' first.",
            )
        values = load_config_file(config_path)
        values.update(
            {key: value for key, value in os.environ.items() if key.startswith(ENV_PREFIX)},
        )
        return cls.from_mapping(values, project_dir=root)

    @classmethod
    def from_mapping(cls, values: Mapping[str, str], *, project_dir: Path) -> Settings:
        """Build settings from already-merged ``TASKFLEET_*`` key/value pairs."""

        source = _Source(values)
        project_name = source.text("PROJECT_NAME", project_dir.name or "project")
        dev_dir = _resolve(project_dir, source.text("DEV_DIR", ".dev"))
        settings = cls(
            paths=PathSettings(
                project_name=project_name,
                project_dir=project_dir,
                dev_dir=dev_dir,
                lock_prefix=source.text("LOCK_PREFIX", f"/tmp/taskfleet-{project_name}"),
                db_path=_resolve(dev_dir, source.text("DB_PATH", "taskfleet.db")),
            ),
            queue=QueueSettings(
                lock_max_attempts=source.integer("LOCK_MAX_ATTEMPTS", 50),
                lock_interval_seconds=source.integer("LOCK_INTERVAL_MS", 100) / 1000.0,
                lock_stale_after_seconds=source.number("LOCK_STALE_SECONDS", 30.0),
            ),
            liveness=LivenessSettings(
                max_workers=source.integer("MAX_WORKERS", 2),
                max_fixers=source.integer("MAX_FIXERS", 1),
                stale_minutes=source.integer("STALE_MINUTES", 45),
                long_running_hours=source.integer("LONG_RUNNING_HOURS", 24),
                heartbeat_interval_seconds=source.number("HEARTBEAT_INTERVAL_SECONDS", 60.0),
                poll_interval_seconds=source.number("POLL_INTERVAL_SECONDS", 30.0),
            ),
            git=GitSettings(
                main_branch=source.text("MAIN_BRANCH", "main"),
                branch_prefix=source.text("BRANCH_PREFIX", "dev/"),
            ),
            mission=MissionSettings(
                handlers_dir=_resolve(
                    project_dir,
                    source.text("HANDLERS_DIR", "packages/dashboard/src/handlers"),
                ),
                agents_dir=_resolve(project_dir, source.text("AGENTS_DIR", "scripts/agents")),
                watchdog_log=_resolve(
                    dev_dir,
                    source.text("WATCHDOG_LOG", "scripts/watchdog.log"),
                ),
            ),
            worker=WorkerSettings(
                command_template=source.text("WORKER_COMMAND", ""),
                task_timeout_minutes=source.integer("TASK_TIMEOUT_MINUTES", 45),
                use_store=source.boolean("USE_STORE", default=True),
            ),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error on values the fleet cannot run with."""

        if self.queue.lock_max_attempts < 1:
            raise ValueError("TASKFLEET_LOCK_MAX_ATTEMPTS must be >= 1.")
        if self.queue.lock_interval_seconds < 0:
            raise ValueError("TASKFLEET_LOCK_INTERVAL_MS must be >= 0.")
        if self.queue.lock_stale_after_seconds <= 0:
            raise ValueError("TASKFLEET_LOCK_STALE_SECONDS must be > 0.")
        if self.liveness.max_workers < 1:
            raise ValueError("TASKFLEET_MAX_WORKERS must be >= 1.")
        if self.liveness.max_fixers < 1:
            raise ValueError("TASKFLEET_MAX_FIXERS must be >= 1.")
        if self.liveness.stale_minutes <= 0:
            raise ValueError("TASKFLEET_STALE_MINUTES must be > 0.")
        if not _BRANCH_NAME_RE.match(self.git.main_branch):
            raise ValueError(
                f"Invalid TASKFLEET_MAIN_BRANCH: {self.git.main_branch!r}.",
            )
        if not self.git.branch_prefix or not _BRANCH_NAME_RE.match(self.git.branch_prefix):
            raise ValueError(
                f"Invalid TASKFLEET_BRANCH_PREFIX: {self.git.branch_prefix!r}.",
            )


def load_config_file(path: Path) -> dict[str, str]:
    """Parse ``export KEY=value`` lines, expanding ``$VAR``/``${VAR}`` references.

    References resolve against keys defined earlier in the file, then the
    process environment, then the empty string.
    """

    values: dict[str, str] = {}
    for line in path.read_text(encoding="utf-8").splitlines():
        match = _EXPORT_LINE_RE.match(line.strip())
        if match is None:
            continue
        key = match.group(1)
        quoted = match.group(2)
        raw = _ESCAPE_RE.sub(r"\1", quoted) if quoted is not None else match.group(3)
        values[key] = _INTERPOLATION_RE.sub(
            lambda ref: values.get(ref.group(1)) or os.getenv(ref.group(1), ""),
            raw,
        )
    return values


def render_config_file(values: Mapping[str, str]) -> str:
    """Serialize key/value pairs in the format ``load_config_file`` reads."""

    lines = ["# taskfleet configuration", ""]
    for key, value in values.items():
        escaped = value.replace("\\", "\\\\").replace('"', '\\"')
        lines.append(f'export {key}="{escaped}"')
    return "\n".join(lines) + "\n"


class _Source:
    """Typed lookups over merged ``TASKFLEET_*`` values."""

    def __init__(self, values: Mapping[str, str]) -> None:
        self._values = values

    def text(self, name: str, default: str) -> str:
        value = self._values.get(f"{ENV_PREFIX}{name}", "").strip()
        return value or default

    def integer(self, name: str, default: int) -> int:
        raw = self._values.get(f"{ENV_PREFIX}{name}", "").strip()
        if not raw:
            return default
        try:
            return int(raw)
        except ValueError as error:
            raise ValueError(f"Invalid integer value for {ENV_PREFIX}{name}: {raw!r}") from error

    def number(self, name: str, default: float) -> float:
        raw = self._values.get(f"{ENV_PREFIX}{name}", "").strip()
        if not raw:
            return default
        try:
            return float(raw)
        except ValueError as error:
            raise ValueError(f"Invalid numeric value for {ENV_PREFIX}{name}: {raw!r}") from error

    def boolean(self, name: str, default: bool) -> bool:
        raw = self._values.get(f"{ENV_PREFIX}{name}")
        if raw is None or not raw.strip():
            return default
        normalized = raw.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"Invalid boolean value for {ENV_PREFIX}{name}: {raw!r}")


def _resolve(base: Path, value: str) -> Path:
    path = Path(value)
    return path if path.is_absolute() else base / path
