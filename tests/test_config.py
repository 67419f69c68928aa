from __future__ import annotations

from pathlib import Path

import allure
import pytest
from conftest import fleet_values, write_config

from taskfleet.config import Settings, load_config_file, render_config_file
from taskfleet.errors import ConfigMissingError

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Settings"),
]


def test_load_config_file_expands_references(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("FLEET_HOME", "/srv")
    path = tmp_path / "taskfleet.config.sh"
    path.write_text(
        "\n".join(
            [
                "# comment",
                'export TASKFLEET_PROJECT_NAME="shop"',
                'export TASKFLEET_LOCK_PREFIX="/tmp/taskfleet-${TASKFLEET_PROJECT_NAME}"',
                "export TASKFLEET_DEV_DIR=$FLEET_HOME/dev",
                'export TASKFLEET_MISSING="${NOPE_NOT_SET}x"',
                "TASKFLEET_IGNORED=1",
            ],
        ),
        encoding="utf-8",
    )

    values = load_config_file(path)

    assert values == {
        "TASKFLEET_PROJECT_NAME": "shop",
        "TASKFLEET_LOCK_PREFIX": "/tmp/taskfleet-shop",
        "TASKFLEET_DEV_DIR": "/srv/dev",
        "TASKFLEET_MISSING": "x",
    }


def test_render_config_file_is_read_back(tmp_path: Path) -> None:
    path = tmp_path / "taskfleet.config.sh"
    values = {"TASKFLEET_WORKER_COMMAND": 'agent --title "{title}"'}
    path.write_text(render_config_file(values), encoding="utf-8")

    assert load_config_file(path)["TASKFLEET_WORKER_COMMAND"].endswith('"{title}"')


def test_from_env_requires_config(tmp_path: Path) -> None:
    with pytest.raises(ConfigMissingError, match="taskfleet init"):
        Settings.from_env(tmp_path)


def test_from_env_environment_overrides_file(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    write_config(tmp_path, MAX_WORKERS="3")
    monkeypatch.setenv("TASKFLEET_MAX_WORKERS", "4")

    settings = Settings.from_env(tmp_path)

    assert settings.paths.project_name == "demo"
    assert settings.paths.project_dir == tmp_path.resolve()
    assert settings.paths.dev_dir == tmp_path.resolve() / ".dev"
    assert settings.paths.db_path == tmp_path.resolve() / ".dev" / "taskfleet.db"
    assert settings.liveness.max_workers == 4
    assert settings.worker.use_store is False


def test_defaults(tmp_path: Path) -> None:
    settings = Settings.from_mapping({}, project_dir=tmp_path)

    assert settings.paths.project_name == tmp_path.name
    assert settings.paths.lock_prefix == f"/tmp/taskfleet-{tmp_path.name}"
    assert settings.queue.lock_interval_seconds == pytest.approx(0.1)
    assert settings.liveness.stale_minutes == 45
    assert settings.git.branch_prefix == "dev/"
    assert settings.worker.use_store is True


def test_worker_slots_lists_workers_then_fixed_slots(tmp_path: Path) -> None:
    settings = Settings.from_mapping(
        fleet_values(tmp_path, MAX_WORKERS="2", MAX_FIXERS="2"),
        project_dir=tmp_path,
    )

    assert settings.liveness.worker_slots() == (
        "dev-worker-1",
        "dev-worker-2",
        "task-fixer",
        "task-fixer-2",
        "project-driver",
        "watchdog",
        "health-check",
    )


@pytest.mark.parametrize(
    ("key", "value", "message"),
    [
        ("MAX_WORKERS", "zero", "Invalid integer"),
        ("MAX_WORKERS", "0", "MAX_WORKERS"),
        ("LOCK_STALE_SECONDS", "soon", "Invalid numeric"),
        ("USE_STORE", "maybe", "Invalid boolean"),
        ("MAIN_BRANCH", "main; rm -rf /", "MAIN_BRANCH"),
        ("STALE_MINUTES", "-5", "STALE_MINUTES"),
    ],
)
def test_invalid_values_are_rejected(
    tmp_path: Path,
    key: str,
    value: str,
    message: str,
) -> None:
    with pytest.raises(ValueError, match=message):
        Settings.from_mapping(fleet_values(tmp_path, **{key: value}), project_dir=tmp_path)
