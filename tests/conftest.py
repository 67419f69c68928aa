"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from taskfleet.config import CONFIG_RELATIVE_PATH, ENV_PREFIX, Settings, render_config_file
from taskfleet.fleet.context import FleetContext


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for key in list(os.environ):
        if key.startswith(ENV_PREFIX):
            monkeypatch.delenv(key, raising=False)


def fleet_values(project_dir: Path, **overrides: str) -> dict[str, str]:
    values = {
        "TASKFLEET_PROJECT_NAME": "demo",
        "TASKFLEET_LOCK_PREFIX": str(project_dir / "demo"),
        "TASKFLEET_LOCK_INTERVAL_MS": "5",
        "TASKFLEET_POLL_INTERVAL_SECONDS": "0",
        "TASKFLEET_USE_STORE": "false",
    }
    values.update({f"{ENV_PREFIX}{key}": value for key, value in overrides.items()})
    return values


def write_config(project_dir: Path, **overrides: str) -> Path:
    path = project_dir / CONFIG_RELATIVE_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_config_file(fleet_values(project_dir, **overrides)), encoding="utf-8")
    return path


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return Settings.from_mapping(fleet_values(tmp_path), project_dir=tmp_path)


@pytest.fixture()
def context(settings: Settings) -> Iterator[FleetContext]:
    fleet = FleetContext.from_settings(settings)
    settings.paths.dev_dir.mkdir(parents=True, exist_ok=True)
    try:
        yield fleet
    finally:
        fleet.close()
