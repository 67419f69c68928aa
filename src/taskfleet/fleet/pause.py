"""Pause sentinel: while ``pipeline-paused`` exists workers stop claiming new tasks."""

from __future__ import annotations

import getpass
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from taskfleet.storage.common import to_iso, utc_now
from taskfleet.storage.state_store import StateStore

logger = logging.getLogger(__name__)

PAUSE_KEY = "pipeline-paused"


@dataclass(slots=True, frozen=True)
class PauseState:
    """``paused`` with metadata; metadata is None when the sentinel is unreadable."""

    paused: bool
    paused_at: str | None = None
    paused_by: str | None = None

    @property
    def corrupt(self) -> bool:
        return self.paused and self.paused_at is None


@dataclass(slots=True, frozen=True)
class PauseOutcome:
    state: PauseState
    changed: bool


def read_pause_state(store: StateStore) -> PauseState:
    if not store.exists(PAUSE_KEY):
        return PauseState(paused=False)
    try:
        payload = json.loads(store.read(PAUSE_KEY))
    except ValueError:
        logger.debug("Pause sentinel is not valid JSON")
        return PauseState(paused=True)
    if not isinstance(payload, dict) or "pausedAt" not in payload:
        return PauseState(paused=True)
    return PauseState(
        paused=True,
        paused_at=str(payload["pausedAt"]),
        paused_by=str(payload.get("pausedBy", "unknown")),
    )


def pause(
    store: StateStore,
    *,
    paused_by: str | None = None,
    clock: Callable[[], datetime] = utc_now,
) -> PauseOutcome:
    """Create the sentinel; an existing sentinel is left untouched."""

    existing = read_pause_state(store)
    if existing.paused:
        return PauseOutcome(state=existing, changed=False)
    state = PauseState(
        paused=True,
        paused_at=to_iso(clock()),
        paused_by=paused_by or _current_user(),
    )
    payload = {"pausedAt": state.paused_at, "pausedBy": state.paused_by}
    store.write_atomic(PAUSE_KEY, json.dumps(payload, indent=2) + "\n")
    logger.info("Pipeline paused by %s", state.paused_by)
    return PauseOutcome(state=state, changed=True)


def resume(store: StateStore) -> bool:
    """Remove the sentinel; False when the pipeline was not paused."""

    removed = store.delete(PAUSE_KEY)
    if removed:
        logger.info("Pipeline resumed")
    return removed


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "user"
