"""Append-only ``events.log``: ``epoch|event|detail`` lines."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

EVENTS_KEY = "events.log"


@dataclass(slots=True, frozen=True)
class FleetEvent:
    ts: datetime
    event: str
    detail: str


def append_event(
    dev_dir: Path,
    event: str,
    detail: str,
    *,
    clock: Callable[[], float] = time.time,
) -> None:
    """Append one event line. Single short appends need no backlog lock."""

    line = f"{int(clock())}|{event}|{' '.join(detail.split())}\n"
    path = Path(dev_dir) / EVENTS_KEY
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(line)


def parse_events(text: str, *, limit: int = 100) -> list[FleetEvent]:
    events = []
    for line in text.split("\n"):
        parts = line.strip().split("|")
        if len(parts) < 3:
            continue
        try:
            epoch = float(parts[0])
        except ValueError:
            continue
        events.append(
            FleetEvent(
                ts=datetime.fromtimestamp(epoch, tz=UTC),
                event=parts[1],
                detail="|".join(parts[2:]),
            ),
        )
    return events[-limit:]
