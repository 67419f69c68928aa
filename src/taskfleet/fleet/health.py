"""Fleet health score and self-correction rate.

Both are pure functions of counts gathered elsewhere; they never touch the
filesystem and are safe to call on every watch refresh.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping
from dataclasses import dataclass

from taskfleet.fleet.models import FailureStatus, HealthLabel

PENDING_FAILURE_COST = 5
BLOCKER_COST = 10
STALE_HEARTBEAT_COST = 2
LONG_RUNNING_TASK_COST = 1

_ACTIVE_SECTION_RE = re.compile(
    r"^## Active[ \t]*\n(.*?)(?=^## |\Z)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)


@dataclass(slots=True, frozen=True)
class HealthInputs:
    pending_failures: int = 0
    blockers: int = 0
    stale_heartbeats: int = 0
    long_running_tasks: int = 0


def health_score(inputs: HealthInputs) -> int:
    """100 minus fixed per-event costs, clamped to ``[0, 100]``."""

    score = (
        100
        - PENDING_FAILURE_COST * inputs.pending_failures
        - BLOCKER_COST * inputs.blockers
        - STALE_HEARTBEAT_COST * inputs.stale_heartbeats
        - LONG_RUNNING_TASK_COST * inputs.long_running_tasks
    )
    return max(0, min(100, score))


def health_label(score: int) -> HealthLabel:
    if score > 80:
        return HealthLabel.GOOD
    if score > 50:
        return HealthLabel.DEGRADED
    return HealthLabel.CRITICAL


def self_corrected_count(counts: Mapping[FailureStatus, int]) -> int:
    return counts.get(FailureStatus.FIXED, 0) + counts.get(FailureStatus.SUPERSEDED, 0)


def resolved_count(counts: Mapping[FailureStatus, int]) -> int:
    return self_corrected_count(counts) + counts.get(FailureStatus.BLOCKED, 0)


def self_correction_rate(counts: Mapping[FailureStatus, int]) -> int:
    """Percent of resolved failures fixed or superseded without a human unblocking them."""

    resolved = resolved_count(counts)
    if resolved == 0:
        return 0
    return math.floor(self_corrected_count(counts) / resolved * 100 + 0.5)


def count_active_blockers(text: str) -> int:
    """Count ``- `` items under ``## Active`` in blockers.md (whole file when no section)."""

    match = _ACTIVE_SECTION_RE.search(text)
    section = (match.group(1) if match else text).strip()
    if not section or section.lower() == "none" or "No active blockers" in section:
        return 0
    return sum(1 for line in section.split("\n") if line.startswith("- "))
