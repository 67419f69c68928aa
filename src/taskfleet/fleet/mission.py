"""Mission success criteria: parse the mission file and grade each criterion.

Criteria are graded by an ordered registry of rules, one per criterion
position. Adding or dropping a criterion is a change to ``DEFAULT_RULES``,
not to the evaluation loop.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from taskfleet.fleet.models import MissionStatus

_SECTION_RE = re.compile(
    r"^## Success Criteria[ \t]*\n(.*?)(?=^## |\Z)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)
_CHECKBOX_RE = re.compile(r"^-\s*\[([ xX>])\]\s+(.+)")
_NUMBERED_RE = re.compile(r"^\d+\.\s+(.+)")
_BULLET_RE = re.compile(r"^[-*]\s+(.+)")
_WATCHDOG_ISSUE_RE = re.compile(r"zombie|deadlock", re.IGNORECASE)
_SOURCE_SUFFIXES = frozenset({".ts", ".js", ".py"})


@dataclass(slots=True, frozen=True)
class MissionCriterion:
    text: str
    checked: bool = False


@dataclass(slots=True, frozen=True)
class MissionEvidence:
    """Raw counts the rules grade against."""

    handler_count: int = 0
    agent_count: int = 0
    completed_tasks: int = 0
    self_correction_rate: int = 0
    resolved_failures: int = 0
    watchdog_issues: int = 0


@dataclass(slots=True, frozen=True)
class Verdict:
    status: MissionStatus
    evidence: str


@dataclass(slots=True, frozen=True)
class CriterionRule:
    id: int
    evaluate: Callable[[MissionEvidence], Verdict]


@dataclass(slots=True, frozen=True)
class MissionProgress:
    id: int
    criterion: str
    status: MissionStatus
    evidence: str

    def as_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "criterion": self.criterion,
            "status": self.status.value,
            "evidence": self.evidence,
        }


def parse_mission(text: str) -> list[MissionCriterion]:
    """Items of the ``## Success Criteria`` section in order; [] when absent."""

    match = _SECTION_RE.search(text)
    if match is None:
        return []
    criteria: list[MissionCriterion] = []
    for line in match.group(1).split("\n"):
        stripped = line.strip()
        checkbox = _CHECKBOX_RE.match(stripped)
        if checkbox:
            criteria.append(
                MissionCriterion(checkbox.group(2).strip(), checked=checkbox.group(1) in "xX"),
            )
            continue
        numbered = _NUMBERED_RE.match(stripped)
        if numbered:
            criteria.append(MissionCriterion(numbered.group(1).strip()))
            continue
        bullet = _BULLET_RE.match(stripped)
        if bullet and not bullet.group(1).startswith("The mission"):
            criteria.append(MissionCriterion(bullet.group(1).strip()))
    return criteria


def _tiered(value: int, *, met: int, partial: int, noun: str) -> Verdict:
    if value >= met:
        status = MissionStatus.MET
    elif value >= partial:
        status = MissionStatus.PARTIAL
    else:
        status = MissionStatus.NOT_MET
    return Verdict(status, f"{value} {noun}")


def _dashboard_coverage(evidence: MissionEvidence) -> Verdict:
    return _tiered(evidence.handler_count, met=5, partial=1, noun="handlers")


def _self_correction(evidence: MissionEvidence) -> Verdict:
    rate = evidence.self_correction_rate
    if evidence.resolved_failures == 0:
        return Verdict(MissionStatus.PARTIAL, "no failures resolved yet")
    if rate >= 95:
        return Verdict(MissionStatus.MET, f"{rate}% self-correction rate")
    if rate >= 50:
        return Verdict(MissionStatus.PARTIAL, f"{rate}% self-correction rate")
    return Verdict(MissionStatus.NOT_MET, f"{rate}% self-correction rate")


def _watchdog_clean(evidence: MissionEvidence) -> Verdict:
    issues = evidence.watchdog_issues
    if issues == 0:
        return Verdict(MissionStatus.MET, "no zombie/deadlock entries in watchdog log")
    if issues <= 2:
        return Verdict(MissionStatus.PARTIAL, f"{issues} zombie/deadlock entries")
    return Verdict(MissionStatus.NOT_MET, f"{issues} zombie/deadlock entries")


def _full_dashboard(evidence: MissionEvidence) -> Verdict:
    return _tiered(evidence.handler_count, met=8, partial=5, noun="handlers")


def _throughput(evidence: MissionEvidence) -> Verdict:
    return _tiered(evidence.completed_tasks, met=10, partial=1, noun="completed tasks")


def _agent_plugins(evidence: MissionEvidence) -> Verdict:
    return _tiered(evidence.agent_count, met=2, partial=1, noun="agents")


DEFAULT_RULES: tuple[CriterionRule, ...] = (
    CriterionRule(1, _dashboard_coverage),
    CriterionRule(2, _self_correction),
    CriterionRule(3, _watchdog_clean),
    CriterionRule(4, _full_dashboard),
    CriterionRule(5, _throughput),
    CriterionRule(6, _agent_plugins),
)


def mission_progress(
    criteria: Sequence[MissionCriterion],
    evidence: MissionEvidence,
    rules: Sequence[CriterionRule] = DEFAULT_RULES,
) -> list[MissionProgress]:
    """Grade each criterion by the rule registered for its 1-based position.

    Criteria past the registry fall back to the mission file's own checkbox.
    """

    by_id = {rule.id: rule for rule in rules}
    progress: list[MissionProgress] = []
    for position, criterion in enumerate(criteria, start=1):
        rule = by_id.get(position)
        if rule is not None:
            verdict = rule.evaluate(evidence)
        elif criterion.checked:
            verdict = Verdict(MissionStatus.MET, "marked complete in mission file")
        else:
            verdict = Verdict(MissionStatus.NOT_MET, "no automated evidence")
        progress.append(
            MissionProgress(
                id=position,
                criterion=criterion.text,
                status=verdict.status,
                evidence=verdict.evidence,
            ),
        )
    return progress


def count_source_files(directory: Path) -> int:
    """Non-test source modules directly under ``directory``; 0 when unreadable."""

    try:
        children = list(directory.iterdir())
    except OSError:
        return 0
    return sum(
        1
        for child in children
        if child.is_file()
        and child.suffix in _SOURCE_SUFFIXES
        and ".test." not in child.name
        and not child.name.startswith("test_")
    )


def count_files(directory: Path) -> int:
    try:
        return sum(
            1
            for child in directory.iterdir()
            if child.is_file() and not child.name.startswith(".")
        )
    except OSError:
        return 0


def count_watchdog_issues(text: str) -> int:
    return sum(1 for line in text.split("\n") if _WATCHDOG_ISSUE_RE.search(line))
