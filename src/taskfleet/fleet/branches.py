"""Branch reconciliation: classify worker branches and delete the abandoned ones."""

from __future__ import annotations

import logging
import re
import subprocess
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

from taskfleet.errors import ExternalToolError
from taskfleet.fleet.models import (
    BacklogTask,
    BranchClass,
    FailureRecord,
    FailureStatus,
    TaskStatus,
)

logger = logging.getLogger(__name__)

SLUG_MAX_CHARS = 40

_BRANCH_NAME_RE = re.compile(r"^[a-zA-Z0-9._/-]+$")
_LEADING_TAG_RE = re.compile(r"^\[.*?\]\s*")
_SLUG_DROP_RE = re.compile(r"[^a-z0-9-]")
_WORKTREE_BRANCH_RE = re.compile(r"^branch refs/heads/(.+)$")


def slugify(title: str) -> str:
    """Branch slug for a task title.

    Lossy: long titles sharing their first 40 slug characters collide, which
    can only keep a branch alive, never delete an active one.
    """

    text = _LEADING_TAG_RE.sub("", title, count=1).lower().replace(" ", "-")
    return _SLUG_DROP_RE.sub("", text)[:SLUG_MAX_CHARS]


def is_valid_branch_name(name: str) -> bool:
    return bool(_BRANCH_NAME_RE.match(name))


def branch_for(title: str, prefix: str) -> str:
    return f"{prefix}{slugify(title)}"


@dataclass(slots=True, frozen=True)
class BranchInfo:
    name: str
    status: BranchClass
    reason: str


@dataclass(slots=True)
class CleanupReport:
    """Result of one reconciliation pass."""

    branches: list[BranchInfo] = field(default_factory=list)
    dry_run: bool = True
    deleted: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped_invalid: list[str] = field(default_factory=list)
    pruned: bool = False

    @property
    def deletable(self) -> list[BranchInfo]:
        return [branch for branch in self.branches if branch.status is not BranchClass.ACTIVE]

    @property
    def active(self) -> list[BranchInfo]:
        return [branch for branch in self.branches if branch.status is BranchClass.ACTIVE]


def classify_branches(  # noqa: PLR0913
    branches: Iterable[str],
    *,
    merged: set[str],
    worktrees: set[str],
    claimed_slugs: set[str],
    pending_failure_branches: set[str],
    prefix: str,
    main_branch: str,
) -> list[BranchInfo]:
    """First match wins: merged, worktree, claimed slug, pending failure, else orphaned."""

    result: list[BranchInfo] = []
    for name in branches:
        if name in merged:
            result.append(BranchInfo(name, BranchClass.MERGED, f"merged into {main_branch}"))
        elif name in worktrees:
            result.append(BranchInfo(name, BranchClass.ACTIVE, "has worktree"))
        elif name.removeprefix(prefix) in claimed_slugs:
            result.append(BranchInfo(name, BranchClass.ACTIVE, "claimed [>] in backlog"))
        elif name in pending_failure_branches:
            result.append(BranchInfo(name, BranchClass.ACTIVE, "pending in failed-tasks"))
        else:
            result.append(
                BranchInfo(name, BranchClass.ORPHANED, "no matching backlog/failed entry"),
            )
    return result


def claimed_slugs(tasks: Iterable[BacklogTask]) -> set[str]:
    return {slugify(task.display_title) for task in tasks if task.status is TaskStatus.CLAIMED}


def pending_failure_branches(records: Iterable[FailureRecord]) -> set[str]:
    return {
        record.branch
        for record in records
        if record.branch and record.status is FailureStatus.PENDING
    }


class GitClient:
    """Thin git adapter; every command runs as an argv list, never through a shell."""

    def __init__(self, repo_dir: Path) -> None:
        self.repo_dir = Path(repo_dir)

    def run(self, *args: str) -> str:
        argv = ["git", *args]
        try:
            proc = subprocess.run(
                argv,
                cwd=str(self.repo_dir),
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as error:
            raise ExternalToolError(argv, str(error)) from error
        if proc.returncode != 0:
            raise ExternalToolError(argv, (proc.stderr or proc.stdout or "").strip())
        return proc.stdout

    def list_branches(self, prefix: str) -> list[str]:
        return _branch_lines(self._quiet("branch", "--list", f"{prefix}*"))

    def merged_branches(self, main_branch: str, prefix: str) -> set[str]:
        if not is_valid_branch_name(main_branch):
            logger.warning("Refusing merged-branch query for invalid main branch %r", main_branch)
            return set()
        output = self._quiet("branch", "--merged", main_branch, "--list", f"{prefix}*")
        return set(_branch_lines(output))

    def worktree_branches(self) -> set[str]:
        branches = set()
        for line in self._quiet("worktree", "list", "--porcelain").splitlines():
            match = _WORKTREE_BRANCH_RE.match(line.strip())
            if match:
                branches.add(match.group(1))
        return branches

    def delete_branch(self, name: str) -> None:
        if not is_valid_branch_name(name):
            raise ValueError(f"Refusing to delete branch with unsafe name: {name!r}")
        self.run("branch", "-D", name)

    def prune_worktrees(self) -> bool:
        try:
            self.run("worktree", "prune")
        except ExternalToolError as error:
            logger.warning("Worktree prune failed: %s", error)
            return False
        return True

    def _quiet(self, *args: str) -> str:
        try:
            return self.run(*args)
        except ExternalToolError as error:
            logger.warning("%s", error)
            return ""


def _branch_lines(output: str) -> list[str]:
    names = []
    for line in output.splitlines():
        name = line.lstrip("*+ ").strip()
        if name:
            names.append(name)
    return names


class BranchReconciler:
    """Classify ``prefix`` branches and, in force mode, delete merged and orphaned ones."""

    def __init__(
        self,
        git: GitClient,
        *,
        main_branch: str = "main",
        prefix: str = "dev/",
    ) -> None:
        self.git = git
        self.main_branch = main_branch
        self.prefix = prefix

    def classify(
        self,
        tasks: Iterable[BacklogTask],
        failures: Iterable[FailureRecord],
    ) -> list[BranchInfo]:
        branches = self.git.list_branches(self.prefix)
        if not branches:
            return []
        return classify_branches(
            branches,
            merged=self.git.merged_branches(self.main_branch, self.prefix),
            worktrees=self.git.worktree_branches(),
            claimed_slugs=claimed_slugs(tasks),
            pending_failure_branches=pending_failure_branches(failures),
            prefix=self.prefix,
            main_branch=self.main_branch,
        )

    def reconcile(
        self,
        tasks: Iterable[BacklogTask],
        failures: Iterable[FailureRecord],
        *,
        force: bool = False,
    ) -> CleanupReport:
        """Dry run unless ``force``; force deletes each candidate then prunes worktrees once."""

        report = CleanupReport(branches=self.classify(tasks, failures), dry_run=not force)
        if not force or not report.deletable:
            return report
        for branch in report.deletable:
            if not is_valid_branch_name(branch.name):
                logger.warning("Skipping branch with unsafe name %r", branch.name)
                report.skipped_invalid.append(branch.name)
                continue
            try:
                self.git.delete_branch(branch.name)
            except ExternalToolError as error:
                logger.warning("Failed to delete %s: %s", branch.name, error.detail)
                report.failed[branch.name] = error.detail
                continue
            logger.info("Deleted branch %s (%s)", branch.name, branch.reason)
            report.deleted.append(branch.name)
        report.pruned = self.git.prune_worktrees()
        return report

    def delete_branch(self, name: str) -> bool:
        """Delete one branch by name, used when resetting a failed task."""

        if not name or not is_valid_branch_name(name):
            logger.warning("Not deleting branch with unsafe or empty name %r", name)
            return False
        try:
            self.git.delete_branch(name)
        except ExternalToolError as error:
            logger.warning("Failed to delete %s: %s", name, error.detail)
            return False
        return True
