"""Error taxonomy shared by fleet components."""

from __future__ import annotations


class TaskfleetError(RuntimeError):
    """Base class for fleet coordination failures."""


class ConfigMissingError(TaskfleetError):
    """Project configuration file is absent; nothing can run without it."""


class LockTimeoutError(TaskfleetError):
    """Mutex could not be acquired within its attempt budget."""

    def __init__(self, lock_path: str, attempts: int) -> None:
        super().__init__(f"Could not acquire lock {lock_path} after {attempts} attempts.")
        self.lock_path = lock_path
        self.attempts = attempts


class InvalidTaskError(TaskfleetError, ValueError):
    """Task fields cannot be encoded into a single backlog line."""


class NoMatchError(TaskfleetError, LookupError):
    """Search term matched no record."""


class AmbiguousMatchError(TaskfleetError, LookupError):
    """Search term matched more than one record."""

    def __init__(self, term: str, candidates: list[str]) -> None:
        listing = ", ".join(candidates)
        super().__init__(f"Multiple matches for {term!r}: {listing}. Be more specific.")
        self.term = term
        self.candidates = candidates


class ExternalToolError(TaskfleetError):
    """External command (git) exited non-zero or could not be started."""

    def __init__(self, argv: list[str], detail: str) -> None:
        super().__init__(f"{' '.join(argv)} failed: {detail}")
        self.argv = argv
        self.detail = detail


class SlotBusyError(TaskfleetError):
    """Worker slot is already held by a running process."""
