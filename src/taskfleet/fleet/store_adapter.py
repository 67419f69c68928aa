"""Optional SQLite mirror of the backlog and failure ledger.

Files stay authoritative. Reads prefer the mirror only while it answers;
mirrored writes are best-effort and a failure is logged, never raised or
retried.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from taskfleet.fleet.models import (
    BacklogTask,
    FailureRecord,
    FailureStatus,
    TaskStatus,
    normalize_title,
)
from taskfleet.fleet.records import strip_tag
from taskfleet.storage.alembic_runner import upgrade_head
from taskfleet.storage.common import build_sqlite_engine, utc_now
from taskfleet.storage.sqlmodel_models import FleetTask, WorkerHeartbeat

logger = logging.getLogger(__name__)

STORE_PENDING = "pending"
STORE_CLAIMED = "claimed"
STORE_COMPLETED = "completed"
STORE_FAILED = "failed"

RESETTABLE_STATUSES = (STORE_FAILED, "fixing-1", "fixing-2", "fixing-3", "blocked")

_TASK_STORE_STATUS = {
    TaskStatus.PENDING: STORE_PENDING,
    TaskStatus.CLAIMED: STORE_CLAIMED,
    TaskStatus.DONE: STORE_COMPLETED,
}


def store_status_for_failure(status: FailureStatus) -> str:
    return STORE_FAILED if status is FailureStatus.PENDING else status.value


class StoreAdapter:
    """Relational read/write path mirroring ``TaskQueue`` and ``FailureLedger``."""

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5000) -> None:
        self.db_path = Path(db_path)
        self.engine = build_sqlite_engine(db_path=self.db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        """Create or migrate the mirror schema."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def is_ready(self) -> bool:
        """True when the database exists and the tasks table answers a count."""

        if not self.db_path.is_file():
            return False
        try:
            with Session(self.engine) as session:
                session.exec(select(func.count()).select_from(FleetTask)).one()
        except SQLAlchemyError as error:
            logger.debug("Mirror store not ready at %s: %s", self.db_path, error)
            return False
        return True

    def task_counts(self) -> dict[str, int] | None:
        """``{pending, claimed, completed, failed}`` from the mirror; None on error."""

        by_status = self.task_counts_by_raw_status()
        if by_status is None:
            return None
        return {
            "pending": by_status.get(STORE_PENDING, 0),
            "claimed": by_status.get(STORE_CLAIMED, 0),
            "completed": by_status.get(STORE_COMPLETED, 0),
            "failed": by_status.get(STORE_FAILED, 0),
        }

    def failure_status_counts(self) -> dict[FailureStatus, int] | None:
        counts = self.task_counts_by_raw_status()
        if counts is None:
            return None
        return {
            status: counts.get(store_status_for_failure(status), 0) for status in FailureStatus
        }

    def task_counts_by_raw_status(self) -> dict[str, int] | None:
        try:
            with Session(self.engine) as session:
                rows = session.exec(
                    select(FleetTask.status, func.count()).group_by(FleetTask.status),
                ).all()
        except SQLAlchemyError as error:
            logger.warning("Mirror status query failed: %s", error)
            return None
        return {str(status): int(count) for status, count in rows}

    def sync_from_files(
        self,
        tasks: Iterable[BacklogTask],
        failures: Iterable[FailureRecord],
    ) -> int:
        """Upsert every backlog entry and failure row; failures win over backlog state."""

        now = utc_now()
        written = 0
        with Session(self.engine) as session:
            for task in tasks:
                row = self._get_or_create(session, task.title, now)
                row.tag = task.tag or ""
                row.description = task.description or ""
                row.blocked_by = ", ".join(task.blocked_by)
                row.status = _TASK_STORE_STATUS[task.status]
                row.updated_at = now
                session.add(row)
                written += 1
            for record in failures:
                row = self._get_or_create(session, strip_tag(record.title), now)
                row.status = store_status_for_failure(record.status)
                row.branch = record.branch or None
                row.error = record.error or None
                row.attempts = record.attempts
                row.updated_at = now
                session.add(row)
                written += 1
            session.commit()
        return written

    def mirror_insert(self, task: BacklogTask) -> bool:
        def change(session: Session, now: datetime) -> None:
            row = self._get_or_create(session, task.title, now)
            row.tag = task.tag or ""
            row.description = task.description or ""
            row.blocked_by = ", ".join(task.blocked_by)
            row.status = STORE_PENDING
            row.updated_at = now
            session.add(row)

        return self._best_effort("insert", change)

    def mirror_claim(self, task: BacklogTask, worker_id: str | None = None) -> bool:
        def change(session: Session, now: datetime) -> None:
            row = self._get_or_create(session, task.title, now)
            row.tag = task.tag or ""
            row.status = STORE_CLAIMED
            row.worker_id = worker_id
            row.claimed_at = now
            row.updated_at = now
            session.add(row)

        return self._best_effort("claim", change)

    def mirror_done(self, title: str, *, duration_secs: int | None = None) -> bool:
        def change(session: Session, now: datetime) -> None:
            row = self._get_or_create(session, title, now)
            row.status = STORE_COMPLETED
            row.completed_at = now
            row.duration_secs = duration_secs
            row.updated_at = now
            session.add(row)

        return self._best_effort("done", change)

    def mirror_unclaim(self, title: str) -> bool:
        """Return a claimed row to pending; True when a row changed."""

        changed = False

        def change(session: Session, now: datetime) -> None:
            nonlocal changed
            result = session.exec(
                sa_update(FleetTask)
                .where(
                    col(FleetTask.normalized_title) == normalize_title(strip_tag(title)),
                    col(FleetTask.status) == STORE_CLAIMED,
                )
                .values(
                    status=STORE_PENDING,
                    worker_id=None,
                    claimed_at=None,
                    updated_at=now,
                ),
            )
            changed = result.rowcount > 0

        return self._best_effort("unclaim", change) and changed

    def mirror_remove(self, title: str) -> bool:
        """Delete the row for a title dropped from the backlog."""

        def change(session: Session, now: datetime) -> None:
            session.exec(
                sa_delete(FleetTask).where(
                    col(FleetTask.normalized_title) == normalize_title(strip_tag(title)),
                ),
            )

        return self._best_effort("remove", change)

    def mirror_failure(self, record: FailureRecord) -> bool:
        def change(session: Session, now: datetime) -> None:
            row = self._get_or_create(session, strip_tag(record.title), now)
            row.status = store_status_for_failure(record.status)
            row.branch = record.branch or None
            row.error = record.error or None
            row.attempts = record.attempts
            row.failed_at = row.failed_at or now
            row.updated_at = now
            session.add(row)

        return self._best_effort("failure", change)

    def mirror_reset(self, title: str) -> bool:
        """Reset a failed task row to pending; True when a row changed."""

        changed = False

        def change(session: Session, now: datetime) -> None:
            nonlocal changed
            result = session.exec(
                sa_update(FleetTask)
                .where(
                    col(FleetTask.normalized_title) == normalize_title(title),
                    col(FleetTask.status).in_(RESETTABLE_STATUSES),
                )
                .values(
                    status=STORE_PENDING,
                    attempts=0,
                    error=None,
                    fixer_id=None,
                    updated_at=now,
                ),
            )
            changed = result.rowcount > 0

        return self._best_effort("reset", change) and changed

    def record_heartbeat(
        self,
        worker_id: str,
        *,
        slot: str,
        pid: int,
        current_task: str | None,
    ) -> bool:
        def change(session: Session, now: datetime) -> None:
            row = session.get(WorkerHeartbeat, worker_id)
            if row is None:
                row = WorkerHeartbeat(worker_id=worker_id, slot=slot, beat_at=now)
            row.slot = slot
            row.pid = pid
            row.current_task = current_task
            row.beat_at = now
            session.add(row)

        return self._best_effort("heartbeat", change)

    def heartbeats(self) -> dict[str, datetime] | None:
        """Last beat per worker id from the mirror; None when it cannot be read."""

        if not self.db_path.is_file():
            return None
        try:
            with Session(self.engine) as session:
                rows = session.exec(select(WorkerHeartbeat)).all()
        except SQLAlchemyError as error:
            logger.warning("Mirror heartbeat query failed: %s", error)
            return None
        return {row.worker_id: row.beat_at for row in rows}

    def clear_heartbeat(self, worker_id: str) -> bool:
        def change(session: Session, now: datetime) -> None:
            session.exec(
                sa_delete(WorkerHeartbeat).where(col(WorkerHeartbeat.worker_id) == worker_id),
            )

        return self._best_effort("heartbeat clear", change)

    def _best_effort(
        self,
        action: str,
        change: Callable[[Session, datetime], None],
    ) -> bool:
        if not self.db_path.is_file():
            return False
        try:
            with Session(self.engine) as session:
                change(session, utc_now())
                session.commit()
        except SQLAlchemyError as error:
            logger.warning(
                "Mirror %s write failed (files remain authoritative): %s",
                action,
                error,
            )
            return False
        return True

    @staticmethod
    def _get_or_create(session: Session, title: str, now: datetime) -> FleetTask:
        key = normalize_title(strip_tag(title))
        row = session.exec(
            select(FleetTask).where(FleetTask.normalized_title == key),
        ).one_or_none()
        if row is not None:
            return row
        return FleetTask(
            title=strip_tag(title),
            status=STORE_PENDING,
            normalized_title=key,
            created_at=now,
            updated_at=now,
        )
