"""SQLModel ORM tables for the fleet mirror store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, Text
from sqlmodel import Field, SQLModel


class FleetTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("uq_tasks_normalized_title", "normalized_title", unique=True),
        Index("idx_tasks_status", "status"),
    )

    id: int | None = Field(default=None, primary_key=True)
    title: str
    tag: str = ""
    description: str = Field(default="", sa_column=Column(Text, nullable=False))
    status: str
    blocked_by: str = Field(default="", sa_column=Column(Text, nullable=False))
    branch: str | None = None
    worker_id: str | None = None
    fixer_id: str | None = None
    error: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    attempts: int = 0
    duration_secs: int | None = None
    normalized_title: str
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    failed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class WorkerHeartbeat(SQLModel, table=True):
    __tablename__ = "worker_heartbeats"  # type: ignore[bad-override]

    worker_id: str = Field(primary_key=True)
    slot: str
    pid: int | None = None
    current_task: str | None = None
    beat_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
