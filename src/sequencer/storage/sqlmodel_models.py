"""SQLModel ORM tables for execution history, queue, and locks."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, Text
from sqlmodel import Field, SQLModel


class TaskExecution(SQLModel, table=True):
    __tablename__ = "task_executions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_executions_name_time", "name", "executed_at"),
        Index("idx_task_executions_state", "state"),
    )

    id: int | None = Field(default=None, primary_key=True)
    name: str = Field(index=True)
    type: str
    state: str
    executed_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    skipped_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    skip_reason: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    rolled_back_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    executed_by: str | None = None


class TaskError(SQLModel, table=True):
    __tablename__ = "task_errors"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    execution_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("task_executions.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    exception: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    trace: str = Field(sa_column=Column(Text, nullable=False))
    context_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class QueuedJob(SQLModel, table=True):
    __tablename__ = "queued_jobs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_queued_jobs_claim", "queue", "status", "run_after"),)

    id: int | None = Field(default=None, primary_key=True)
    task_name: str = Field(index=True)
    task_path: str
    task_kind: str
    record_id: int = Field(
        sa_column=Column(
            Integer,
            ForeignKey("task_executions.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    queue: str
    status: str
    attempt: int = 0
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    worker_id: str | None = None
    error_summary: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SequencerLock(SQLModel, table=True):
    __tablename__ = "sequencer_locks"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    owner: str
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
