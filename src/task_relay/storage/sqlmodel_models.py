"""SQLModel ORM tables for task runs, their audit events and artifact evidence."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Text, UniqueConstraint, text
from sqlmodel import Field, SQLModel


class TaskRun(SQLModel, table=True):
    __tablename__ = "task_runs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_task_runs_status", "status"),
        Index("idx_task_runs_sender_status", "channel", "sender_key", "status"),
    )

    task_id: str = Field(primary_key=True)
    channel: str
    sender_key: str
    reply_target: str
    status: str
    original_request: str = Field(sa_column=Column(Text, nullable=False))
    last_response: str | None = Field(default=None, sa_column=Column(Text))
    attempt_count: int = Field(default=0)
    provider_retry_count: int = Field(default=0)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskEvent(SQLModel, table=True):
    __tablename__ = "task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_task_events_task_created", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("task_runs.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    payload_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskArtifact(SQLModel, table=True):
    __tablename__ = "task_artifacts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("task_id", "path", name="uq_task_artifacts_task_path"),
    )

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("task_runs.task_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    path: str
    verified: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    checksum: str | None = None
    verified_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
