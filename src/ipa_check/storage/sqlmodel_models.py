"""SQLModel ORM tables for the match task queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class MatchTask(SQLModel, table=True):
    __tablename__ = "match_tasks"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_match_tasks_queue", "status", "created_at"),
        Index("idx_match_tasks_lease", "status", "lease_expiry"),
    )

    task_id: str = Field(primary_key=True)
    artifact_a_name: str
    artifact_a_hash: str | None = None
    artifact_b_name: str
    artifact_b_hash: str | None = None
    status: str
    similarity_score: float | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    failure_class: str | None = None
    worker_id: str | None = Field(default=None, index=True)
    worker_address: str | None = None
    lease_expiry: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MatchTaskEvent(SQLModel, table=True):
    __tablename__ = "match_task_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_match_task_events_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("match_tasks.task_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
