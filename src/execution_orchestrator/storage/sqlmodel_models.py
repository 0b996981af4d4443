"""SQLModel ORM tables for the execution registry."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text, UniqueConstraint
from sqlmodel import Field, SQLModel


class Execution(SQLModel, table=True):
    __tablename__ = "executions"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_executions_ready", "status", "next_retry_at", "created_at"),
        Index("idx_executions_deadline", "status", "deadline_at"),
    )

    execution_id: str = Field(primary_key=True)
    workflow_type: str = Field(index=True)
    priority: int = Field(default=2, index=True)
    status: str = Field(index=True)
    context_json: str = Field(default="{}", sa_column=Column(Text, nullable=False))
    attempt_count: int = Field(default=0)
    max_attempts: int = Field(default=3)
    parent_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    scheduled_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    dispatched_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    deadline_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    next_retry_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    last_error_kind: str | None = Field(default=None, index=True)
    last_error_message: str | None = Field(default=None, sa_column=Column(Text))
    last_error_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ExecutionAttempt(SQLModel, table=True):
    __tablename__ = "execution_attempts"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "execution_id",
            "attempt_no",
            name="uq_execution_attempts_execution_attempt_no",
        ),
    )

    attempt_id: int | None = Field(default=None, primary_key=True)
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("executions.execution_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_no: int
    workflow_type: str = Field(index=True)
    outcome: str = Field(index=True)
    dispatched_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    deadline_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    acknowledged_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    error_kind: str | None = Field(default=None, index=True)
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    metrics_json: str | None = Field(default=None, sa_column=Column(Text))
    estimated_cost_usd: float | None = None
    actual_cost_usd: float | None = None


class ExecutionEvent(SQLModel, table=True):
    __tablename__ = "execution_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_execution_events_execution_time", "execution_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("executions.execution_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DeadLetter(SQLModel, table=True):
    __tablename__ = "dead_letters"  # type: ignore[bad-override]

    entry_id: str = Field(primary_key=True)
    execution_id: str = Field(
        sa_column=Column(
            ForeignKey("executions.execution_id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
    )
    workflow_type: str = Field(index=True)
    reason: str = Field(index=True)
    attempt_count: int
    snapshot_json: str = Field(sa_column=Column(Text, nullable=False))
    attempts_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    requeued_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    requeued_execution_id: str | None = None


class DailyResourceUsage(SQLModel, table=True):
    __tablename__ = "daily_resource_usage"  # type: ignore[bad-override]

    usage_date: str = Field(primary_key=True)
    kind: str = Field(primary_key=True)
    used: float = Field(default=0.0)
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class OrchestratorFlag(SQLModel, table=True):
    __tablename__ = "orchestrator_flags"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    reason: str | None = Field(default=None, sa_column=Column(Text))
    set_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
