"""Create execution registry, attempt history, and event audit tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "executions",
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("workflow_type", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="2"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("context_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error_kind", sa.String(), nullable=True),
        sa.Column("last_error_message", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("execution_id"),
    )
    op.create_index("ix_executions_workflow_type", "executions", ["workflow_type"])
    op.create_index("ix_executions_priority", "executions", ["priority"])
    op.create_index("ix_executions_status", "executions", ["status"])
    op.create_index("ix_executions_parent_id", "executions", ["parent_id"])
    op.create_index("ix_executions_last_error_kind", "executions", ["last_error_kind"])
    op.create_index(
        "idx_executions_ready",
        "executions",
        ["status", "next_retry_at", "created_at"],
    )
    op.create_index("idx_executions_deadline", "executions", ["status", "deadline_at"])

    op.create_table(
        "execution_attempts",
        sa.Column("attempt_id", sa.Integer(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("attempt_no", sa.Integer(), nullable=False),
        sa.Column("workflow_type", sa.String(), nullable=False),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("dispatched_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("deadline_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("acknowledged_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_kind", sa.String(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("metrics_json", sa.Text(), nullable=True),
        sa.Column("estimated_cost_usd", sa.Float(), nullable=True),
        sa.Column("actual_cost_usd", sa.Float(), nullable=True),
        sa.ForeignKeyConstraint(
            ["execution_id"],
            ["executions.execution_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("attempt_id"),
        sa.UniqueConstraint(
            "execution_id",
            "attempt_no",
            name="uq_execution_attempts_execution_attempt_no",
        ),
    )
    op.create_index(
        "ix_execution_attempts_execution_id",
        "execution_attempts",
        ["execution_id"],
    )
    op.create_index(
        "ix_execution_attempts_workflow_type",
        "execution_attempts",
        ["workflow_type"],
    )
    op.create_index("ix_execution_attempts_outcome", "execution_attempts", ["outcome"])
    op.create_index("ix_execution_attempts_error_kind", "execution_attempts", ["error_kind"])

    op.create_table(
        "execution_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["execution_id"],
            ["executions.execution_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_execution_events_execution_id", "execution_events", ["execution_id"])
    op.create_index("ix_execution_events_event_type", "execution_events", ["event_type"])
    op.create_index("ix_execution_events_status_from", "execution_events", ["status_from"])
    op.create_index("ix_execution_events_status_to", "execution_events", ["status_to"])
    op.create_index(
        "idx_execution_events_execution_time",
        "execution_events",
        ["execution_id", "created_at"],
    )

    op.create_table(
        "dead_letters",
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("execution_id", sa.String(), nullable=False),
        sa.Column("workflow_type", sa.String(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("snapshot_json", sa.Text(), nullable=False),
        sa.Column("attempts_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("requeued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requeued_execution_id", sa.String(), nullable=True),
        sa.ForeignKeyConstraint(
            ["execution_id"],
            ["executions.execution_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("entry_id"),
        sa.UniqueConstraint("execution_id"),
    )
    op.create_index("ix_dead_letters_workflow_type", "dead_letters", ["workflow_type"])
    op.create_index("ix_dead_letters_reason", "dead_letters", ["reason"])


def downgrade() -> None:
    op.drop_index("ix_dead_letters_reason", table_name="dead_letters")
    op.drop_index("ix_dead_letters_workflow_type", table_name="dead_letters")
    op.drop_table("dead_letters")
    op.drop_index("idx_execution_events_execution_time", table_name="execution_events")
    op.drop_index("ix_execution_events_status_to", table_name="execution_events")
    op.drop_index("ix_execution_events_status_from", table_name="execution_events")
    op.drop_index("ix_execution_events_event_type", table_name="execution_events")
    op.drop_index("ix_execution_events_execution_id", table_name="execution_events")
    op.drop_table("execution_events")
    op.drop_index("ix_execution_attempts_error_kind", table_name="execution_attempts")
    op.drop_index("ix_execution_attempts_outcome", table_name="execution_attempts")
    op.drop_index("ix_execution_attempts_workflow_type", table_name="execution_attempts")
    op.drop_index("ix_execution_attempts_execution_id", table_name="execution_attempts")
    op.drop_table("execution_attempts")
    op.drop_index("idx_executions_deadline", table_name="executions")
    op.drop_index("idx_executions_ready", table_name="executions")
    op.drop_index("ix_executions_last_error_kind", table_name="executions")
    op.drop_index("ix_executions_parent_id", table_name="executions")
    op.drop_index("ix_executions_status", table_name="executions")
    op.drop_index("ix_executions_priority", table_name="executions")
    op.drop_index("ix_executions_workflow_type", table_name="executions")
    op.drop_table("executions")
