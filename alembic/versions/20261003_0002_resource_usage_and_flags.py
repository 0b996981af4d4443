"""Persist daily resource usage and system-wide orchestrator flags."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261003_0002"
down_revision = "20261001_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "daily_resource_usage",
        sa.Column("usage_date", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("used", sa.Float(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("usage_date", "kind"),
    )
    op.create_table(
        "orchestrator_flags",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("set_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )


def downgrade() -> None:
    op.drop_table("orchestrator_flags")
    op.drop_table("daily_resource_usage")
