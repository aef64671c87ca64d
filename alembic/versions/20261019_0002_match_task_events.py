"""Add per-transition audit trail for match tasks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "match_task_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_id"], ["match_tasks.task_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_match_task_events_task_time",
        "match_task_events",
        ["task_id", "created_at"],
    )
    op.create_index("ix_match_task_events_event_type", "match_task_events", ["event_type"])


def downgrade() -> None:
    op.drop_index("ix_match_task_events_event_type", table_name="match_task_events")
    op.drop_index("idx_match_task_events_task_time", table_name="match_task_events")
    op.drop_table("match_task_events")
