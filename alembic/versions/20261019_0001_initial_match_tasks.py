"""Create durable match task queue."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "match_tasks",
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("artifact_a_name", sa.String(), nullable=False),
        sa.Column("artifact_a_hash", sa.String(), nullable=True),
        sa.Column("artifact_b_name", sa.String(), nullable=False),
        sa.Column("artifact_b_hash", sa.String(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("similarity_score", sa.Float(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("worker_address", sa.String(), nullable=True),
        sa.Column("lease_expiry", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("task_id"),
    )
    op.create_index("idx_match_tasks_queue", "match_tasks", ["status", "created_at"])
    op.create_index("idx_match_tasks_lease", "match_tasks", ["status", "lease_expiry"])
    op.create_index("ix_match_tasks_worker_id", "match_tasks", ["worker_id"])


def downgrade() -> None:
    op.drop_index("ix_match_tasks_worker_id", table_name="match_tasks")
    op.drop_index("idx_match_tasks_lease", table_name="match_tasks")
    op.drop_index("idx_match_tasks_queue", table_name="match_tasks")
    op.drop_table("match_tasks")
