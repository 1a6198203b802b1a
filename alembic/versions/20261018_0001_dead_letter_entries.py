"""Create durable dead-letter entries table."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "dead_letter_entries",
        sa.Column("entry_id", sa.String(), nullable=False),
        sa.Column("task_id", sa.String(), nullable=False),
        sa.Column("task_category", sa.String(), nullable=True),
        sa.Column("task_snapshot_json", sa.Text(), nullable=False),
        sa.Column("total_attempts", sa.Integer(), nullable=False),
        sa.Column("max_retries", sa.Integer(), nullable=False),
        sa.Column("retry_history_json", sa.Text(), nullable=False),
        sa.Column("final_error_code", sa.String(), nullable=False),
        sa.Column("final_error_message", sa.Text(), nullable=False),
        sa.Column("final_error_severity", sa.String(), nullable=False),
        sa.Column(
            "final_error_retryable",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("can_reprocess", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("reprocess_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reprocess_attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("entry_id"),
    )
    op.create_index(
        "ix_dead_letter_entries_task_id",
        "dead_letter_entries",
        ["task_id"],
    )
    op.create_index(
        "ix_dead_letter_entries_created_at",
        "dead_letter_entries",
        ["created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_dead_letter_entries_created_at", table_name="dead_letter_entries")
    op.drop_index("ix_dead_letter_entries_task_id", table_name="dead_letter_entries")
    op.drop_table("dead_letter_entries")
