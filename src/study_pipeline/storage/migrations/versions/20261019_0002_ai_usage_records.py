"""Add immutable AI usage ledger."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "ai_usage_records",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=True),
        sa.Column("owner_id", sa.String(), nullable=True),
        sa.Column("feature", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=True),
        sa.Column("prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("completion_tokens", sa.Integer(), nullable=True),
        sa.Column("total_tokens", sa.Integer(), nullable=True),
        sa.Column("input_cost_usd", sa.Float(), nullable=True),
        sa.Column("output_cost_usd", sa.Float(), nullable=True),
        sa.Column("cost_usd", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("audio_duration_seconds", sa.Float(), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("cost_usd >= 0", name="ck_ai_usage_records_cost_non_negative"),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_ai_usage_records_job_id", "ai_usage_records", ["job_id"])
    op.create_index(
        "idx_ai_usage_records_owner_time",
        "ai_usage_records",
        ["owner_id", "created_at"],
    )
    op.create_index(
        "idx_ai_usage_records_feature_time",
        "ai_usage_records",
        ["feature", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_ai_usage_records_feature_time", table_name="ai_usage_records")
    op.drop_index("idx_ai_usage_records_owner_time", table_name="ai_usage_records")
    op.drop_index("ix_ai_usage_records_job_id", table_name="ai_usage_records")
    op.drop_table("ai_usage_records")
