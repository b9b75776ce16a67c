"""Create run journal and per-unit checkpoint tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "batch_runs",
        sa.Column("run_id", sa.String(), primary_key=True),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("total_units", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("succeeded_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("retried_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("cached_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("concurrency_limit", sa.Integer(), nullable=True),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_batch_runs_status", "batch_runs", ["status"])
    op.create_index("ix_batch_runs_started_at", "batch_runs", ["started_at"])

    op.create_table(
        "unit_checkpoints",
        sa.Column("run_id", sa.String(), nullable=False),
        sa.Column("unit_index", sa.Integer(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("checksum_sha256", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("run_id", "unit_index"),
    )
    op.create_index("ix_unit_checkpoints_run_id", "unit_checkpoints", ["run_id"])


def downgrade() -> None:
    op.drop_index("ix_unit_checkpoints_run_id", table_name="unit_checkpoints")
    op.drop_table("unit_checkpoints")
    op.drop_index("ix_batch_runs_started_at", table_name="batch_runs")
    op.drop_index("ix_batch_runs_status", table_name="batch_runs")
    op.drop_table("batch_runs")
