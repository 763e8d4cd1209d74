"""Add stale-job sweep accounting."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0003"
down_revision = "20261001_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sweep_runs",
        sa.Column("sweep_id", sa.String(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dry_run", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("jobs_checked", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("stale_found", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("jobs_reset", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("jobs_failed", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("duration_ms", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.PrimaryKeyConstraint("sweep_id"),
    )
    op.create_index("idx_sweep_runs_started_at", "sweep_runs", ["started_at"], unique=False)


def downgrade() -> None:
    op.drop_index("idx_sweep_runs_started_at", table_name="sweep_runs")
    op.drop_table("sweep_runs")
