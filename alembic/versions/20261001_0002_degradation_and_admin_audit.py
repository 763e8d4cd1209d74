"""Add degradation decision log and admin audit trail."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0002"
down_revision = "20261001_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "degradation_decisions",
        sa.Column("decision_id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("run_id", sa.Integer(), nullable=True),
        sa.Column("failure_category", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False),
        sa.Column("strategy", sa.String(), nullable=True),
        sa.Column("outcome", sa.String(), nullable=False),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "outcome IN ('succeeded_degraded', 'strategy_failed', 'exhausted')",
            name="ck_degradation_decisions_outcome",
        ),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["run_id"], ["job_runs.run_id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("decision_id"),
    )
    op.create_index(
        "ix_degradation_decisions_job_id",
        "degradation_decisions",
        ["job_id"],
        unique=False,
    )

    op.create_table(
        "admin_audit",
        sa.Column("audit_id", sa.Integer(), nullable=False),
        sa.Column("actor", sa.String(), nullable=False),
        sa.Column("action", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("previous_status", sa.String(), nullable=False),
        sa.Column("new_status", sa.String(), nullable=False),
        sa.Column("previous_retry_count", sa.Integer(), nullable=False),
        sa.Column("new_retry_count", sa.Integer(), nullable=False),
        sa.Column(
            "limit_overridden",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("0"),
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "action IN ('retry', 'bulk_retry', 'cancel', 'set_status')",
            name="ck_admin_audit_action",
        ),
        sa.CheckConstraint(
            "length(reason) BETWEEN 10 AND 500",
            name="ck_admin_audit_reason_length",
        ),
        sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("audit_id"),
    )
    op.create_index("ix_admin_audit_actor", "admin_audit", ["actor"], unique=False)
    op.create_index(
        "idx_admin_audit_job_time",
        "admin_audit",
        ["job_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_admin_audit_job_time", table_name="admin_audit")
    op.drop_index("ix_admin_audit_actor", table_name="admin_audit")
    op.drop_table("admin_audit")
    op.drop_index("ix_degradation_decisions_job_id", table_name="degradation_decisions")
    op.drop_table("degradation_decisions")
