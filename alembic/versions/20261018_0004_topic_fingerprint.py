"""Split derived topic keys out of idempotency_key into topic_fingerprint."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0004"
down_revision = "20261001_0003"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("jobs", sa.Column("topic_fingerprint", sa.String(), nullable=True))
    op.create_index(
        "idx_jobs_topic_fingerprint",
        "jobs",
        ["topic_fingerprint", "status"],
        unique=False,
    )
    # Derived keys were stored as idempotency keys and blocked resubmission forever.
    op.execute(
        """
        UPDATE jobs
        SET topic_fingerprint = idempotency_key,
            idempotency_key = NULL
        WHERE idempotency_key LIKE 'topic:%'
        """,
    )


def downgrade() -> None:
    op.drop_index("idx_jobs_topic_fingerprint", table_name="jobs")
    with op.batch_alter_table("jobs") as batch_op:
        batch_op.drop_column("topic_fingerprint")
