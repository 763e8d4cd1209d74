"""SQLModel ORM tables for the job store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class Job(SQLModel, table=True):
    __tablename__ = "jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_jobs_claim_order", "status", "priority", "created_at"),
        Index("idx_jobs_processing_claimed_at", "status", "claimed_at"),
        Index("idx_jobs_topic_fingerprint", "topic_fingerprint", "status"),
    )

    job_id: str = Field(primary_key=True)
    idempotency_key: str | None = Field(
        default=None,
        sa_column=Column(String, unique=True, nullable=True),
    )
    topic_fingerprint: str | None = None
    status: str = Field(index=True)
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    result_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    priority: int = 100
    retry_count: int = 0
    max_retries: int = 3
    attempt: int = 0
    attempt_base: int = 0
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    claimed_by: str | None = None
    claimed_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    heartbeat_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    last_error_category: str | None = None
    last_error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    last_error_code: str | None = None
    degradation_strategy_used: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


class JobRun(SQLModel, table=True):
    __tablename__ = "job_runs"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint("job_id", "attempt_no", name="uq_job_runs_job_attempt_no"),
        Index("idx_job_runs_started_at", "started_at"),
    )

    run_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    attempt_no: int
    worker_id: str
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    duration_ms: int | None = None
    outcome: str | None = None
    error_category: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    degradation_strategy: str | None = None


class JobEvent(SQLModel, table=True):
    __tablename__ = "job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_job_events_job_time", "job_id", "created_at"),)

    event_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class DegradationDecisionRow(SQLModel, table=True):
    __tablename__ = "degradation_decisions"  # type: ignore[bad-override]

    decision_id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    run_id: int | None = Field(
        default=None,
        sa_column=Column(
            Integer,
            ForeignKey("job_runs.run_id", ondelete="SET NULL"),
            nullable=True,
        ),
    )
    failure_category: str
    attempt_count: int
    strategy: str | None = None
    outcome: str
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AdminAuditRow(SQLModel, table=True):
    __tablename__ = "admin_audit"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_admin_audit_job_time", "job_id", "created_at"),)

    audit_id: int | None = Field(default=None, primary_key=True)
    actor: str = Field(index=True)
    action: str
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("jobs.job_id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    reason: str = Field(sa_column=Column(Text, nullable=False))
    previous_status: str
    new_status: str
    previous_retry_count: int
    new_retry_count: int
    limit_overridden: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SweepRunRow(SQLModel, table=True):
    __tablename__ = "sweep_runs"  # type: ignore[bad-override]

    sweep_id: str = Field(primary_key=True)
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    finished_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    dry_run: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    jobs_checked: int = 0
    stale_found: int = 0
    jobs_reset: int = 0
    jobs_failed: int = 0
    duration_ms: int = 0
