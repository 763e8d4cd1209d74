"""Persistent job store and claim scheduler backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, delete, select

from content_pipeline.jobs.errors import JobNotFoundError
from content_pipeline.jobs.models import (
    TERMINAL_STATUSES,
    AdminAction,
    AdminAuditView,
    CleanupResult,
    DegradationDecisionView,
    DegradationOutcomeKind,
    DegradationStrategy,
    FailureCategory,
    JobCreate,
    JobDetails,
    JobEventView,
    JobFailure,
    JobPayload,
    JobResult,
    JobRunView,
    JobStatus,
    JobView,
    RunOutcome,
    SubmitResult,
    SweepResult,
)
from content_pipeline.storage.alembic_runner import upgrade_head
from content_pipeline.storage.common import (
    build_sqlite_engine,
    from_db_datetime,
    from_db_datetime_or_none,
    to_db_datetime,
    utc_now,
)
from content_pipeline.storage.sqlmodel_models import (
    AdminAuditRow,
    DegradationDecisionRow,
    Job,
    JobEvent,
    JobRun,
    SweepRunRow,
)

logger = logging.getLogger(__name__)

WORKER_LOST_CODE = "worker_lost"


class JobRepository:
    """Queue persistence facade.

    Every write a worker makes is a conditional update keyed on the claim token
    (job_id, attempt, claimed_by, status=processing) and returns False when the
    pre-state no longer holds, so a cancelled or reclaimed job silently ignores
    late reports.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def submit_job(
        self,
        payload: JobCreate,
        *,
        completed_duplicate_since: datetime | None = None,
    ) -> SubmitResult:
        """Create a pending job, or return the job this submission duplicates.

        An idempotency key matches its job forever. A topic fingerprint only matches a
        pending or processing job, or one completed at or after completed_duplicate_since.
        The row is inserted before the fingerprint lookup, so the insert takes the SQLite
        write lock and concurrent submitters of one topic see each other in order.
        """

        if payload.idempotency_key is not None:
            existing = self.find_job_by_idempotency_key(payload.idempotency_key)
            if existing is not None:
                return SubmitResult(job=existing, created=False)

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = Job(
                job_id=job_id,
                idempotency_key=payload.idempotency_key,
                topic_fingerprint=payload.topic_fingerprint,
                status=JobStatus.PENDING.value,
                payload_json=json.dumps(payload.payload.to_dict(), ensure_ascii=False),
                priority=payload.priority,
                retry_count=0,
                max_retries=payload.max_retries,
                attempt=0,
                attempt_base=0,
                run_after=to_db_datetime(payload.run_after or now),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.flush()
                duplicate = self._find_topic_duplicate(
                    session=session,
                    payload=payload,
                    job_id=job_id,
                    completed_since=completed_duplicate_since,
                )
                if duplicate is not None:
                    existing = _to_job_view(duplicate)
                    session.rollback()
                    logger.info(
                        "Submission for topic %r resolved to job %s (status=%s)",
                        payload.payload.topic,
                        existing.job_id,
                        existing.status.value,
                    )
                    return SubmitResult(job=existing, created=False)
                self._add_event(
                    session=session,
                    job_id=job_id,
                    event_type="submitted",
                    status_from=None,
                    status_to=JobStatus.PENDING,
                    details={
                        "priority": payload.priority,
                        "max_retries": payload.max_retries,
                        "idempotency_key": payload.idempotency_key,
                        "topic_fingerprint": payload.topic_fingerprint,
                    },
                )
                session.commit()
            except IntegrityError:
                session.rollback()
                if payload.idempotency_key is None:
                    raise
                existing = self.find_job_by_idempotency_key(payload.idempotency_key)
                if existing is None:
                    raise
                logger.info(
                    "Duplicate submission resolved to job %s (key=%s)",
                    existing.job_id,
                    payload.idempotency_key,
                )
                return SubmitResult(job=existing, created=False)
            session.refresh(row)
            return SubmitResult(job=_to_job_view(row), created=True)

    def find_job(self, job_id: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def get_job(self, job_id: str) -> JobView:
        """Return a job or raise JobNotFoundError."""

        job = self.find_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def find_job_by_idempotency_key(self, key: str) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.idempotency_key == key)).one_or_none()
            return _to_job_view(row) if row is not None else None

    def _find_topic_duplicate(
        self,
        *,
        session: Session,
        payload: JobCreate,
        job_id: str,
        completed_since: datetime | None,
    ) -> Job | None:
        if payload.topic_fingerprint is None:
            return None
        live = col(Job.status).in_([JobStatus.PENDING.value, JobStatus.PROCESSING.value])
        matches = live
        if completed_since is not None:
            matches = or_(
                live,
                and_(
                    Job.status == JobStatus.COMPLETED.value,
                    col(Job.finished_at) >= to_db_datetime(completed_since),
                ),
            )
        statement = (
            select(Job)
            .where(
                Job.topic_fingerprint == payload.topic_fingerprint,
                Job.job_id != job_id,
                matches,
            )
            .order_by(col(Job.created_at).asc())
            .limit(1)
        )
        return session.exec(statement).first()

    def claim_next_job(self, *, worker_id: str) -> JobView | None:
        """Atomically claim the best eligible pending job, or return None when idle."""

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(Job)
                    .where(
                        Job.status == JobStatus.PENDING.value,
                        Job.run_after <= to_db_datetime(now),
                    )
                    .order_by(
                        col(Job.priority).asc(),
                        col(Job.created_at).asc(),
                        col(Job.job_id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(Job)
                    .where(
                        col(Job.job_id) == candidate.job_id,
                        col(Job.status) == JobStatus.PENDING.value,
                        col(Job.attempt) == candidate.attempt,
                    )
                    .values(
                        status=JobStatus.PROCESSING.value,
                        attempt=candidate.attempt + 1,
                        claimed_by=worker_id,
                        claimed_at=to_db_datetime(now),
                        heartbeat_at=to_db_datetime(now),
                        finished_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                claimed = session.exec(
                    select(Job)
                    .where(Job.job_id == candidate.job_id)
                    .execution_options(populate_existing=True),
                ).one()
                self._add_event(
                    session=session,
                    job_id=claimed.job_id,
                    event_type="claimed",
                    status_from=JobStatus.PENDING,
                    status_to=JobStatus.PROCESSING,
                    details={"worker_id": worker_id, "attempt": claimed.attempt},
                )
                session.commit()
                return _to_job_view(claimed)

    def touch_job(self, *, job_id: str, attempt: int, worker_id: str) -> bool:
        """Update heartbeat for the current claim."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*_claim_guard(job_id=job_id, attempt=attempt, worker_id=worker_id))
                .values(
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def holds_claim(self, *, job_id: str, attempt: int, worker_id: str) -> bool:
        """True while the given claim token is still the job's active claim."""

        guard = _claim_guard(job_id=job_id, attempt=attempt, worker_id=worker_id)
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(*guard)).one_or_none()
            return row is not None

    def complete_job(
        self,
        *,
        job_id: str,
        attempt: int,
        worker_id: str,
        result: JobResult,
        degradation_strategy: DegradationStrategy | None = None,
    ) -> bool:
        """Mark a claimed job as completed."""

        now = utc_now()
        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(Job)
                .where(*_claim_guard(job_id=job_id, attempt=attempt, worker_id=worker_id))
                .values(
                    status=JobStatus.COMPLETED.value,
                    result_json=json.dumps(result.to_dict(), ensure_ascii=False),
                    degradation_strategy_used=(
                        degradation_strategy.value if degradation_strategy is not None else None
                    ),
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="degraded" if degradation_strategy is not None else "completed",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.COMPLETED,
                details={
                    "attempt": attempt,
                    "external_id": result.external_id,
                    "degradation_strategy": (
                        degradation_strategy.value if degradation_strategy is not None else None
                    ),
                    "manual_review": result.manual_review,
                    "manual_publish": result.manual_publish,
                },
            )
            session.commit()
            return True

    def requeue_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        attempt: int,
        worker_id: str,
        run_after: datetime,
        failure: JobFailure,
        consume_retry: bool = True,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Return a claimed job to pending for another attempt.

        With consume_retry the update also requires retry_count < max_retries, so
        the retry ceiling holds even if the caller raced with an operator.
        """

        now = utc_now()
        conditions = list(_claim_guard(job_id=job_id, attempt=attempt, worker_id=worker_id))
        values: dict[str, Any] = {
            "status": JobStatus.PENDING.value,
            "run_after": to_db_datetime(run_after),
            "claimed_by": None,
            "claimed_at": None,
            "heartbeat_at": None,
            "last_error_category": failure.category.value,
            "last_error_message": failure.message,
            "last_error_code": failure.reason_code,
            "updated_at": to_db_datetime(now),
        }
        if consume_retry:
            conditions.append(col(Job.retry_count) < col(Job.max_retries))
            values["retry_count"] = col(Job.retry_count) + 1

        with Session(self.engine) as session:
            result = session.exec(sa_update(Job).where(*conditions).values(**values))
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="requeued",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.PENDING,
                details={
                    **failure.to_event_details(),
                    "attempt": attempt,
                    "run_after": from_db_datetime(run_after).isoformat(),
                    "consumed_retry": consume_retry,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def fail_job(
        self,
        *,
        job_id: str,
        attempt: int,
        worker_id: str,
        failure: JobFailure,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move a claimed job to the terminal error state."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*_claim_guard(job_id=job_id, attempt=attempt, worker_id=worker_id))
                .values(
                    status=JobStatus.ERROR.value,
                    last_error_category=failure.category.value,
                    last_error_message=failure.message,
                    last_error_code=failure.reason_code,
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="terminal",
                status_from=JobStatus.PROCESSING,
                status_to=JobStatus.ERROR,
                details={**failure.to_event_details(), "attempt": attempt, **(details or {})},
            )
            session.commit()
            return True

    def start_run(self, *, job: JobView, worker_id: str) -> int:
        """Open the per-attempt run row for a freshly claimed job."""

        with Session(self.engine) as session:
            row = JobRun(
                job_id=job.job_id,
                attempt_no=job.attempt,
                worker_id=worker_id,
                started_at=to_db_datetime(job.claimed_at or utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.run_id or 0

    def close_run(
        self,
        *,
        run_id: int,
        outcome: RunOutcome,
        error_category: FailureCategory | None = None,
        error_message: str | None = None,
        degradation_strategy: DegradationStrategy | None = None,
    ) -> bool:
        """Close a run exactly once; closing an already closed run is a no-op."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(JobRun, run_id)
            if row is None or row.finished_at is not None:
                return False
            started_at = from_db_datetime(row.started_at)
            result = session.exec(
                sa_update(JobRun)
                .where(col(JobRun.run_id) == run_id, col(JobRun.finished_at).is_(None))
                .values(
                    finished_at=to_db_datetime(now),
                    duration_ms=max(0, int((now - started_at).total_seconds() * 1000)),
                    outcome=outcome.value,
                    error_category=error_category.value if error_category is not None else None,
                    error_message=error_message,
                    degradation_strategy=(
                        degradation_strategy.value if degradation_strategy is not None else None
                    ),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def record_degradation_decision(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        run_id: int | None,
        failure_category: FailureCategory,
        attempt_count: int,
        strategy: DegradationStrategy | None,
        outcome: DegradationOutcomeKind,
        details: dict[str, object] | None = None,
    ) -> int:
        with Session(self.engine) as session:
            row = DegradationDecisionRow(
                job_id=job_id,
                run_id=run_id,
                failure_category=failure_category.value,
                attempt_count=attempt_count,
                strategy=strategy.value if strategy is not None else None,
                outcome=outcome.value,
                details_json=_dump_details(details),
                created_at=to_db_datetime(utc_now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return row.decision_id or 0

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        limit: int = 50,
    ) -> list[JobView]:
        """List recent jobs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(Job).order_by(col(Job.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream, runs and degradation decisions."""

        with Session(self.engine) as session:
            job = session.exec(select(Job).where(Job.job_id == job_id)).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(JobEvent)
                .where(JobEvent.job_id == job_id)
                .order_by(col(JobEvent.created_at).asc(), col(JobEvent.event_id).asc()),
            ).all()
            run_rows = session.exec(
                select(JobRun)
                .where(JobRun.job_id == job_id)
                .order_by(col(JobRun.attempt_no).asc()),
            ).all()
            decision_rows = session.exec(
                select(DegradationDecisionRow)
                .where(DegradationDecisionRow.job_id == job_id)
                .order_by(col(DegradationDecisionRow.decision_id).asc()),
            ).all()
            return JobDetails(
                job=_to_job_view(job),
                events=[_to_event_view(row) for row in event_rows],
                runs=[_to_run_view(row) for row in run_rows],
                decisions=[_to_decision_view(row) for row in decision_rows],
            )

    def count_processing(self) -> int:
        with Session(self.engine) as session:
            return int(
                session.exec(
                    select(func.count())
                    .select_from(Job)
                    .where(Job.status == JobStatus.PROCESSING.value),
                ).one(),
            )

    def list_stale_jobs(self, *, cutoff: datetime, limit: int) -> list[JobView]:
        """Processing jobs whose latest claim/heartbeat is older than cutoff, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(*_stale_conditions(cutoff))
                .order_by(col(Job.claimed_at).asc(), col(Job.job_id).asc())
                .limit(limit),
            ).all()
        return [_to_job_view(row) for row in rows]

    def reclaim_stale_job(self, *, job: JobView, cutoff: datetime) -> JobStatus | None:
        """Reset or fail one stale job; None when it reported or was re-claimed meanwhile."""

        now = utc_now()
        failure_message = (
            f"Worker {job.claimed_by or 'unknown'} stopped heartbeating during attempt "
            f"{job.attempt}"
        )
        values: dict[str, Any] = {
            "last_error_category": FailureCategory.INTERNAL.value,
            "last_error_message": failure_message,
            "last_error_code": WORKER_LOST_CODE,
            "updated_at": to_db_datetime(now),
        }
        if job.retry_count < job.max_retries:
            new_status = JobStatus.PENDING
            values.update(
                status=new_status.value,
                retry_count=job.retry_count + 1,
                run_after=to_db_datetime(now),
                claimed_by=None,
                claimed_at=None,
                heartbeat_at=None,
            )
        else:
            new_status = JobStatus.ERROR
            values.update(status=new_status.value, finished_at=to_db_datetime(now))

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job.job_id,
                    col(Job.attempt) == job.attempt,
                    col(Job.retry_count) == job.retry_count,
                    *_stale_conditions(cutoff),
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            open_runs = session.exec(
                select(JobRun).where(
                    JobRun.job_id == job.job_id,
                    JobRun.attempt_no == job.attempt,
                    col(JobRun.finished_at).is_(None),
                ),
            ).all()
            for run in open_runs:
                started_at = from_db_datetime(run.started_at)
                run.finished_at = to_db_datetime(now)
                run.duration_ms = max(0, int((now - started_at).total_seconds() * 1000))
                run.outcome = RunOutcome.ABANDONED.value
                run.error_category = FailureCategory.INTERNAL.value
                run.error_message = failure_message
                session.add(run)
            self._add_event(
                session=session,
                job_id=job.job_id,
                event_type="swept",
                status_from=JobStatus.PROCESSING,
                status_to=new_status,
                details={
                    "attempt": job.attempt,
                    "claimed_by": job.claimed_by,
                    "retry_count": job.retry_count,
                    "reason_code": WORKER_LOST_CODE,
                },
            )
            session.commit()
            return new_status

    def record_sweep_run(self, result: SweepResult) -> None:
        with Session(self.engine) as session:
            session.add(
                SweepRunRow(
                    sweep_id=result.sweep_id,
                    started_at=to_db_datetime(result.started_at),
                    finished_at=to_db_datetime(result.finished_at),
                    dry_run=result.dry_run,
                    jobs_checked=result.jobs_checked,
                    stale_found=result.stale_found,
                    jobs_reset=result.jobs_reset,
                    jobs_failed=result.jobs_failed,
                    duration_ms=result.duration_ms,
                ),
            )
            session.commit()

    def list_sweep_runs(
        self,
        *,
        limit: int = 20,
        since: datetime | None = None,
    ) -> list[SweepResult]:
        with Session(self.engine) as session:
            statement = select(SweepRunRow).order_by(col(SweepRunRow.started_at).desc())
            if since is not None:
                statement = statement.where(SweepRunRow.started_at >= to_db_datetime(since))
            rows = session.exec(statement.limit(limit)).all()
        return [
            SweepResult(
                sweep_id=row.sweep_id,
                started_at=from_db_datetime(row.started_at),
                finished_at=from_db_datetime(row.finished_at),
                dry_run=row.dry_run,
                jobs_checked=row.jobs_checked,
                stale_found=row.stale_found,
                jobs_reset=row.jobs_reset,
                jobs_failed=row.jobs_failed,
                duration_ms=row.duration_ms,
            )
            for row in rows
        ]

    def apply_admin_change(  # noqa: PLR0913
        self,
        *,
        job: JobView,
        action: AdminAction,
        new_status: JobStatus,
        new_retry_count: int,
        actor: str,
        reason: str,
        limit_overridden: bool = False,
        start_new_sequence: bool = False,
    ) -> bool:
        """Apply an operator transition keyed on the observed state, with its audit entry."""

        now = utc_now()
        values: dict[str, Any] = {
            "status": new_status.value,
            "retry_count": new_retry_count,
            "updated_at": to_db_datetime(now),
        }
        if new_status == JobStatus.PENDING:
            values.update(
                run_after=to_db_datetime(now),
                claimed_by=None,
                claimed_at=None,
                heartbeat_at=None,
                finished_at=None,
                result_json=None,
            )
        elif new_status in {JobStatus.CANCELLED, JobStatus.ERROR}:
            values["finished_at"] = to_db_datetime(now)
        if new_status == JobStatus.ERROR:
            values.update(
                last_error_message=reason,
                last_error_code="admin_set_status",
            )
        if start_new_sequence:
            values.update(attempt_base=job.attempt, degradation_strategy_used=None)

        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.job_id) == job.job_id,
                    col(Job.status) == job.status.value,
                    col(Job.attempt) == job.attempt,
                    col(Job.retry_count) == job.retry_count,
                )
                .values(**values),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.add(
                AdminAuditRow(
                    actor=actor,
                    action=action.value,
                    job_id=job.job_id,
                    reason=reason,
                    previous_status=job.status.value,
                    new_status=new_status.value,
                    previous_retry_count=job.retry_count,
                    new_retry_count=new_retry_count,
                    limit_overridden=limit_overridden,
                    created_at=to_db_datetime(now),
                ),
            )
            self._add_event(
                session=session,
                job_id=job.job_id,
                event_type="cancelled" if new_status == JobStatus.CANCELLED else "admin_action",
                status_from=job.status,
                status_to=new_status,
                details={
                    "actor": actor,
                    "action": action.value,
                    "reason": reason,
                    "limit_overridden": limit_overridden,
                    "new_sequence": start_new_sequence,
                },
            )
            session.commit()
            return True

    def list_audit(self, *, job_id: str | None = None, limit: int = 100) -> list[AdminAuditView]:
        with Session(self.engine) as session:
            statement = select(AdminAuditRow).order_by(col(AdminAuditRow.audit_id).asc())
            if job_id is not None:
                statement = statement.where(AdminAuditRow.job_id == job_id)
            rows = session.exec(statement.limit(limit)).all()
        return [
            AdminAuditView(
                audit_id=row.audit_id or 0,
                actor=row.actor,
                action=AdminAction(row.action),
                job_id=row.job_id,
                reason=row.reason,
                previous_status=JobStatus(row.previous_status),
                new_status=JobStatus(row.new_status),
                previous_retry_count=row.previous_retry_count,
                new_retry_count=row.new_retry_count,
                limit_overridden=bool(row.limit_overridden),
                created_at=from_db_datetime(row.created_at),
            )
            for row in rows
        ]

    def purge_history(  # noqa: PLR0913
        self,
        *,
        run_cutoff: datetime,
        event_cutoff: datetime,
        sweep_cutoff: datetime,
        audit_cutoff: datetime,
        limit: int,
        dry_run: bool = False,
    ) -> CleanupResult:
        """Delete history rows older than their cutoff, at most limit rows per table.

        Runs, events, degradation decisions and audit entries are only eligible while
        their job is completed, errored or cancelled; a job put back to pending keeps
        its history. Runs must also be closed. Degradation decisions follow the run
        cutoff. A dry run deletes nothing and reports the eligible counts.
        """

        finished_jobs = select(Job.job_id).where(
            col(Job.status).in_([status.value for status in TERMINAL_STATUSES]),
        )
        result = CleanupResult(dry_run=dry_run)
        with Session(self.engine) as session:
            result.decisions_deleted = _purge(
                session,
                DegradationDecisionRow,
                col(DegradationDecisionRow.decision_id),
                col(DegradationDecisionRow.job_id).in_(finished_jobs),
                col(DegradationDecisionRow.created_at) < to_db_datetime(run_cutoff),
                limit=limit,
                dry_run=dry_run,
            )
            result.runs_deleted = _purge(
                session,
                JobRun,
                col(JobRun.run_id),
                col(JobRun.job_id).in_(finished_jobs),
                col(JobRun.finished_at).is_not(None),
                col(JobRun.finished_at) < to_db_datetime(run_cutoff),
                limit=limit,
                dry_run=dry_run,
            )
            result.events_deleted = _purge(
                session,
                JobEvent,
                col(JobEvent.event_id),
                col(JobEvent.job_id).in_(finished_jobs),
                col(JobEvent.created_at) < to_db_datetime(event_cutoff),
                limit=limit,
                dry_run=dry_run,
            )
            result.audit_deleted = _purge(
                session,
                AdminAuditRow,
                col(AdminAuditRow.audit_id),
                col(AdminAuditRow.job_id).in_(finished_jobs),
                col(AdminAuditRow.created_at) < to_db_datetime(audit_cutoff),
                limit=limit,
                dry_run=dry_run,
            )
            result.sweeps_deleted = _purge(
                session,
                SweepRunRow,
                col(SweepRunRow.sweep_id),
                col(SweepRunRow.started_at) < to_db_datetime(sweep_cutoff),
                limit=limit,
                dry_run=dry_run,
            )
            if dry_run:
                session.rollback()
            else:
                session.commit()
        return result

    def count_jobs_by_status(self) -> dict[JobStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count()).group_by(Job.status),
            ).all()
        counts = dict.fromkeys(JobStatus, 0)
        for status, count in rows:
            counts[JobStatus(status)] = int(count)
        return counts

    def list_jobs_for_metrics(self, *, since: datetime) -> list[JobView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job).where(Job.updated_at >= to_db_datetime(since)),
            ).all()
        return [_to_job_view(row) for row in rows]

    def list_runs_for_metrics(self, *, since: datetime) -> list[JobRunView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobRun)
                .where(JobRun.started_at >= to_db_datetime(since))
                .order_by(col(JobRun.started_at).asc()),
            ).all()
        return [_to_run_view(row) for row in rows]

    def list_decisions_for_metrics(self, *, since: datetime) -> list[DegradationDecisionView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(DegradationDecisionRow).where(
                    DegradationDecisionRow.created_at >= to_db_datetime(since),
                ),
            ).all()
        return [_to_decision_view(row) for row in rows]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            JobEvent(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=_dump_details(details),
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _purge(
    session: Session,
    model: type[Any],
    key: Any,
    *conditions: Any,
    limit: int,
    dry_run: bool,
) -> int:
    ids = list(session.exec(select(key).where(*conditions).order_by(key).limit(limit)).all())
    if ids and not dry_run:
        session.exec(delete(model).where(key.in_(ids)))
    return len(ids)


def _claim_guard(*, job_id: str, attempt: int, worker_id: str) -> tuple[Any, ...]:
    return (
        col(Job.job_id) == job_id,
        col(Job.attempt) == attempt,
        col(Job.claimed_by) == worker_id,
        col(Job.status) == JobStatus.PROCESSING.value,
    )


def _stale_conditions(cutoff: datetime) -> tuple[Any, ...]:
    db_cutoff = to_db_datetime(cutoff)
    return (
        col(Job.status) == JobStatus.PROCESSING.value,
        col(Job.claimed_at) < db_cutoff,
        or_(col(Job.heartbeat_at).is_(None), col(Job.heartbeat_at) < db_cutoff),
    )


def _dump_details(details: dict[str, object] | None) -> str | None:
    if not details:
        return None
    return json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)


def _load_details(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _to_job_view(row: Job) -> JobView:
    result = _load_details(row.result_json)
    return JobView(
        job_id=row.job_id,
        idempotency_key=row.idempotency_key,
        status=JobStatus(row.status),
        payload=JobPayload.from_dict(_load_details(row.payload_json)),
        result=JobResult.from_dict(result) if result else None,
        priority=row.priority,
        retry_count=row.retry_count,
        max_retries=row.max_retries,
        attempt=row.attempt,
        attempt_base=row.attempt_base,
        run_after=from_db_datetime(row.run_after),
        claimed_by=row.claimed_by,
        claimed_at=from_db_datetime_or_none(row.claimed_at),
        heartbeat_at=from_db_datetime_or_none(row.heartbeat_at),
        last_error_category=(
            FailureCategory(row.last_error_category)
            if row.last_error_category is not None
            else None
        ),
        last_error_message=row.last_error_message,
        last_error_code=row.last_error_code,
        degradation_strategy_used=(
            DegradationStrategy(row.degradation_strategy_used)
            if row.degradation_strategy_used is not None
            else None
        ),
        created_at=from_db_datetime(row.created_at),
        updated_at=from_db_datetime(row.updated_at),
        finished_at=from_db_datetime_or_none(row.finished_at),
        topic_fingerprint=row.topic_fingerprint,
    )


def _to_event_view(row: JobEvent) -> JobEventView:
    return JobEventView(
        event_id=row.event_id or 0,
        job_id=row.job_id,
        event_type=row.event_type,
        status_from=JobStatus(row.status_from) if row.status_from is not None else None,
        status_to=JobStatus(row.status_to) if row.status_to is not None else None,
        created_at=from_db_datetime(row.created_at),
        details=_load_details(row.details_json),
    )


def _to_run_view(row: JobRun) -> JobRunView:
    return JobRunView(
        run_id=row.run_id or 0,
        job_id=row.job_id,
        attempt_no=row.attempt_no,
        worker_id=row.worker_id,
        started_at=from_db_datetime(row.started_at),
        finished_at=from_db_datetime_or_none(row.finished_at),
        duration_ms=row.duration_ms,
        outcome=RunOutcome(row.outcome) if row.outcome is not None else None,
        error_category=(
            FailureCategory(row.error_category) if row.error_category is not None else None
        ),
        error_message=row.error_message,
        degradation_strategy=(
            DegradationStrategy(row.degradation_strategy)
            if row.degradation_strategy is not None
            else None
        ),
    )


def _to_decision_view(row: DegradationDecisionRow) -> DegradationDecisionView:
    return DegradationDecisionView(
        decision_id=row.decision_id or 0,
        job_id=row.job_id,
        run_id=row.run_id,
        failure_category=FailureCategory(row.failure_category),
        attempt_count=row.attempt_count,
        strategy=DegradationStrategy(row.strategy) if row.strategy is not None else None,
        outcome=DegradationOutcomeKind(row.outcome),
        details=_load_details(row.details_json),
        created_at=from_db_datetime(row.created_at),
    )
