"""Operator overrides: manual retry, cancel and forced status changes, all audited."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from content_pipeline.jobs.errors import (
    AdminOperationError,
    ConcurrentModificationError,
    InvalidTransitionError,
    RetryLimitReachedError,
)
from content_pipeline.jobs.events import EventSink
from content_pipeline.jobs.models import (
    AdminAction,
    AdminAuditView,
    JobStatus,
    JobView,
    LifecycleEvent,
)
from content_pipeline.jobs.repository import JobRepository
from content_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)

MIN_REASON_CHARS = 10
MAX_REASON_CHARS = 500

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.CANCELLED, JobStatus.ERROR}),
    JobStatus.PROCESSING: frozenset({JobStatus.PENDING, JobStatus.CANCELLED, JobStatus.ERROR}),
    JobStatus.ERROR: frozenset({JobStatus.PENDING}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


@dataclass(slots=True)
class BulkRetryResult:
    """Per-job outcome of a bulk retry; failures never abort the batch."""

    retried: list[JobView] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


def validate_reason(reason: str) -> str:
    normalized = reason.strip()
    if not MIN_REASON_CHARS <= len(normalized) <= MAX_REASON_CHARS:
        raise AdminOperationError(
            f"Reason must be {MIN_REASON_CHARS}-{MAX_REASON_CHARS} characters, "
            f"got {len(normalized)}.",
        )
    return normalized


def can_transition(current: JobStatus, requested: JobStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


class AdminService:
    """Applies operator actions as single conditional transitions plus audit entries."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        actor: str,
        event_sink: EventSink | None = None,
    ) -> None:
        if not actor.strip():
            raise AdminOperationError("Admin actor must not be empty.")
        self.repository = repository
        self.actor = actor.strip()
        self.event_sink = event_sink

    def retry(self, job_id: str, reason: str, *, override_limit: bool = False) -> JobView:
        """Put an errored (or degraded-completed) job back to pending as a fresh sequence.

        At the retry ceiling this is rejected unless override_limit is set, in which
        case retry_count goes one past max_retries and the audit entry is flagged.
        """

        return self._retry(job_id, reason, override_limit=override_limit, action=AdminAction.RETRY)

    def bulk_retry(
        self,
        job_ids: list[str] | tuple[str, ...],
        reason: str,
        *,
        override_limit: bool = False,
    ) -> BulkRetryResult:
        normalized_reason = validate_reason(reason)
        result = BulkRetryResult()
        for job_id in dict.fromkeys(job_ids):
            try:
                job = self._retry(
                    job_id,
                    normalized_reason,
                    override_limit=override_limit,
                    action=AdminAction.BULK_RETRY,
                )
            except AdminOperationError as error:
                result.failed[job_id] = str(error)
                continue
            result.retried.append(job)
        logger.info(
            "Bulk retry by %s: retried=%d failed=%d",
            self.actor,
            len(result.retried),
            len(result.failed),
        )
        return result

    def cancel(self, job_id: str, reason: str) -> JobView:
        """Cancel a pending or processing job; a running worker's later reports become no-ops."""

        return self._set_status(job_id, JobStatus.CANCELLED, reason, action=AdminAction.CANCEL)

    def set_status(self, job_id: str, new_status: JobStatus, reason: str) -> JobView:
        return self._set_status(job_id, new_status, reason, action=AdminAction.SET_STATUS)

    def audit_log(self, job_id: str | None = None, *, limit: int = 100) -> list[AdminAuditView]:
        return self.repository.list_audit(job_id=job_id, limit=limit)

    def _retry(
        self,
        job_id: str,
        reason: str,
        *,
        override_limit: bool,
        action: AdminAction,
    ) -> JobView:
        normalized_reason = validate_reason(reason)
        job = self.repository.get_job(job_id)
        if job.status == JobStatus.COMPLETED:
            if job.degradation_strategy_used is None:
                raise InvalidTransitionError(
                    job_id,
                    job.status.value,
                    JobStatus.PENDING.value,
                    "only degraded completions can be retried",
                )
        elif job.status != JobStatus.ERROR:
            raise InvalidTransitionError(
                job_id,
                job.status.value,
                JobStatus.PENDING.value,
                "retry is allowed from error or degraded completion",
            )

        limit_overridden = False
        new_retry_count = job.retry_count
        if job.retry_count >= job.max_retries:
            if not override_limit:
                raise RetryLimitReachedError(job_id, job.retry_count, job.max_retries)
            limit_overridden = True
            new_retry_count = job.max_retries + 1

        applied = self.repository.apply_admin_change(
            job=job,
            action=action,
            new_status=JobStatus.PENDING,
            new_retry_count=new_retry_count,
            actor=self.actor,
            reason=normalized_reason,
            limit_overridden=limit_overridden,
            start_new_sequence=True,
        )
        if not applied:
            raise ConcurrentModificationError(job_id, action.value)
        logger.info(
            "Job %s retried by %s (%s -> pending, retry_count=%d, override=%s)",
            job_id,
            self.actor,
            job.status.value,
            new_retry_count,
            limit_overridden,
        )
        self._emit(job, action, JobStatus.PENDING)
        return self.repository.get_job(job_id)

    def _set_status(
        self,
        job_id: str,
        new_status: JobStatus,
        reason: str,
        *,
        action: AdminAction,
    ) -> JobView:
        normalized_reason = validate_reason(reason)
        job = self.repository.get_job(job_id)
        if not can_transition(job.status, new_status):
            raise InvalidTransitionError(job_id, job.status.value, new_status.value)
        # Reopening an errored job spends an attempt; only retry may pass the ceiling.
        if (
            job.status == JobStatus.ERROR
            and new_status == JobStatus.PENDING
            and job.retry_count >= job.max_retries
        ):
            raise RetryLimitReachedError(job_id, job.retry_count, job.max_retries)

        applied = self.repository.apply_admin_change(
            job=job,
            action=action,
            new_status=new_status,
            new_retry_count=job.retry_count,
            actor=self.actor,
            reason=normalized_reason,
        )
        if not applied:
            raise ConcurrentModificationError(job_id, action.value)
        logger.info(
            "Job %s moved %s -> %s by %s",
            job_id,
            job.status.value,
            new_status.value,
            self.actor,
        )
        self._emit(job, action, new_status)
        return self.repository.get_job(job_id)

    def _emit(self, job: JobView, action: AdminAction, new_status: JobStatus) -> None:
        if self.event_sink is None:
            return
        self.event_sink.emit(
            LifecycleEvent(
                event_type="cancelled" if new_status == JobStatus.CANCELLED else "admin_action",
                job_id=job.job_id,
                occurred_at=utc_now(),
                status_from=job.status,
                status_to=new_status,
                details={"actor": self.actor, "action": action.value},
            ),
        )
