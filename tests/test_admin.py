from __future__ import annotations

import allure
import pytest

from conftest import submit
from content_pipeline.jobs.admin import AdminService, can_transition, validate_reason
from content_pipeline.jobs.errors import (
    AdminOperationError,
    InvalidTransitionError,
    JobNotFoundError,
    RetryLimitReachedError,
)
from content_pipeline.jobs.events import RecordingEventSink
from content_pipeline.jobs.models import (
    AdminAction,
    DegradationStrategy,
    FailureCategory,
    JobFailure,
    JobResult,
    JobStatus,
    JobView,
)
from content_pipeline.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Admin Overrides"),
]

REASON = "Upstream model outage is resolved"


def _admin(repository: JobRepository, **kwargs: object) -> AdminService:
    return AdminService(repository=repository, actor="ops@example.com", **kwargs)


def _errored(repository: JobRepository, *, job_id: str = "job-1", max_retries: int = 3) -> JobView:
    submit(repository, job_id=job_id, max_retries=max_retries)
    claimed = repository.claim_next_job(worker_id="w1")
    assert claimed is not None
    assert repository.fail_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="w1",
        failure=JobFailure(
            category=FailureCategory.GENERATION,
            retryable=False,
            reason_code="generation_quota_exhausted",
            message="quota exhausted",
        ),
    )
    return repository.get_job(claimed.job_id)


def _completed(
    repository: JobRepository,
    *,
    strategy: DegradationStrategy | None,
) -> JobView:
    submit(repository, job_id="job-done")
    claimed = repository.claim_next_job(worker_id="w1")
    assert claimed is not None
    assert repository.complete_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="w1",
        result=JobResult(title="Edge caching: An Overview", body="body", manual_review=True),
        degradation_strategy=strategy,
    )
    return repository.get_job(claimed.job_id)


def test_retry_from_error_starts_a_fresh_attempt_sequence(repository: JobRepository) -> None:
    errored = _errored(repository)
    sink = RecordingEventSink()

    job = _admin(repository, event_sink=sink).retry(errored.job_id, REASON)

    assert job.status == JobStatus.PENDING
    assert job.retry_count == 0
    assert job.attempt_base == errored.attempt
    assert job.finished_at is None
    reclaimed = repository.claim_next_job(worker_id="w2")
    assert reclaimed is not None
    assert reclaimed.attempt == 2
    assert reclaimed.attempt_count == 0

    audit = repository.list_audit(job_id=errored.job_id)
    assert len(audit) == 1
    entry = audit[0]
    assert entry.actor == "ops@example.com"
    assert entry.action == AdminAction.RETRY
    assert entry.previous_status == JobStatus.ERROR
    assert entry.new_status == JobStatus.PENDING
    assert entry.limit_overridden is False
    assert sink.event_types(errored.job_id) == ["admin_action"]


def test_retry_at_ceiling_requires_override(repository: JobRepository) -> None:
    errored = _errored(repository, max_retries=0)
    admin = _admin(repository)

    with pytest.raises(RetryLimitReachedError):
        admin.retry(errored.job_id, REASON)
    assert repository.list_audit() == []

    job = admin.retry(errored.job_id, REASON, override_limit=True)

    assert job.status == JobStatus.PENDING
    assert job.retry_count == 1
    entry = repository.list_audit(job_id=errored.job_id)[0]
    assert entry.limit_overridden is True
    assert entry.previous_retry_count == 0
    assert entry.new_retry_count == 1


@pytest.mark.parametrize("reason", ["", "too short", "x" * 501])
def test_reason_length_is_enforced(repository: JobRepository, reason: str) -> None:
    errored = _errored(repository)

    with pytest.raises(AdminOperationError, match="Reason must be"):
        _admin(repository).retry(errored.job_id, reason)

    assert repository.get_job(errored.job_id).status == JobStatus.ERROR
    assert repository.list_audit() == []


def test_validate_reason_strips_whitespace() -> None:
    assert validate_reason("   Manual check done   ") == "Manual check done"


def test_actor_is_required(repository: JobRepository) -> None:
    with pytest.raises(AdminOperationError, match="actor"):
        AdminService(repository=repository, actor="  ")


def test_only_degraded_completions_can_be_retried(repository: JobRepository) -> None:
    completed = _completed(repository, strategy=None)

    with pytest.raises(InvalidTransitionError, match="degraded"):
        _admin(repository).retry(completed.job_id, REASON)


def test_degraded_completion_retry_clears_result(repository: JobRepository) -> None:
    degraded = _completed(repository, strategy=DegradationStrategy.TEMPLATE_FALLBACK)

    job = _admin(repository).retry(degraded.job_id, "Template output needs a real article")

    assert job.status == JobStatus.PENDING
    assert job.result is None
    assert job.degradation_strategy_used is None


def test_cancel_pending_job(repository: JobRepository) -> None:
    pending = submit(repository)

    job = _admin(repository).cancel(pending.job_id, "Topic withdrawn by the editor")

    assert job.status == JobStatus.CANCELLED
    assert job.finished_at is not None
    assert repository.claim_next_job(worker_id="w1") is None
    details = repository.get_job_details(job_id=pending.job_id)
    assert details is not None
    assert details.events[-1].event_type == "cancelled"
    assert details.events[-1].details["actor"] == "ops@example.com"


def test_cancelled_processing_job_rejects_worker_report(repository: JobRepository) -> None:
    submit(repository)
    claimed = repository.claim_next_job(worker_id="w1")
    assert claimed is not None

    _admin(repository).cancel(claimed.job_id, "Topic withdrawn by the editor")

    assert not repository.complete_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="w1",
        result=JobResult(title="Late article", body="body"),
    )
    assert repository.get_job(claimed.job_id).status == JobStatus.CANCELLED


def test_terminal_jobs_cannot_be_cancelled(repository: JobRepository) -> None:
    completed = _completed(repository, strategy=None)

    with pytest.raises(InvalidTransitionError):
        _admin(repository).cancel(completed.job_id, "Topic withdrawn by the editor")


def test_set_status_follows_transition_table(repository: JobRepository) -> None:
    pending = submit(repository)
    admin = _admin(repository)

    job = admin.set_status(pending.job_id, JobStatus.ERROR, "Duplicate of an existing article")

    assert job.status == JobStatus.ERROR
    assert job.last_error_code == "admin_set_status"
    assert job.last_error_message == "Duplicate of an existing article"
    with pytest.raises(InvalidTransitionError):
        admin.set_status(pending.job_id, JobStatus.COMPLETED, REASON)
    assert repository.list_audit(job_id=pending.job_id)[0].action == AdminAction.SET_STATUS


def test_set_status_cannot_reopen_errored_job_at_ceiling(repository: JobRepository) -> None:
    errored = _errored(repository, max_retries=0)
    admin = _admin(repository)

    with pytest.raises(RetryLimitReachedError):
        admin.set_status(errored.job_id, JobStatus.PENDING, REASON)

    stored = repository.get_job(errored.job_id)
    assert stored.status == JobStatus.ERROR
    assert stored.retry_count == 0
    assert repository.list_audit() == []


def test_set_status_reopens_errored_job_below_ceiling(repository: JobRepository) -> None:
    errored = _errored(repository, max_retries=3)

    job = _admin(repository).set_status(errored.job_id, JobStatus.PENDING, REASON)

    assert job.status == JobStatus.PENDING
    assert job.retry_count == errored.retry_count
    assert repository.list_audit(job_id=errored.job_id)[0].limit_overridden is False


def test_transition_table() -> None:
    assert can_transition(JobStatus.PROCESSING, JobStatus.PENDING)
    assert can_transition(JobStatus.ERROR, JobStatus.PENDING)
    assert not can_transition(JobStatus.PENDING, JobStatus.COMPLETED)
    assert not can_transition(JobStatus.CANCELLED, JobStatus.PENDING)
    assert not can_transition(JobStatus.COMPLETED, JobStatus.ERROR)


def test_bulk_retry_reports_each_job(repository: JobRepository) -> None:
    errored = _errored(repository, job_id="job-err")
    pending = submit(repository, job_id="job-pending")

    result = _admin(repository).bulk_retry(
        [errored.job_id, pending.job_id, "job-missing", errored.job_id],
        REASON,
    )

    assert [job.job_id for job in result.retried] == [errored.job_id]
    assert set(result.failed) == {pending.job_id, "job-missing"}
    assert "not found" in result.failed["job-missing"]
    audit = repository.list_audit()
    assert [entry.action for entry in audit] == [AdminAction.BULK_RETRY]


def test_bulk_retry_rejects_bad_reason_up_front(repository: JobRepository) -> None:
    errored = _errored(repository)

    with pytest.raises(AdminOperationError):
        _admin(repository).bulk_retry([errored.job_id], "short")


def test_unknown_job_raises_not_found(repository: JobRepository) -> None:
    with pytest.raises(JobNotFoundError):
        _admin(repository).cancel("nope", "Topic withdrawn by the editor")


def test_admin_change_on_outdated_view_is_rejected(repository: JobRepository) -> None:
    observed = submit(repository)
    assert repository.claim_next_job(worker_id="w1") is not None

    applied = repository.apply_admin_change(
        job=observed,
        action=AdminAction.CANCEL,
        new_status=JobStatus.CANCELLED,
        new_retry_count=observed.retry_count,
        actor="ops@example.com",
        reason="Topic withdrawn by the editor",
    )

    assert applied is False
    assert repository.get_job(observed.job_id).status == JobStatus.PROCESSING
    assert repository.list_audit() == []
