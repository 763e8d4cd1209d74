from __future__ import annotations

from datetime import timedelta

import allure

from conftest import submit
from content_pipeline.jobs.models import (
    DegradationStrategy,
    FailureCategory,
    JobCreate,
    JobFailure,
    JobPayload,
    JobResult,
    JobStatus,
    RunOutcome,
)
from content_pipeline.jobs.repository import JobRepository
from content_pipeline.storage.common import utc_now

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Store & Claiming"),
]


def _failure(code: str = "generation_overloaded") -> JobFailure:
    return JobFailure(
        category=FailureCategory.GENERATION,
        retryable=True,
        reason_code=code,
        message="model overloaded",
    )


def test_submit_creates_pending_job_with_submitted_event(repository: JobRepository) -> None:
    result = repository.submit_job(
        JobCreate(
            payload=JobPayload(topic="Edge caching", categories=("Tech",), tags=("cdn",)),
            idempotency_key="key-1",
            priority=10,
            max_retries=2,
        ),
    )

    assert result.created is True
    job = result.job
    assert job.status == JobStatus.PENDING
    assert job.priority == 10
    assert job.retry_count == 0
    assert job.max_retries == 2
    assert job.attempt == 0
    assert job.payload.categories == ("Tech",)
    assert job.result is None

    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["submitted"]
    assert details.events[0].status_to == JobStatus.PENDING


def test_submit_with_known_idempotency_key_returns_existing_job(
    repository: JobRepository,
) -> None:
    first = repository.submit_job(
        JobCreate(payload=JobPayload(topic="Edge caching"), idempotency_key="dup"),
    )
    second = repository.submit_job(
        JobCreate(payload=JobPayload(topic="Something else"), idempotency_key="dup"),
    )

    assert first.created is True
    assert second.created is False
    assert second.job.job_id == first.job.job_id
    assert second.job.payload.topic == "Edge caching"
    assert len(repository.list_jobs()) == 1


def test_claim_follows_priority_then_creation_order(repository: JobRepository) -> None:
    low = submit(repository, job_id="job-c", priority=50)
    first_urgent = submit(repository, job_id="job-a", priority=1)
    second_urgent = submit(repository, job_id="job-b", priority=1)

    claimed = [repository.claim_next_job(worker_id="w1") for _ in range(3)]

    assert [job.job_id for job in claimed if job is not None] == [
        first_urgent.job_id,
        second_urgent.job_id,
        low.job_id,
    ]
    assert repository.claim_next_job(worker_id="w1") is None


def test_claim_sets_processing_state_and_increments_attempt(repository: JobRepository) -> None:
    job = submit(repository)

    claimed = repository.claim_next_job(worker_id="w1")

    assert claimed is not None
    assert claimed.job_id == job.job_id
    assert claimed.status == JobStatus.PROCESSING
    assert claimed.claimed_by == "w1"
    assert claimed.attempt == 1
    assert claimed.attempt_count == 0
    assert claimed.claimed_at is not None
    assert claimed.heartbeat_at is not None


def test_future_run_after_is_not_claimable(repository: JobRepository) -> None:
    submit(repository, run_after=utc_now() + timedelta(hours=1))

    assert repository.claim_next_job(worker_id="w1") is None


def test_claim_guarded_writes_require_the_current_claim(repository: JobRepository) -> None:
    submit(repository)
    claimed = repository.claim_next_job(worker_id="w1")
    assert claimed is not None
    result = JobResult(title="Edge caching explained", body="body", external_id="x-1")

    assert not repository.complete_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="someone-else",
        result=result,
    )
    assert not repository.complete_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt + 1,
        worker_id="w1",
        result=result,
    )
    assert repository.complete_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="w1",
        result=result,
        degradation_strategy=DegradationStrategy.RELAXED_VALIDATION,
    )
    assert not repository.complete_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="w1",
        result=result,
    )

    job = repository.get_job(claimed.job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.result is not None
    assert job.result.external_id == "x-1"
    assert job.degradation_strategy_used == DegradationStrategy.RELAXED_VALIDATION
    assert job.finished_at is not None


def test_touch_job_only_while_claim_is_held(repository: JobRepository) -> None:
    submit(repository)
    claimed = repository.claim_next_job(worker_id="w1")
    assert claimed is not None

    assert repository.touch_job(job_id=claimed.job_id, attempt=claimed.attempt, worker_id="w1")
    assert repository.holds_claim(job_id=claimed.job_id, attempt=claimed.attempt, worker_id="w1")

    assert repository.requeue_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="w1",
        run_after=utc_now(),
        failure=_failure(),
    )

    assert not repository.touch_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="w1",
    )
    assert not repository.holds_claim(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="w1",
    )


def test_requeue_consumes_retry_and_records_last_error(repository: JobRepository) -> None:
    submit(repository, max_retries=1)
    claimed = repository.claim_next_job(worker_id="w1")
    assert claimed is not None

    assert repository.requeue_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="w1",
        run_after=utc_now(),
        failure=_failure(),
    )

    job = repository.get_job(claimed.job_id)
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 1
    assert job.claimed_by is None
    assert job.last_error_category == FailureCategory.GENERATION
    assert job.last_error_code == "generation_overloaded"

    reclaimed = repository.claim_next_job(worker_id="w2")
    assert reclaimed is not None
    assert reclaimed.attempt == 2
    assert not repository.requeue_job(
        job_id=reclaimed.job_id,
        attempt=reclaimed.attempt,
        worker_id="w2",
        run_after=utc_now(),
        failure=_failure(),
    )
    assert repository.requeue_job(
        job_id=reclaimed.job_id,
        attempt=reclaimed.attempt,
        worker_id="w2",
        run_after=utc_now(),
        failure=_failure("strategy_failed"),
        consume_retry=False,
    )
    assert repository.get_job(claimed.job_id).retry_count == 1


def test_fail_job_moves_to_error(repository: JobRepository) -> None:
    submit(repository)
    claimed = repository.claim_next_job(worker_id="w1")
    assert claimed is not None

    assert repository.fail_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="w1",
        failure=_failure("generation_quota_exhausted"),
        details={"decision": "non_retryable"},
    )

    job = repository.get_job(claimed.job_id)
    assert job.status == JobStatus.ERROR
    assert job.last_error_code == "generation_quota_exhausted"
    details = repository.get_job_details(job_id=claimed.job_id)
    assert details is not None
    assert details.events[-1].event_type == "terminal"
    assert details.events[-1].details["decision"] == "non_retryable"


def test_close_run_happens_once(repository: JobRepository) -> None:
    submit(repository)
    claimed = repository.claim_next_job(worker_id="w1")
    assert claimed is not None
    run_id = repository.start_run(job=claimed, worker_id="w1")

    assert repository.close_run(run_id=run_id, outcome=RunOutcome.COMPLETED)
    assert not repository.close_run(run_id=run_id, outcome=RunOutcome.FAILED)

    details = repository.get_job_details(job_id=claimed.job_id)
    assert details is not None
    assert len(details.runs) == 1
    run = details.runs[0]
    assert run.attempt_no == 1
    assert run.outcome == RunOutcome.COMPLETED
    assert run.duration_ms is not None


def test_count_jobs_by_status_includes_empty_statuses(repository: JobRepository) -> None:
    submit(repository, job_id="a")
    submit(repository, job_id="b")
    repository.claim_next_job(worker_id="w1")

    counts = repository.count_jobs_by_status()

    assert counts[JobStatus.PENDING] == 1
    assert counts[JobStatus.PROCESSING] == 1
    assert counts[JobStatus.COMPLETED] == 0
    assert repository.count_processing() == 1
