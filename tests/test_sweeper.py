from __future__ import annotations

import threading
import time

import allure

from conftest import age_claim, submit
from content_pipeline.config import SweeperSettings
from content_pipeline.jobs.events import RecordingEventSink
from content_pipeline.jobs.models import JobResult, JobStatus, JobView, RunOutcome
from content_pipeline.jobs.repository import WORKER_LOST_CODE, JobRepository
from content_pipeline.jobs.sweeper import StaleJobSweeper

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Stale Job Sweeper"),
]


def _claim_and_abandon(
    repository: JobRepository,
    *,
    job_id: str = "job-1",
    max_retries: int = 3,
    heartbeat_seconds: float | None = None,
) -> JobView:
    submit(repository, job_id=job_id, max_retries=max_retries)
    claimed = repository.claim_next_job(worker_id="crashed-worker")
    assert claimed is not None
    repository.start_run(job=claimed, worker_id="crashed-worker")
    age_claim(repository, claimed.job_id, seconds=1_200, heartbeat_seconds=heartbeat_seconds)
    return claimed


def test_stale_job_is_reset_to_pending(repository: JobRepository) -> None:
    claimed = _claim_and_abandon(repository)
    sink = RecordingEventSink()
    sweeper = StaleJobSweeper(repository=repository, settings=SweeperSettings(), event_sink=sink)

    result = sweeper.sweep()

    assert result.jobs_checked == 1
    assert result.stale_found == 1
    assert result.jobs_reset == 1
    assert result.jobs_failed == 0
    job = repository.get_job(claimed.job_id)
    assert job.status == JobStatus.PENDING
    assert job.retry_count == 1
    assert job.claimed_by is None
    assert job.last_error_code == WORKER_LOST_CODE
    details = repository.get_job_details(job_id=claimed.job_id)
    assert details is not None
    assert details.runs[0].outcome == RunOutcome.ABANDONED
    assert details.runs[0].finished_at is not None
    assert details.runs[0].duration_ms is not None
    assert details.runs[0].duration_ms >= 1_200_000
    assert details.events[-1].event_type == "swept"
    assert sink.event_types(claimed.job_id) == ["swept"]
    assert sink.events[0].status_to == JobStatus.PENDING


def test_stale_job_at_retry_ceiling_fails(repository: JobRepository) -> None:
    claimed = _claim_and_abandon(repository, max_retries=0)

    result = StaleJobSweeper(repository=repository, settings=SweeperSettings()).sweep()

    assert result.jobs_failed == 1
    job = repository.get_job(claimed.job_id)
    assert job.status == JobStatus.ERROR
    assert job.retry_count == 0
    assert job.finished_at is not None


def test_recent_heartbeat_keeps_job_claimed(repository: JobRepository) -> None:
    claimed = _claim_and_abandon(repository, heartbeat_seconds=5)

    result = StaleJobSweeper(repository=repository, settings=SweeperSettings()).sweep()

    assert result.jobs_checked == 1
    assert result.stale_found == 0
    assert repository.get_job(claimed.job_id).status == JobStatus.PROCESSING


def test_dry_run_reports_without_changes(repository: JobRepository) -> None:
    claimed = _claim_and_abandon(repository)

    result = StaleJobSweeper(repository=repository, settings=SweeperSettings()).sweep(
        dry_run=True,
    )

    assert result.dry_run is True
    assert result.stale_found == 1
    assert result.stale_job_ids == [claimed.job_id]
    assert result.jobs_reset == 0
    assert repository.get_job(claimed.job_id).status == JobStatus.PROCESSING
    runs = repository.list_sweep_runs()
    assert len(runs) == 1
    assert runs[0].dry_run is True
    assert runs[0].stale_found == 1


def test_sweep_respects_batch_limit(repository: JobRepository) -> None:
    for index in range(3):
        _claim_and_abandon(repository, job_id=f"job-{index}")

    result = StaleJobSweeper(
        repository=repository,
        settings=SweeperSettings(max_jobs_per_sweep=2),
    ).sweep()

    assert result.jobs_checked == 3
    assert result.jobs_reset == 2
    assert repository.count_processing() == 1


def test_late_report_from_swept_worker_is_ignored(repository: JobRepository) -> None:
    claimed = _claim_and_abandon(repository)
    StaleJobSweeper(repository=repository, settings=SweeperSettings()).sweep()

    completed = repository.complete_job(
        job_id=claimed.job_id,
        attempt=claimed.attempt,
        worker_id="crashed-worker",
        result=JobResult(title="Late result", body="Arrived after the sweep"),
    )

    assert completed is False
    job = repository.get_job(claimed.job_id)
    assert job.status == JobStatus.PENDING
    assert job.result is None


def test_run_forever_sweeps_until_stopped(repository: JobRepository) -> None:
    _claim_and_abandon(repository)
    sweeper = StaleJobSweeper(
        repository=repository,
        settings=SweeperSettings(interval_seconds=0.01),
    )
    stop_event = threading.Event()
    sweeps: list[int] = []
    thread = threading.Thread(target=lambda: sweeps.append(sweeper.run_forever(stop_event)))

    thread.start()
    deadline = time.monotonic() + 10
    while repository.count_processing() and time.monotonic() < deadline:
        time.sleep(0.01)
    stop_event.set()
    thread.join(timeout=10)

    assert not thread.is_alive()
    assert sweeps
    assert sweeps[0] >= 1
    assert repository.count_processing() == 0
    assert repository.list_sweep_runs(limit=1)


def test_run_forever_returns_immediately_when_stopped(repository: JobRepository) -> None:
    stop_event = threading.Event()
    stop_event.set()

    sweeps = StaleJobSweeper(repository=repository, settings=SweeperSettings()).run_forever(
        stop_event,
    )

    assert sweeps == 0
    assert repository.list_sweep_runs() == []
