from __future__ import annotations

import threading
from collections import Counter
from pathlib import Path

import allure

from conftest import submit
from content_pipeline.jobs.models import JobStatus
from content_pipeline.jobs.repository import JobRepository

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Job Store & Claiming"),
]

JOB_COUNT = 50
WORKER_COUNT = 10


def test_concurrent_workers_never_claim_the_same_job(db_path: Path) -> None:
    seed = JobRepository(db_path)
    seed.init_schema()
    for index in range(JOB_COUNT):
        submit(seed, topic=f"Topic number {index}", job_id=f"job-{index:03d}")

    claims: list[tuple[str, str]] = []
    errors: list[BaseException] = []
    lock = threading.Lock()
    start = threading.Barrier(WORKER_COUNT)

    def _claim_all(worker_id: str) -> None:
        repository = JobRepository(db_path, busy_timeout_ms=30_000)
        try:
            start.wait()
            while True:
                job = repository.claim_next_job(worker_id=worker_id)
                if job is None:
                    return
                with lock:
                    claims.append((job.job_id, worker_id))
        except BaseException as error:  # noqa: BLE001
            with lock:
                errors.append(error)
        finally:
            repository.close()

    threads = [
        threading.Thread(target=_claim_all, args=(f"w{index}",)) for index in range(WORKER_COUNT)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=120)

    assert errors == []
    claimed_ids = Counter(job_id for job_id, _ in claims)
    assert len(claimed_ids) == JOB_COUNT
    assert max(claimed_ids.values()) == 1

    counts = seed.count_jobs_by_status()
    assert counts[JobStatus.PROCESSING] == JOB_COUNT
    assert counts[JobStatus.PENDING] == 0
    for job_id, worker_id in claims:
        job = seed.get_job(job_id)
        assert job.claimed_by == worker_id
        assert job.attempt == 1
    seed.close()
