"""Shared test fixtures."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from content_pipeline.config import QueueSettings, RetrySettings, Settings
from content_pipeline.jobs.backend.base import GeneratedContent, GenerationRequest
from content_pipeline.jobs.backend.echo import EchoGenerator
from content_pipeline.jobs.models import JobCreate, JobPayload, JobStatus, JobView
from content_pipeline.jobs.repository import JobRepository
from content_pipeline.storage.common import to_db_datetime, utc_now
from content_pipeline.storage.sqlmodel_models import Job, JobRun


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "jobs.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[JobRepository]:
    repo = JobRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    """Fast settings: no backoff delay, short polls, generous timeout."""

    return Settings(
        db_path=db_path,
        queue=QueueSettings(
            job_timeout_seconds=30.0,
            poll_interval_seconds=0.01,
            heartbeat_interval_seconds=1.0,
            graceful_shutdown_seconds=5.0,
        ),
        retry=RetrySettings(backoff_base_seconds=0.0, backoff_max_seconds=0.0),
    )


def submit(
    repository: JobRepository,
    topic: str = "Edge caching for APIs",
    **kwargs: object,
) -> JobView:
    return repository.submit_job(JobCreate(payload=JobPayload(topic=topic), **kwargs)).job


def job_view(
    *,
    retry_count: int = 0,
    max_retries: int = 3,
    attempt: int = 1,
    attempt_base: int = 0,
    payload: JobPayload | None = None,
) -> JobView:
    """Processing job view that never touched the database."""

    now = utc_now()
    return JobView(
        job_id="job-1",
        idempotency_key=None,
        status=JobStatus.PROCESSING,
        payload=payload or JobPayload(topic="Edge caching"),
        result=None,
        priority=100,
        retry_count=retry_count,
        max_retries=max_retries,
        attempt=attempt,
        attempt_base=attempt_base,
        run_after=now,
        claimed_by="w1",
        claimed_at=now,
        heartbeat_at=now,
        last_error_category=None,
        last_error_message=None,
        last_error_code=None,
        degradation_strategy_used=None,
        created_at=now,
        updated_at=now,
        finished_at=None,
    )


def age_claim(
    repository: JobRepository,
    job_id: str,
    *,
    seconds: float,
    heartbeat_seconds: float | None = None,
) -> None:
    """Move a claim (and by default its heartbeat) and its open run into the past."""

    now = utc_now()
    claimed_at = to_db_datetime(now - timedelta(seconds=seconds))
    values = {"claimed_at": claimed_at}
    values["heartbeat_at"] = to_db_datetime(
        now - timedelta(seconds=seconds if heartbeat_seconds is None else heartbeat_seconds),
    )
    with Session(repository.engine) as session:
        session.exec(sa_update(Job).where(col(Job.job_id) == job_id).values(**values))
        session.exec(
            sa_update(JobRun)
            .where(col(JobRun.job_id) == job_id, col(JobRun.finished_at).is_(None))
            .values(started_at=claimed_at),
        )
        session.commit()


class ScriptedGenerator:
    """Raises the given errors in order, then delegates to the echo generator."""

    def __init__(self, *errors: Exception, repeat_last: bool = False) -> None:
        self.errors = list(errors)
        self.repeat_last = repeat_last
        self.requests: list[GenerationRequest] = []
        self._lock = threading.Lock()

    def generate(self, request: GenerationRequest) -> GeneratedContent:
        with self._lock:
            self.requests.append(request)
            if self.errors:
                if self.repeat_last and len(self.errors) == 1:
                    raise self.errors[0]
                raise self.errors.pop(0)
        return EchoGenerator().generate(request)
