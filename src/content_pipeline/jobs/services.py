"""Use-case services and runtime wiring for the job queue."""

from __future__ import annotations

import hashlib
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from content_pipeline.config import Settings
from content_pipeline.jobs.backend.base import (
    ContentGenerator,
    InputValidationError,
    Publisher,
    TaxonomyResolver,
)
from content_pipeline.jobs.backend.echo import (
    EchoGenerator,
    InMemoryPublisher,
    PayloadTaxonomyResolver,
)
from content_pipeline.jobs.degradation import DegradationEngine, StrategyTable
from content_pipeline.jobs.events import EventSink
from content_pipeline.jobs.models import JobCreate, JobPayload, SubmitResult
from content_pipeline.jobs.pipeline import ContentPipeline
from content_pipeline.jobs.repository import JobRepository
from content_pipeline.jobs.retry import BackoffPolicy, RetryController
from content_pipeline.jobs.validator import LengthContentValidator
from content_pipeline.jobs.worker import JobWorker
from content_pipeline.storage.common import utc_now

MAX_TOPIC_CHARS = 500


@dataclass(slots=True)
class SubmitJob:
    """High-level command to submit a content job."""

    topic: str
    prompt_template: str | None = None
    model: str | None = None
    categories: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    priority: int | None = None
    max_retries: int | None = None
    idempotency_key: str | None = None
    run_after: datetime | None = None
    extra: dict[str, object] = field(default_factory=dict)


def derive_topic_fingerprint(payload: JobPayload) -> str:
    """Stable fingerprint of a payload: same topic and generation parameters, same value."""

    parts = [
        " ".join(payload.topic.lower().split()),
        payload.prompt_template or "",
        payload.model or "",
        ",".join(sorted(payload.categories)),
        ",".join(sorted(payload.tags)),
    ]
    digest = hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()
    return f"topic:{digest[:32]}"


class JobService:
    """Shapes submissions into queue inserts.

    A caller-supplied idempotency key returns the same job forever. Without one, the
    submission only folds into a live job with the same topic fingerprint, or one completed
    within the duplicate window; cancelled and errored topics can be submitted again.
    """

    def __init__(self, *, repository: JobRepository, settings: Settings) -> None:
        self.repository = repository
        self.settings = settings

    def submit(self, command: SubmitJob) -> SubmitResult:
        topic = command.topic.strip()
        if not topic:
            raise InputValidationError("Topic must not be empty.", reason_code="empty_topic")
        if len(topic) > MAX_TOPIC_CHARS:
            raise InputValidationError(
                f"Topic must be at most {MAX_TOPIC_CHARS} characters.",
                reason_code="topic_too_long",
            )
        payload = JobPayload(
            topic=topic,
            prompt_template=command.prompt_template,
            model=command.model,
            categories=_clean_labels(command.categories),
            tags=_clean_labels(command.tags),
            extra=dict(command.extra),
        )
        return self.repository.submit_job(
            JobCreate(
                payload=payload,
                idempotency_key=command.idempotency_key,
                topic_fingerprint=derive_topic_fingerprint(payload),
                priority=(
                    command.priority
                    if command.priority is not None
                    else self.settings.queue.default_priority
                ),
                max_retries=(
                    command.max_retries
                    if command.max_retries is not None
                    else self.settings.retry.max_retries
                ),
                run_after=command.run_after,
            ),
            completed_duplicate_since=self._completed_duplicate_since(),
        )

    def _completed_duplicate_since(self) -> datetime | None:
        window = self.settings.queue.duplicate_window_hours
        if window <= 0:
            return None
        return utc_now() - timedelta(hours=window)


def build_pipeline(
    settings: Settings,
    *,
    generator: ContentGenerator | None = None,
    taxonomy_resolver: TaxonomyResolver | None = None,
    publisher: Publisher | None = None,
) -> ContentPipeline:
    """Pipeline over the given collaborators, defaulting to the local echo set."""

    return ContentPipeline(
        generator=generator or EchoGenerator(),
        validator=LengthContentValidator(settings.validation),
        taxonomy_resolver=taxonomy_resolver or PayloadTaxonomyResolver(),
        publisher=publisher or InMemoryPublisher(),
        max_title_chars=settings.validation.max_title_chars,
    )


def build_retry_controller(
    settings: Settings,
    *,
    pipeline: ContentPipeline,
    strategy_table: StrategyTable | None = None,
) -> RetryController:
    return RetryController(
        backoff=BackoffPolicy.from_settings(settings.retry),
        degradation=DegradationEngine(
            settings=settings.degradation,
            pipeline=pipeline,
            strategy_table=strategy_table,
        ),
    )


def build_worker(  # noqa: PLR0913
    settings: Settings,
    *,
    repository: JobRepository,
    worker_id: str,
    pipeline: ContentPipeline | None = None,
    strategy_table: StrategyTable | None = None,
    event_sink: EventSink | None = None,
    stop_event: threading.Event | None = None,
) -> JobWorker:
    pipeline = pipeline or build_pipeline(settings)
    return JobWorker(
        repository=repository,
        pipeline=pipeline,
        retry_controller=build_retry_controller(
            settings,
            pipeline=pipeline,
            strategy_table=strategy_table,
        ),
        worker_id=worker_id,
        job_timeout_seconds=settings.queue.job_timeout_seconds,
        heartbeat_interval_seconds=settings.queue.heartbeat_interval_seconds,
        poll_interval_seconds=settings.queue.poll_interval_seconds,
        event_sink=event_sink,
        stop_event=stop_event,
    )


def _clean_labels(values: tuple[str, ...]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(value.strip() for value in values if value.strip()))
