"""Controllers for job queue CLI commands."""

from __future__ import annotations

import os
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from content_pipeline.config import Settings
from content_pipeline.jobs.admin import AdminService
from content_pipeline.jobs.events import LoggingEventSink, NonBlockingEventSink
from content_pipeline.jobs.metrics import collect_queue_metrics, render_stats_lines
from content_pipeline.jobs.models import JobStatus, JobView
from content_pipeline.jobs.pool import WorkerFactory, WorkerPool
from content_pipeline.jobs.repository import JobRepository
from content_pipeline.jobs.retention import HistoryCleaner
from content_pipeline.jobs.services import JobService, SubmitJob, build_pipeline, build_worker
from content_pipeline.jobs.sweeper import StaleJobSweeper
from content_pipeline.jobs.worker import JobWorker, WorkerRunSummary, stop_signal_handlers
from content_pipeline.storage.alembic_runner import upgrade_head


@dataclass(slots=True)
class SubmitCommand:
    """CLI input for job submission."""

    db_path: Path | None
    topic: str
    prompt_template: str | None
    model: str | None
    categories: tuple[str, ...]
    tags: tuple[str, ...]
    priority: int | None
    max_retries: int | None
    idempotency_key: str | None


@dataclass(slots=True)
class ListJobsCommand:
    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    workers: int | None
    once: bool
    max_jobs: int | None
    until_idle: bool


@dataclass(slots=True)
class SweepCommand:
    db_path: Path | None
    dry_run: bool
    loop: bool


@dataclass(slots=True)
class CleanupCommand:
    db_path: Path | None
    dry_run: bool


@dataclass(slots=True)
class AdminRetryCommand:
    """CLI input for manual retry of one or more jobs."""

    db_path: Path | None
    job_ids: tuple[str, ...]
    actor: str
    reason: str
    override_limit: bool


@dataclass(slots=True)
class AdminStatusCommand:
    """CLI input for cancel and forced status changes."""

    db_path: Path | None
    job_id: str
    actor: str
    reason: str
    status: str = JobStatus.CANCELLED.value


@dataclass(slots=True)
class AdminAuditCommand:
    db_path: Path | None
    job_id: str | None
    limit: int


@dataclass(slots=True)
class StatsCommand:
    """CLI input for queue health stats."""

    db_path: Path | None
    hours: int


class JobsCliController:
    """Coordinates submission, worker, sweeper, admin and inspection CLI operations."""

    def submit(self, command: SubmitCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            result = JobService(repository=repository, settings=settings).submit(
                SubmitJob(
                    topic=command.topic,
                    prompt_template=command.prompt_template,
                    model=command.model,
                    categories=command.categories,
                    tags=command.tags,
                    priority=command.priority,
                    max_retries=command.max_retries,
                    idempotency_key=command.idempotency_key,
                ),
            )

        job = result.job
        verb = "Job submitted" if result.created else "Job already exists"
        return [
            f"{verb}: job_id={job.job_id} status={job.status.value} priority={job.priority}",
            f"Idempotency key: {job.idempotency_key or '-'}",
            f"Topic fingerprint: {job.topic_fingerprint or '-'}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(status=status_filter, limit=command.limit)

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            strategy = job.degradation_strategy_used
            lines.append(
                f"  {job.job_id} status={job.status.value} priority={job.priority} "
                f"retries={job.retry_count}/{job.max_retries} "
                f"degraded={strategy.value if strategy else '-'} "
                f"topic={_shorten(job.payload.topic)}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Topic: {job.payload.topic}",
            f"Status: {job.status.value}",
            f"Priority: {job.priority}",
            f"Retries: {job.retry_count}/{job.max_retries} (attempt {job.attempt})",
            f"Run after: {job.run_after.isoformat()}",
            f"Claimed by: {job.claimed_by or '-'}",
            f"Last error: {_error_summary(job)}",
            f"Degradation strategy: "
            f"{job.degradation_strategy_used.value if job.degradation_strategy_used else '-'}",
        ]
        if job.result is not None:
            flags = [
                name
                for name, enabled in (
                    ("manual_review", job.result.manual_review),
                    ("manual_publish", job.result.manual_publish),
                )
                if enabled
            ]
            lines.append(
                f"Result: title={_shorten(job.result.title)} "
                f"external_id={job.result.external_id or '-'} "
                f"flags={','.join(flags) or '-'}",
            )

        lines.append(f"Runs: {len(details.runs)}")
        for run in details.runs:
            lines.append(
                f"  attempt={run.attempt_no} worker={run.worker_id} "
                f"outcome={run.outcome.value if run.outcome else 'running'} "
                f"duration_ms={run.duration_ms if run.duration_ms is not None else '-'} "
                f"error={run.error_category.value if run.error_category else '-'}",
            )
        lines.append(f"Degradation decisions: {len(details.decisions)}")
        for decision in details.decisions:
            lines.append(
                f"  {decision.created_at.isoformat()} "
                f"category={decision.failure_category.value} "
                f"attempt_count={decision.attempt_count} "
                f"strategy={decision.strategy.value if decision.strategy else '-'} "
                f"outcome={decision.outcome.value}",
            )
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        """Run one worker (once, bounded, or single-sized) or a worker pool."""

        settings = _load_settings(command.db_path)
        size = command.workers if command.workers is not None else settings.queue.pool_size
        if size <= 0:
            raise ValueError("--workers must be positive.")
        max_idle_polls = 1 if command.until_idle else None
        upgrade_head(settings.db_path)
        pipeline = build_pipeline(settings)
        event_sink = NonBlockingEventSink(
            LoggingEventSink(),
            max_queue_size=settings.events.queue_size,
        )

        def _worker_factory(
            repository: JobRepository,
            worker_id: str,
            stop_event: threading.Event,
        ) -> JobWorker:
            return build_worker(
                settings,
                repository=repository,
                worker_id=worker_id,
                pipeline=pipeline,
                event_sink=event_sink,
                stop_event=stop_event,
            )

        single = command.once or command.max_jobs is not None or size == 1
        try:
            if single:
                summary = _run_single_worker(
                    settings,
                    worker_factory=_worker_factory,
                    command=command,
                    max_idle_polls=max_idle_polls,
                )
            else:
                pool = WorkerPool(
                    size=size,
                    repository_factory=lambda: _open_repository(settings),
                    worker_factory=_worker_factory,
                    poll_interval_seconds=settings.queue.poll_interval_seconds,
                    graceful_shutdown_seconds=settings.queue.graceful_shutdown_seconds,
                    worker_id_prefix=_worker_id(settings),
                )
                summary = pool.run(max_idle_polls=max_idle_polls)
        finally:
            event_sink.close()

        return [_summary_line(summary, workers=1 if single else size)]

    def sweep(self, command: SweepCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            sweeper = StaleJobSweeper(repository=repository, settings=settings.sweeper)
            if command.loop:
                stop_event = threading.Event()
                with stop_signal_handlers(stop_event.set):
                    sweeps = sweeper.run_forever(stop_event)
                return [f"Sweeper stopped after {sweeps} sweeps"]
            result = sweeper.sweep(dry_run=command.dry_run)

        prefix = "Dry run" if result.dry_run else "Sweep"
        lines = [
            f"{prefix}: checked={result.jobs_checked} stale={result.stale_found} "
            f"reset={result.jobs_reset} failed={result.jobs_failed} "
            f"duration_ms={result.duration_ms}",
        ]
        lines.extend(f"  stale job {job_id}" for job_id in result.stale_job_ids)
        return lines

    def cleanup(self, command: CleanupCommand) -> list[str]:
        """Delete history of finished jobs past the retention windows."""

        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            cleaner = HistoryCleaner(repository=repository, settings=settings.retention)
            result = cleaner.cleanup(dry_run=command.dry_run)

        verb = "would delete" if result.dry_run else "deleted"
        return [
            f"Cleanup {verb}: runs={result.runs_deleted} events={result.events_deleted} "
            f"decisions={result.decisions_deleted} sweeps={result.sweeps_deleted} "
            f"audit={result.audit_deleted} total={result.total}",
        ]

    def admin_retry(self, command: AdminRetryCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            service = AdminService(repository=repository, actor=command.actor)
            if len(command.job_ids) == 1:
                job = service.retry(
                    command.job_ids[0],
                    command.reason,
                    override_limit=command.override_limit,
                )
                return [
                    f"Job re-queued: {job.job_id} status={job.status.value} "
                    f"retries={job.retry_count}/{job.max_retries}",
                ]
            result = service.bulk_retry(
                command.job_ids,
                command.reason,
                override_limit=command.override_limit,
            )

        lines = [f"Bulk retry: retried={len(result.retried)} failed={len(result.failed)}"]
        lines.extend(f"  retried {job.job_id}" for job in result.retried)
        lines.extend(f"  failed {job_id}: {error}" for job_id, error in result.failed.items())
        return lines

    def admin_cancel(self, command: AdminStatusCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            job = AdminService(repository=repository, actor=command.actor).cancel(
                command.job_id,
                command.reason,
            )
        return [f"Job cancelled: {job.job_id}"]

    def admin_set_status(self, command: AdminStatusCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        new_status = _parse_status(command.status)
        if new_status is None:
            raise ValueError("Status is required.")
        with _repository(settings) as repository:
            job = AdminService(repository=repository, actor=command.actor).set_status(
                command.job_id,
                new_status,
                command.reason,
            )
        return [f"Job {job.job_id} status set to {job.status.value}"]

    def admin_audit(self, command: AdminAuditCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _repository(settings) as repository:
            entries = repository.list_audit(job_id=command.job_id, limit=command.limit)

        lines = [f"Audit entries: {len(entries)}"]
        for entry in entries:
            lines.append(
                f"  {entry.created_at.isoformat()} actor={entry.actor} "
                f"action={entry.action.value} job={entry.job_id} "
                f"{entry.previous_status.value} -> {entry.new_status.value} "
                f"retries={entry.previous_retry_count}->{entry.new_retry_count}"
                f"{' override' if entry.limit_overridden else ''} "
                f"reason={entry.reason}",
            )
        return lines

    def stats(self, command: StatsCommand) -> list[str]:
        """Show operator-facing queue health metrics."""

        settings = _load_settings(command.db_path)
        hours = max(1, command.hours)
        with _repository(settings) as repository:
            snapshot = collect_queue_metrics(repository=repository, hours=hours)
        return render_stats_lines(snapshot=snapshot, hours=hours)


def _load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _worker_id(settings: Settings, *, index: int | None = None) -> str:
    base = f"{settings.queue.worker_id_prefix}-{os.getpid()}"
    return base if index is None else f"{base}-{index}"


def _summary_line(summary: WorkerRunSummary, *, workers: int) -> str:
    return (
        f"Worker summary (workers={workers}): "
        f"processed={summary.processed} completed={summary.completed} "
        f"degraded={summary.degraded} requeued={summary.requeued} "
        f"failed={summary.failed} cancelled={summary.cancelled} "
        f"timeouts={summary.timeouts} idle_polls={summary.idle_polls}"
    )


def _error_summary(job: JobView) -> str:
    if job.last_error_category is None and job.last_error_message is None:
        return "-"
    category = job.last_error_category.value if job.last_error_category else "-"
    return f"{category}/{job.last_error_code or '-'}: {job.last_error_message or '-'}"


def _shorten(value: str, limit: int = 60) -> str:
    collapsed = " ".join(value.split())
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[: limit - 3] + "..."


def _run_single_worker(
    settings: Settings,
    *,
    worker_factory: WorkerFactory,
    command: WorkerCommand,
    max_idle_polls: int | None,
) -> WorkerRunSummary:
    repository = _open_repository(settings)
    worker = worker_factory(repository, _worker_id(settings, index=1), threading.Event())
    try:
        if command.once:
            return worker.run_once()
        return worker.run_loop(max_jobs=command.max_jobs, max_idle_polls=max_idle_polls)
    finally:
        worker.close()
        repository.close()


def _open_repository(settings: Settings) -> JobRepository:
    return JobRepository(settings.db_path, busy_timeout_ms=settings.sqlite_busy_timeout_ms)


@contextmanager
def _repository(settings: Settings) -> Iterator[JobRepository]:
    repository = _open_repository(settings)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
