"""CLI entrypoint for content-pipeline."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from content_pipeline import __version__
from content_pipeline.jobs.backend.base import InputValidationError
from content_pipeline.jobs.controllers import (
    AdminAuditCommand,
    AdminRetryCommand,
    AdminStatusCommand,
    CleanupCommand,
    InspectJobCommand,
    JobsCliController,
    ListJobsCommand,
    StatsCommand,
    SubmitCommand,
    SweepCommand,
    WorkerCommand,
)
from content_pipeline.jobs.errors import AdminOperationError
from content_pipeline.jobs.models import JobStatus

click.rich_click.USE_MARKDOWN = True
JOBS_CONTROLLER = JobsCliController()
STATUS_CHOICES = [status.value for status in JobStatus]
ACTOR_ENVVAR = "CONTENT_PIPELINE_ACTOR"


@click.group()
@click.version_option(version=__version__, prog_name="content-pipeline")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for queue diagnostics.",
)
def content_pipeline(log_level: str) -> None:
    """Durable content-generation job queue."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )


@content_pipeline.group()
def jobs() -> None:
    """Submit and inspect jobs."""


@jobs.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--topic", required=True, help="Topic to generate content about.")
@click.option("--prompt-template", default=None, help="Prompt template with $topic placeholder.")
@click.option("--model", default=None, help="Generation model override.")
@click.option("--category", "categories", multiple=True, help="Category. Can be repeated.")
@click.option("--tag", "tags", multiple=True, help="Tag. Can be repeated.")
@click.option(
    "--priority",
    type=click.IntRange(min=0),
    default=None,
    help="Lower value is claimed first.",
)
@click.option(
    "--max-retries",
    type=click.IntRange(min=0),
    default=None,
    help="Retry ceiling for this job.",
)
@click.option(
    "--idempotency-key",
    default=None,
    help="Explicit key; derived from the topic and parameters when omitted.",
)
def jobs_submit(  # noqa: PLR0913
    db_path: Path | None,
    topic: str,
    prompt_template: str | None,
    model: str | None,
    categories: tuple[str, ...],
    tags: tuple[str, ...],
    priority: int | None,
    max_retries: int | None,
    idempotency_key: str | None,
) -> None:
    """Submit a content generation job."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.submit(
                SubmitCommand(
                    db_path=db_path,
                    topic=topic,
                    prompt_template=prompt_template,
                    model=model,
                    categories=categories,
                    tags=tags,
                    priority=priority,
                    max_retries=max_retries,
                    idempotency_key=idempotency_key,
                ),
            ),
        )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(STATUS_CHOICES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent jobs, newest first."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.list_jobs(
                ListJobsCommand(
                    db_path=db_path,
                    status=status,
                    limit=limit,
                ),
            ),
        )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Inspect one job with runs, degradation decisions and events."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.inspect_job(
                InspectJobCommand(
                    db_path=db_path,
                    job_id=job_id,
                ),
            ),
        )


@content_pipeline.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--workers",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads; defaults to CONTENT_PIPELINE_POOL_SIZE.",
)
@click.option("--once", is_flag=True, default=False, help="Process at most one job and exit.")
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after processing this many jobs (single worker).",
)
@click.option(
    "--until-idle/--forever",
    default=False,
    show_default=True,
    help="Exit once the queue is empty, or keep polling until interrupted.",
)
def worker(
    db_path: Path | None,
    workers: int | None,
    once: bool,
    max_jobs: int | None,
    until_idle: bool,
) -> None:
    """Run queue workers."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.run_worker(
                WorkerCommand(
                    db_path=db_path,
                    workers=workers,
                    once=once,
                    max_jobs=max_jobs,
                    until_idle=until_idle,
                ),
            ),
        )


@content_pipeline.command("sweep")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--dry-run", is_flag=True, default=False, help="Report stale jobs without changes.")
@click.option("--loop", is_flag=True, default=False, help="Sweep every interval until stopped.")
def sweep(db_path: Path | None, dry_run: bool, loop: bool) -> None:
    """Reclaim jobs whose worker stopped heartbeating."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.sweep(
                SweepCommand(
                    db_path=db_path,
                    dry_run=dry_run,
                    loop=loop,
                ),
            ),
        )


@content_pipeline.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--dry-run", is_flag=True, default=False, help="Count eligible rows only.")
def cleanup(db_path: Path | None, dry_run: bool) -> None:
    """Delete run, event, sweep and audit history past the retention windows."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.cleanup(
                CleanupCommand(
                    db_path=db_path,
                    dry_run=dry_run,
                ),
            ),
        )


@content_pipeline.group()
def admin() -> None:
    """Audited operator overrides."""


@admin.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--actor", required=True, envvar=ACTOR_ENVVAR, help="Operator identity.")
@click.option("--reason", required=True, help="Why (10-500 characters).")
@click.option(
    "--override-limit",
    is_flag=True,
    default=False,
    help="Allow one retry past the retry ceiling.",
)
def admin_retry(
    db_path: Path | None,
    job_id: str,
    actor: str,
    reason: str,
    override_limit: bool,
) -> None:
    """Re-queue an errored or degraded job."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.admin_retry(
                AdminRetryCommand(
                    db_path=db_path,
                    job_ids=(job_id,),
                    actor=actor,
                    reason=reason,
                    override_limit=override_limit,
                ),
            ),
        )


@admin.command("bulk-retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", "job_ids", required=True, multiple=True, help="Job id. Repeatable.")
@click.option("--actor", required=True, envvar=ACTOR_ENVVAR, help="Operator identity.")
@click.option("--reason", required=True, help="Why (10-500 characters).")
@click.option(
    "--override-limit",
    is_flag=True,
    default=False,
    help="Allow one retry past the retry ceiling.",
)
def admin_bulk_retry(
    db_path: Path | None,
    job_ids: tuple[str, ...],
    actor: str,
    reason: str,
    override_limit: bool,
) -> None:
    """Re-queue several jobs; each one succeeds or fails on its own."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.admin_retry(
                AdminRetryCommand(
                    db_path=db_path,
                    job_ids=job_ids,
                    actor=actor,
                    reason=reason,
                    override_limit=override_limit,
                ),
            ),
        )


@admin.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option("--actor", required=True, envvar=ACTOR_ENVVAR, help="Operator identity.")
@click.option("--reason", required=True, help="Why (10-500 characters).")
def admin_cancel(db_path: Path | None, job_id: str, actor: str, reason: str) -> None:
    """Cancel a pending or processing job."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.admin_cancel(
                AdminStatusCommand(
                    db_path=db_path,
                    job_id=job_id,
                    actor=actor,
                    reason=reason,
                ),
            ),
        )


@admin.command("set-status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", required=True, help="Job id.")
@click.option(
    "--status",
    required=True,
    type=click.Choice(STATUS_CHOICES, case_sensitive=False),
    help="Target status.",
)
@click.option("--actor", required=True, envvar=ACTOR_ENVVAR, help="Operator identity.")
@click.option("--reason", required=True, help="Why (10-500 characters).")
def admin_set_status(
    db_path: Path | None,
    job_id: str,
    status: str,
    actor: str,
    reason: str,
) -> None:
    """Force a status transition allowed by the transition table."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.admin_set_status(
                AdminStatusCommand(
                    db_path=db_path,
                    job_id=job_id,
                    actor=actor,
                    reason=reason,
                    status=status,
                ),
            ),
        )


@admin.command("audit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--job-id", default=None, help="Optional job filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max entries to print.",
)
def admin_audit(db_path: Path | None, job_id: str | None, limit: int) -> None:
    """Show the admin audit log, oldest first."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.admin_audit(
                AdminAuditCommand(
                    db_path=db_path,
                    job_id=job_id,
                    limit=limit,
                ),
            ),
        )


@content_pipeline.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--hours",
    type=click.IntRange(min=1),
    default=24,
    show_default=True,
    help="Time window for aggregation.",
)
def stats(db_path: Path | None, hours: int) -> None:
    """Show queue health: statuses, degradations, retries, durations, sweeps."""

    with _operator_errors():
        _emit_lines(
            JOBS_CONTROLLER.stats(
                StatsCommand(
                    db_path=db_path,
                    hours=hours,
                ),
            ),
        )


@contextmanager
def _operator_errors() -> Iterator[None]:
    try:
        yield
    except (AdminOperationError, InputValidationError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    content_pipeline()
