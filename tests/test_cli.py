from __future__ import annotations

import re
from datetime import datetime
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from sqlalchemy import update as sa_update
from sqlmodel import Session

from content_pipeline import __version__
from content_pipeline.jobs.models import FailureCategory, JobFailure, JobStatus
from content_pipeline.jobs.repository import JobRepository
from content_pipeline.main import content_pipeline
from content_pipeline.storage.sqlmodel_models import SweepRunRow

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("CLI"),
]

LONG_AGO = datetime(2020, 1, 1)


def _submit(runner: CliRunner, db_path: Path, topic: str, *extra: str) -> str:
    result = runner.invoke(
        content_pipeline,
        ["jobs", "submit", "--db-path", str(db_path), "--topic", topic, *extra],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"job_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def _fail(db_path: Path, job_id: str) -> None:
    repository = JobRepository(db_path)
    claimed = repository.claim_next_job(worker_id="w1")
    assert claimed is not None
    assert claimed.job_id == job_id
    repository.fail_job(
        job_id=job_id,
        attempt=claimed.attempt,
        worker_id="w1",
        failure=JobFailure(
            category=FailureCategory.PUBLISH,
            retryable=False,
            reason_code="cms_rejected",
            message="CMS rejected the article",
        ),
    )
    repository.close()


def test_version_option() -> None:
    result = CliRunner().invoke(content_pipeline, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output


def test_submit_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    job_id = _submit(runner, db_path, "Edge caching for APIs", "--category", "Tech", "--tag", "cdn")
    duplicate = runner.invoke(
        content_pipeline,
        [
            "jobs",
            "submit",
            "--db-path",
            str(db_path),
            "--topic",
            "  edge caching   for APIs ",
            "--category",
            "Tech",
            "--tag",
            "cdn",
        ],
    )

    assert duplicate.exit_code == 0, duplicate.output
    assert f"Job already exists: job_id={job_id}" in duplicate.output
    assert "Topic fingerprint: topic:" in duplicate.output


def test_submit_rejects_blank_topic(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        content_pipeline,
        ["jobs", "submit", "--db-path", str(tmp_path / "cli.db"), "--topic", "   "],
    )

    assert result.exit_code == 1


def test_worker_once_then_list_and_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _submit(runner, db_path, "Edge caching for APIs")

    worker = runner.invoke(content_pipeline, ["worker", "--db-path", str(db_path), "--once"])
    listed = runner.invoke(
        content_pipeline,
        ["jobs", "list", "--db-path", str(db_path), "--status", "completed"],
    )
    inspected = runner.invoke(
        content_pipeline,
        ["jobs", "inspect", "--db-path", str(db_path), "--job-id", job_id],
    )

    assert worker.exit_code == 0, worker.output
    assert "Worker summary (workers=1): processed=1 completed=1" in worker.output
    assert listed.exit_code == 0, listed.output
    assert "Jobs: 1" in listed.output
    assert f"{job_id} status=completed" in listed.output
    assert inspected.exit_code == 0, inspected.output
    assert f"Job: {job_id}" in inspected.output
    assert "Status: completed" in inspected.output
    assert "Runs: 1" in inspected.output
    assert "Degradation decisions: 0" in inspected.output


def test_worker_pool_until_idle(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    for index in range(3):
        _submit(runner, db_path, f"Topic number {index}")

    result = runner.invoke(
        content_pipeline,
        ["worker", "--db-path", str(db_path), "--workers", "2", "--until-idle"],
    )

    assert result.exit_code == 0, result.output
    assert "Worker summary (workers=2): processed=3 completed=3" in result.output


def test_inspect_unknown_job(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        content_pipeline,
        ["jobs", "inspect", "--db-path", str(tmp_path / "cli.db"), "--job-id", "nope"],
    )

    assert result.exit_code == 0
    assert "Job not found: nope" in result.output


def test_admin_retry_and_audit(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _submit(runner, db_path, "Edge caching for APIs")
    _fail(db_path, job_id)
    monkeypatch.setenv("CONTENT_PIPELINE_ACTOR", "ops@example.com")

    retried = runner.invoke(
        content_pipeline,
        [
            "admin",
            "retry",
            "--db-path",
            str(db_path),
            "--job-id",
            job_id,
            "--reason",
            "CMS credentials were rotated",
        ],
    )
    audit = runner.invoke(content_pipeline, ["admin", "audit", "--db-path", str(db_path)])

    assert retried.exit_code == 0, retried.output
    assert f"Job re-queued: {job_id} status=pending" in retried.output
    assert audit.exit_code == 0, audit.output
    assert "Audit entries: 1" in audit.output
    assert "actor=ops@example.com action=retry" in audit.output


def test_admin_bulk_retry_reports_failures(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _submit(runner, db_path, "Edge caching for APIs")
    _fail(db_path, job_id)

    result = runner.invoke(
        content_pipeline,
        [
            "admin",
            "bulk-retry",
            "--db-path",
            str(db_path),
            "--job-id",
            job_id,
            "--job-id",
            "missing-job",
            "--actor",
            "ops@example.com",
            "--reason",
            "CMS credentials were rotated",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Bulk retry: retried=1 failed=1" in result.output
    assert "failed missing-job" in result.output


def test_admin_cancel_of_completed_job_fails(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _submit(runner, db_path, "Edge caching for APIs")
    runner.invoke(content_pipeline, ["worker", "--db-path", str(db_path), "--once"])

    result = runner.invoke(
        content_pipeline,
        [
            "admin",
            "cancel",
            "--db-path",
            str(db_path),
            "--job-id",
            job_id,
            "--actor",
            "ops@example.com",
            "--reason",
            "Topic withdrawn by the editor",
        ],
    )

    assert result.exit_code == 1
    repository = JobRepository(db_path)
    assert repository.get_job(job_id).status == JobStatus.COMPLETED
    assert repository.list_audit() == []
    repository.close()


def test_admin_cancel_pending_job(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    job_id = _submit(runner, db_path, "Edge caching for APIs")

    result = runner.invoke(
        content_pipeline,
        [
            "admin",
            "cancel",
            "--db-path",
            str(db_path),
            "--job-id",
            job_id,
            "--actor",
            "ops@example.com",
            "--reason",
            "Topic withdrawn by the editor",
        ],
    )

    assert result.exit_code == 0, result.output
    assert f"Job cancelled: {job_id}" in result.output


def test_sweep_dry_run_and_stats(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    _submit(runner, db_path, "Edge caching for APIs")

    swept = runner.invoke(content_pipeline, ["sweep", "--db-path", str(db_path), "--dry-run"])
    stats = runner.invoke(content_pipeline, ["stats", "--db-path", str(db_path), "--hours", "24"])

    assert swept.exit_code == 0, swept.output
    assert "Dry run: checked=0 stale=0 reset=0 failed=0" in swept.output
    assert stats.exit_code == 0, stats.output
    assert "Content queue health (window=24h)" in stats.output
    assert "Window jobs: 1" in stats.output
    assert "Sweeps: runs=1 reset=0 failed=0" in stats.output


def test_cleanup_dry_run_then_delete(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    _submit(runner, db_path, "Edge caching for APIs")
    assert runner.invoke(content_pipeline, ["sweep", "--db-path", str(db_path)]).exit_code == 0
    repository = JobRepository(db_path)
    with Session(repository.engine) as session:
        session.exec(
            sa_update(SweepRunRow).values(started_at=LONG_AGO, finished_at=LONG_AGO),
        )
        session.commit()
    repository.close()

    dry = runner.invoke(content_pipeline, ["cleanup", "--db-path", str(db_path), "--dry-run"])
    done = runner.invoke(content_pipeline, ["cleanup", "--db-path", str(db_path)])
    again = runner.invoke(content_pipeline, ["cleanup", "--db-path", str(db_path)])

    assert dry.exit_code == 0, dry.output
    assert "Cleanup would delete: runs=0 events=0 decisions=0 sweeps=1 audit=0 total=1" in (
        dry.output
    )
    assert done.exit_code == 0, done.output
    assert "Cleanup deleted: runs=0 events=0 decisions=0 sweeps=1 audit=0 total=1" in done.output
    assert "total=0" in again.output
