"""Stale-job sweeper: reclaims jobs whose worker stopped heartbeating."""

from __future__ import annotations

import logging
import threading
import time
from datetime import timedelta
from uuid import uuid4

from content_pipeline.config import SweeperSettings
from content_pipeline.jobs.events import EventSink
from content_pipeline.jobs.models import JobStatus, LifecycleEvent, SweepResult
from content_pipeline.jobs.repository import WORKER_LOST_CODE, JobRepository
from content_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


class StaleJobSweeper:
    """Returns abandoned processing jobs to the queue or fails them at the retry ceiling."""

    def __init__(
        self,
        *,
        repository: JobRepository,
        settings: SweeperSettings,
        event_sink: EventSink | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.event_sink = event_sink

    def sweep(self, *, dry_run: bool = False) -> SweepResult:
        started = time.monotonic()
        started_at = utc_now()
        cutoff = started_at - timedelta(seconds=self.settings.stale_after_seconds)
        result = SweepResult(
            sweep_id=str(uuid4()),
            started_at=started_at,
            finished_at=started_at,
            dry_run=dry_run,
            jobs_checked=self.repository.count_processing(),
        )
        stale_jobs = self.repository.list_stale_jobs(
            cutoff=cutoff,
            limit=self.settings.max_jobs_per_sweep,
        )
        result.stale_found = len(stale_jobs)
        result.stale_job_ids = [job.job_id for job in stale_jobs]

        for job in stale_jobs:
            if dry_run:
                logger.info(
                    "Dry run: job %s stale since %s (worker=%s attempt=%d)",
                    job.job_id,
                    (job.heartbeat_at or job.claimed_at or job.updated_at).isoformat(),
                    job.claimed_by or "-",
                    job.attempt,
                )
                continue
            new_status = self.repository.reclaim_stale_job(job=job, cutoff=cutoff)
            if new_status is None:
                logger.debug("Job %s changed before it could be reclaimed", job.job_id)
                continue
            if new_status == JobStatus.PENDING:
                result.jobs_reset += 1
            else:
                result.jobs_failed += 1
            logger.warning(
                "Reclaimed stale job %s from worker %s (attempt %d) -> %s",
                job.job_id,
                job.claimed_by or "-",
                job.attempt,
                new_status.value,
            )
            if self.event_sink is not None:
                self.event_sink.emit(
                    LifecycleEvent(
                        event_type="swept",
                        job_id=job.job_id,
                        occurred_at=utc_now(),
                        status_from=JobStatus.PROCESSING,
                        status_to=new_status,
                        worker_id=job.claimed_by,
                        details={"attempt": job.attempt, "reason_code": WORKER_LOST_CODE},
                    ),
                )

        result.finished_at = utc_now()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        self.repository.record_sweep_run(result)
        logger.info(
            "Sweep %s: checked=%d stale=%d reset=%d failed=%d dry_run=%s (%dms)",
            result.sweep_id,
            result.jobs_checked,
            result.stale_found,
            result.jobs_reset,
            result.jobs_failed,
            dry_run,
            result.duration_ms,
        )
        return result

    def run_forever(self, stop_event: threading.Event) -> int:
        """Sweep every interval until stop_event is set; returns the number of sweeps."""

        sweeps = 0
        while not stop_event.is_set():
            try:
                self.sweep()
            except Exception:  # noqa: BLE001
                logger.exception("Stale-job sweep failed")
            sweeps += 1
            stop_event.wait(self.settings.interval_seconds)
        return sweeps
