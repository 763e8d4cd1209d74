"""History cleanup: drops old runs, events, decisions, sweep logs and audit rows."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from content_pipeline.config import RetentionSettings
from content_pipeline.jobs.models import CleanupResult
from content_pipeline.jobs.repository import JobRepository
from content_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


class HistoryCleaner:
    """Applies the retention windows; job rows themselves are never deleted."""

    def __init__(self, *, repository: JobRepository, settings: RetentionSettings) -> None:
        self.repository = repository
        self.settings = settings

    def cleanup(self, *, dry_run: bool = False, now: datetime | None = None) -> CleanupResult:
        now = now or utc_now()
        result = self.repository.purge_history(
            run_cutoff=now - timedelta(days=self.settings.run_days),
            event_cutoff=now - timedelta(days=self.settings.event_days),
            sweep_cutoff=now - timedelta(days=self.settings.sweep_days),
            audit_cutoff=now - timedelta(days=self.settings.audit_days),
            limit=self.settings.max_rows_per_table,
            dry_run=dry_run,
        )
        logger.info(
            "Cleanup: runs=%d events=%d decisions=%d sweeps=%d audit=%d dry_run=%s",
            result.runs_deleted,
            result.events_deleted,
            result.decisions_deleted,
            result.sweeps_deleted,
            result.audit_deleted,
            dry_run,
        )
        return result
