"""Runtime configuration for the job queue, workers, sweeper and degradation."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

_BACKOFF_CURVES = ("constant", "linear", "exponential")


@dataclass(slots=True)
class QueueSettings:
    """Worker pool and claim loop settings."""

    pool_size: int = 5
    job_timeout_seconds: float = 300.0
    poll_interval_seconds: float = 2.0
    graceful_shutdown_seconds: float = 30.0
    heartbeat_interval_seconds: float = 15.0
    default_priority: int = 100
    worker_id_prefix: str = "worker"
    duplicate_window_hours: float = 168.0


@dataclass(slots=True)
class RetrySettings:
    """Retry ceiling and backoff curve."""

    max_retries: int = 3
    backoff_curve: str = "exponential"
    backoff_base_seconds: float = 30.0
    backoff_multiplier: float = 2.0
    backoff_max_seconds: float = 900.0


@dataclass(slots=True)
class SweeperSettings:
    """Stale-job sweeper settings."""

    interval_seconds: float = 300.0
    stale_after_seconds: float = 600.0
    max_jobs_per_sweep: int = 50


@dataclass(slots=True)
class DegradationSettings:
    """Inputs used by degradation strategies."""

    enabled: bool = True
    fallback_model: str = "gpt-4o-mini"
    default_categories: tuple[str, ...] = ("General", "Technology", "Business")
    default_tags: tuple[str, ...] = ("automated", "content", "draft")


@dataclass(slots=True)
class ValidationSettings:
    """Content validation thresholds (strict and relaxed)."""

    min_title_chars: int = 10
    max_title_chars: int = 200
    min_body_chars: int = 300
    relaxed_min_title_chars: int = 3
    relaxed_min_body_chars: int = 50


@dataclass(slots=True)
class EventSettings:
    """Lifecycle event delivery settings."""

    queue_size: int = 1_000


@dataclass(slots=True)
class RetentionSettings:
    """How long history rows of finished jobs are kept before cleanup deletes them."""

    run_days: float = 30.0
    event_days: float = 30.0
    sweep_days: float = 90.0
    audit_days: float = 90.0
    max_rows_per_table: int = 1_000


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".content_pipeline.db")
    sqlite_busy_timeout_ms: int = 5_000
    queue: QueueSettings = field(default_factory=QueueSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    sweeper: SweeperSettings = field(default_factory=SweeperSettings)
    degradation: DegradationSettings = field(default_factory=DegradationSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    events: EventSettings = field(default_factory=EventSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path
            or Path(os.getenv("CONTENT_PIPELINE_DB_PATH", ".content_pipeline.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("CONTENT_PIPELINE_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            queue=QueueSettings(
                pool_size=int(os.getenv("CONTENT_PIPELINE_POOL_SIZE", "5")),
                job_timeout_seconds=float(
                    os.getenv("CONTENT_PIPELINE_JOB_TIMEOUT_SECONDS", "300"),
                ),
                poll_interval_seconds=float(
                    os.getenv("CONTENT_PIPELINE_POLL_INTERVAL_SECONDS", "2.0"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("CONTENT_PIPELINE_GRACEFUL_SHUTDOWN_SECONDS", "30"),
                ),
                heartbeat_interval_seconds=float(
                    os.getenv("CONTENT_PIPELINE_HEARTBEAT_INTERVAL_SECONDS", "15"),
                ),
                default_priority=int(os.getenv("CONTENT_PIPELINE_DEFAULT_PRIORITY", "100")),
                worker_id_prefix=os.getenv("CONTENT_PIPELINE_WORKER_ID_PREFIX", "worker"),
                duplicate_window_hours=float(
                    os.getenv("CONTENT_PIPELINE_DUPLICATE_WINDOW_HOURS", "168"),
                ),
            ),
            retry=RetrySettings(
                max_retries=int(os.getenv("CONTENT_PIPELINE_MAX_RETRIES", "3")),
                backoff_curve=os.getenv("CONTENT_PIPELINE_BACKOFF_CURVE", "exponential")
                .strip()
                .lower(),
                backoff_base_seconds=float(
                    os.getenv("CONTENT_PIPELINE_BACKOFF_BASE_SECONDS", "30"),
                ),
                backoff_multiplier=float(
                    os.getenv("CONTENT_PIPELINE_BACKOFF_MULTIPLIER", "2.0"),
                ),
                backoff_max_seconds=float(
                    os.getenv("CONTENT_PIPELINE_BACKOFF_MAX_SECONDS", "900"),
                ),
            ),
            sweeper=SweeperSettings(
                interval_seconds=float(
                    os.getenv("CONTENT_PIPELINE_SWEEP_INTERVAL_SECONDS", "300"),
                ),
                stale_after_seconds=float(
                    os.getenv("CONTENT_PIPELINE_STALE_AFTER_SECONDS", "600"),
                ),
                max_jobs_per_sweep=int(os.getenv("CONTENT_PIPELINE_MAX_JOBS_PER_SWEEP", "50")),
            ),
            degradation=DegradationSettings(
                enabled=_env_bool("CONTENT_PIPELINE_DEGRADATION_ENABLED", default=True),
                fallback_model=os.getenv("CONTENT_PIPELINE_FALLBACK_MODEL", "gpt-4o-mini"),
                default_categories=_env_csv(
                    "CONTENT_PIPELINE_DEFAULT_CATEGORIES",
                    default=("General", "Technology", "Business"),
                ),
                default_tags=_env_csv(
                    "CONTENT_PIPELINE_DEFAULT_TAGS",
                    default=("automated", "content", "draft"),
                ),
            ),
            validation=ValidationSettings(
                min_title_chars=int(os.getenv("CONTENT_PIPELINE_MIN_TITLE_CHARS", "10")),
                max_title_chars=int(os.getenv("CONTENT_PIPELINE_MAX_TITLE_CHARS", "200")),
                min_body_chars=int(os.getenv("CONTENT_PIPELINE_MIN_BODY_CHARS", "300")),
                relaxed_min_title_chars=int(
                    os.getenv("CONTENT_PIPELINE_RELAXED_MIN_TITLE_CHARS", "3"),
                ),
                relaxed_min_body_chars=int(
                    os.getenv("CONTENT_PIPELINE_RELAXED_MIN_BODY_CHARS", "50"),
                ),
            ),
            events=EventSettings(
                queue_size=int(os.getenv("CONTENT_PIPELINE_EVENT_QUEUE_SIZE", "1000")),
            ),
            retention=RetentionSettings(
                run_days=float(os.getenv("CONTENT_PIPELINE_RUN_RETENTION_DAYS", "30")),
                event_days=float(os.getenv("CONTENT_PIPELINE_EVENT_RETENTION_DAYS", "30")),
                sweep_days=float(os.getenv("CONTENT_PIPELINE_SWEEP_RETENTION_DAYS", "90")),
                audit_days=float(os.getenv("CONTENT_PIPELINE_AUDIT_RETENTION_DAYS", "90")),
                max_rows_per_table=int(
                    os.getenv("CONTENT_PIPELINE_CLEANUP_MAX_ROWS_PER_TABLE", "1000"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot honour."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("CONTENT_PIPELINE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.queue.pool_size <= 0:
            raise ValueError("CONTENT_PIPELINE_POOL_SIZE must be a positive integer.")
        if self.queue.job_timeout_seconds <= 0:
            raise ValueError("CONTENT_PIPELINE_JOB_TIMEOUT_SECONDS must be > 0.")
        if self.queue.poll_interval_seconds < 0:
            raise ValueError("CONTENT_PIPELINE_POLL_INTERVAL_SECONDS must be >= 0.")
        if self.queue.heartbeat_interval_seconds <= 0:
            raise ValueError("CONTENT_PIPELINE_HEARTBEAT_INTERVAL_SECONDS must be > 0.")
        if self.queue.graceful_shutdown_seconds < 0:
            raise ValueError("CONTENT_PIPELINE_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.queue.duplicate_window_hours < 0:
            raise ValueError("CONTENT_PIPELINE_DUPLICATE_WINDOW_HOURS must be >= 0.")
        if self.retry.max_retries < 0:
            raise ValueError("CONTENT_PIPELINE_MAX_RETRIES must be >= 0.")
        if self.retry.backoff_curve not in _BACKOFF_CURVES:
            raise ValueError(
                "CONTENT_PIPELINE_BACKOFF_CURVE must be one of "
                f"{', '.join(_BACKOFF_CURVES)}, got {self.retry.backoff_curve!r}.",
            )
        if self.retry.backoff_base_seconds < 0:
            raise ValueError("CONTENT_PIPELINE_BACKOFF_BASE_SECONDS must be >= 0.")
        if self.retry.backoff_multiplier < 1:
            raise ValueError("CONTENT_PIPELINE_BACKOFF_MULTIPLIER must be >= 1.")
        if self.retry.backoff_max_seconds < self.retry.backoff_base_seconds:
            raise ValueError(
                "CONTENT_PIPELINE_BACKOFF_MAX_SECONDS must be >= "
                "CONTENT_PIPELINE_BACKOFF_BASE_SECONDS.",
            )
        if self.sweeper.stale_after_seconds <= self.queue.heartbeat_interval_seconds:
            raise ValueError(
                "CONTENT_PIPELINE_STALE_AFTER_SECONDS must exceed "
                "CONTENT_PIPELINE_HEARTBEAT_INTERVAL_SECONDS.",
            )
        if self.sweeper.interval_seconds <= 0:
            raise ValueError("CONTENT_PIPELINE_SWEEP_INTERVAL_SECONDS must be > 0.")
        if self.sweeper.max_jobs_per_sweep <= 0:
            raise ValueError("CONTENT_PIPELINE_MAX_JOBS_PER_SWEEP must be a positive integer.")
        if self.validation.relaxed_min_body_chars > self.validation.min_body_chars:
            raise ValueError(
                "CONTENT_PIPELINE_RELAXED_MIN_BODY_CHARS must not exceed "
                "CONTENT_PIPELINE_MIN_BODY_CHARS.",
            )
        if self.validation.max_title_chars < self.validation.min_title_chars:
            raise ValueError(
                "CONTENT_PIPELINE_MAX_TITLE_CHARS must be >= CONTENT_PIPELINE_MIN_TITLE_CHARS.",
            )
        if self.events.queue_size <= 0:
            raise ValueError("CONTENT_PIPELINE_EVENT_QUEUE_SIZE must be a positive integer.")
        for name, days in (
            ("CONTENT_PIPELINE_RUN_RETENTION_DAYS", self.retention.run_days),
            ("CONTENT_PIPELINE_EVENT_RETENTION_DAYS", self.retention.event_days),
            ("CONTENT_PIPELINE_SWEEP_RETENTION_DAYS", self.retention.sweep_days),
            ("CONTENT_PIPELINE_AUDIT_RETENTION_DAYS", self.retention.audit_days),
        ):
            if days <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.retention.max_rows_per_table <= 0:
            raise ValueError(
                "CONTENT_PIPELINE_CLEANUP_MAX_ROWS_PER_TABLE must be a positive integer.",
            )


def _env_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values: list[str] = []
    for part in raw.split(","):
        normalized = part.strip()
        if normalized and normalized not in values:
            values.append(normalized)
    return tuple(values)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
