"""Domain models for the content job queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED})


class FailureCategory(str, Enum):
    """Closed set of failure categories used by retry and degradation."""

    GENERATION = "generation"
    OUTPUT_VALIDATION = "output_validation"
    PUBLISH = "publish"
    TAXONOMY_RESOLUTION = "taxonomy_resolution"
    INPUT_VALIDATION = "input_validation"
    AUTHENTICATION = "authentication"
    INTERNAL = "internal"


class DegradationStrategy(str, Enum):
    """Reduced-quality execution modes."""

    FALLBACK_MODEL = "fallback_model"
    SIMPLIFIED_PROMPT = "simplified_prompt"
    TEMPLATE_FALLBACK = "template_fallback"
    RELAXED_VALIDATION = "relaxed_validation"
    SKIP_VALIDATION = "skip_validation"
    SAVE_FOR_MANUAL_PUBLISH = "save_for_manual_publish"
    DEFAULT_CATEGORIES = "default_categories"
    SKIP_TAXONOMY = "skip_taxonomy"


class DegradationOutcomeKind(str, Enum):
    SUCCEEDED_DEGRADED = "succeeded_degraded"
    STRATEGY_FAILED = "strategy_failed"
    EXHAUSTED = "exhausted"


class RunOutcome(str, Enum):
    """How one execution attempt ended."""

    COMPLETED = "completed"
    DEGRADED = "degraded"
    REQUEUED = "requeued"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ABANDONED = "abandoned"


class AdminAction(str, Enum):
    RETRY = "retry"
    BULK_RETRY = "bulk_retry"
    CANCEL = "cancel"
    SET_STATUS = "set_status"


class PipelineStage(str, Enum):
    """Collaborator stages of one attempt, in execution order."""

    GENERATE = "generate"
    VALIDATE = "validate"
    RESOLVE_TAXONOMY = "resolve_taxonomy"
    PUBLISH = "publish"


STAGE_FAILURE_CATEGORY: dict[PipelineStage, FailureCategory] = {
    PipelineStage.GENERATE: FailureCategory.GENERATION,
    PipelineStage.VALIDATE: FailureCategory.OUTPUT_VALIDATION,
    PipelineStage.RESOLVE_TAXONOMY: FailureCategory.TAXONOMY_RESOLUTION,
    PipelineStage.PUBLISH: FailureCategory.PUBLISH,
}


@dataclass(slots=True)
class JobPayload:
    """Generation parameters submitted with a job."""

    topic: str
    prompt_template: str | None = None
    model: str | None = None
    categories: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "topic": self.topic,
            "categories": list(self.categories),
            "tags": list(self.tags),
        }
        if self.prompt_template is not None:
            data["prompt_template"] = self.prompt_template
        if self.model is not None:
            data["model"] = self.model
        if self.extra:
            data["extra"] = dict(self.extra)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobPayload:
        extra = data.get("extra")
        return cls(
            topic=str(data.get("topic", "")),
            prompt_template=_optional_str(data.get("prompt_template")),
            model=_optional_str(data.get("model")),
            categories=tuple(str(item) for item in data.get("categories") or ()),
            tags=tuple(str(item) for item in data.get("tags") or ()),
            extra=dict(extra) if isinstance(extra, dict) else {},
        )


@dataclass(slots=True)
class JobResult:
    """Published (or saved) output of a completed job."""

    title: str
    body: str
    model: str | None = None
    external_id: str | None = None
    categories: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()
    manual_review: bool = False
    manual_publish: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "model": self.model,
            "external_id": self.external_id,
            "categories": list(self.categories),
            "tags": list(self.tags),
            "manual_review": self.manual_review,
            "manual_publish": self.manual_publish,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> JobResult:
        return cls(
            title=str(data.get("title", "")),
            body=str(data.get("body", "")),
            model=_optional_str(data.get("model")),
            external_id=_optional_str(data.get("external_id")),
            categories=tuple(str(item) for item in data.get("categories") or ()),
            tags=tuple(str(item) for item in data.get("tags") or ()),
            manual_review=bool(data.get("manual_review", False)),
            manual_publish=bool(data.get("manual_publish", False)),
        )


@dataclass(slots=True)
class JobCreate:
    """Input payload for submitting a job."""

    payload: JobPayload
    idempotency_key: str | None = None
    topic_fingerprint: str | None = None
    job_id: str | None = None
    priority: int = 100
    max_retries: int = 3
    run_after: datetime | None = None


@dataclass(slots=True)
class JobFailure:
    """Normalized failure of one attempt."""

    category: FailureCategory
    retryable: bool
    reason_code: str
    message: str
    stage: PipelineStage | None = None

    def to_event_details(self) -> dict[str, object]:
        return {
            "category": self.category.value,
            "retryable": self.retryable,
            "reason_code": self.reason_code,
            "message": self.message,
            "stage": self.stage.value if self.stage is not None else None,
        }


@dataclass(slots=True)
class JobView:
    """Readable job view for workers, admin and CLI."""

    job_id: str
    idempotency_key: str | None
    status: JobStatus
    payload: JobPayload
    result: JobResult | None
    priority: int
    retry_count: int
    max_retries: int
    attempt: int
    attempt_base: int
    run_after: datetime
    claimed_by: str | None
    claimed_at: datetime | None
    heartbeat_at: datetime | None
    last_error_category: FailureCategory | None
    last_error_message: str | None
    last_error_code: str | None
    degradation_strategy_used: DegradationStrategy | None
    created_at: datetime
    updated_at: datetime
    finished_at: datetime | None
    topic_fingerprint: str | None = None

    @property
    def attempt_count(self) -> int:
        """Zero-based index of the current attempt within its attempt sequence."""

        return max(0, self.attempt - 1 - self.attempt_base)

    @property
    def retries_left(self) -> int:
        return max(0, self.max_retries - self.retry_count)


@dataclass(slots=True)
class SubmitResult:
    """Submission outcome; created is False when an existing job was returned instead."""

    job: JobView
    created: bool


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobRunView:
    """Per-attempt execution telemetry."""

    run_id: int
    job_id: str
    attempt_no: int
    worker_id: str
    started_at: datetime
    finished_at: datetime | None
    duration_ms: int | None
    outcome: RunOutcome | None
    error_category: FailureCategory | None
    error_message: str | None
    degradation_strategy: DegradationStrategy | None


@dataclass(slots=True)
class DegradationDecisionView:
    decision_id: int
    job_id: str
    run_id: int | None
    failure_category: FailureCategory
    attempt_count: int
    strategy: DegradationStrategy | None
    outcome: DegradationOutcomeKind
    details: dict[str, Any]
    created_at: datetime


@dataclass(slots=True)
class AdminAuditView:
    """Append-only record of one operator action."""

    audit_id: int
    actor: str
    action: AdminAction
    job_id: str
    reason: str
    previous_status: JobStatus
    new_status: JobStatus
    previous_retry_count: int
    new_retry_count: int
    limit_overridden: bool
    created_at: datetime


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream, runs and degradation decisions."""

    job: JobView
    events: list[JobEventView]
    runs: list[JobRunView]
    decisions: list[DegradationDecisionView]


@dataclass(slots=True)
class SweepResult:
    """Counters of one stale-job sweep."""

    sweep_id: str
    started_at: datetime
    finished_at: datetime
    dry_run: bool = False
    jobs_checked: int = 0
    stale_found: int = 0
    jobs_reset: int = 0
    jobs_failed: int = 0
    duration_ms: int = 0
    stale_job_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CleanupResult:
    """Rows removed (or, on a dry run, eligible) per retention window."""

    dry_run: bool
    events_deleted: int = 0
    runs_deleted: int = 0
    decisions_deleted: int = 0
    sweeps_deleted: int = 0
    audit_deleted: int = 0

    @property
    def total(self) -> int:
        return (
            self.events_deleted
            + self.runs_deleted
            + self.decisions_deleted
            + self.sweeps_deleted
            + self.audit_deleted
        )


@dataclass(slots=True)
class LifecycleEvent:
    """Observer-facing notification of a job transition."""

    event_type: str
    job_id: str
    occurred_at: datetime
    status_from: JobStatus | None = None
    status_to: JobStatus | None = None
    worker_id: str | None = None
    details: dict[str, Any] = field(default_factory=dict)


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
