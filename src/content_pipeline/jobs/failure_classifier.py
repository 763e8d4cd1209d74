"""Deterministic failure classification for worker retry policy."""

from __future__ import annotations

from dataclasses import dataclass

from content_pipeline.jobs.backend.base import (
    CollaboratorError,
    ContentValidationError,
    GenerationError,
    InputValidationError,
    PublishError,
    TaxonomyError,
)
from content_pipeline.jobs.models import (
    STAGE_FAILURE_CATEGORY,
    FailureCategory,
    JobFailure,
    PipelineStage,
)

FAILURE_CLASSIFIER_VERSION = 1

_ERROR_TYPE_CATEGORY: tuple[tuple[type[CollaboratorError], FailureCategory], ...] = (
    (InputValidationError, FailureCategory.INPUT_VALIDATION),
    (GenerationError, FailureCategory.GENERATION),
    (ContentValidationError, FailureCategory.OUTPUT_VALIDATION),
    (TaxonomyError, FailureCategory.TAXONOMY_RESOLUTION),
    (PublishError, FailureCategory.PUBLISH),
)

_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "invalid credentials",
    "401",
    "403",
)
_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "insufficient",
    "billing",
    "payment",
    "credits",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "timed out",
    "timeout",
    "temporarily unavailable",
    "service unavailable",
    "bad gateway",
    "502",
    "503",
    "504",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
)


@dataclass(slots=True)
class FailureClassification:
    """Classifier diagnostics kept next to the normalized failure."""

    failure: JobFailure
    matched_rule: str
    matched_pattern: str | None

    def to_event_details(self) -> dict[str, object]:
        return {
            "classifier_version": FAILURE_CLASSIFIER_VERSION,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
            **self.failure.to_event_details(),
        }


def classify_timeout(*, stage: PipelineStage | None, timeout_seconds: float) -> JobFailure:
    """Timeouts are always retryable and take the category of the running stage."""

    category = STAGE_FAILURE_CATEGORY[stage] if stage is not None else FailureCategory.INTERNAL
    stage_name = _stage_prefix(stage)
    return JobFailure(
        category=category,
        retryable=True,
        reason_code=f"{stage_name}_timeout",
        message=f"Attempt exceeded {timeout_seconds:g}s during {stage_name}",
        stage=stage,
    )


def classify_exception(
    error: BaseException,
    *,
    stage: PipelineStage | None,
) -> FailureClassification:
    """Turn any exception raised during an attempt into a normalized failure."""

    message = str(error) or type(error).__name__
    stage_category = (
        STAGE_FAILURE_CATEGORY[stage] if stage is not None else FailureCategory.INTERNAL
    )
    haystack = f"{type(error).__name__}\n{message}".lower()

    if isinstance(error, CollaboratorError):
        pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
        if pattern is not None and not isinstance(error, InputValidationError):
            return _classification(
                category=FailureCategory.AUTHENTICATION,
                retryable=False,
                reason_code=error.reason_code,
                message=message,
                stage=stage,
                matched_rule="access_or_auth",
                matched_pattern=pattern,
            )
        return _classification(
            category=_collaborator_category(error, fallback=stage_category),
            retryable=error.retryable,
            reason_code=error.reason_code,
            message=message,
            stage=stage,
            matched_rule="collaborator_error",
            matched_pattern=None,
        )

    if isinstance(error, TimeoutError):
        return _classification(
            category=stage_category,
            retryable=True,
            reason_code=f"{_stage_prefix(stage)}_timeout",
            message=message,
            stage=stage,
            matched_rule="timeout",
            matched_pattern=None,
        )

    pattern = _first_match(haystack, _ACCESS_OR_AUTH_PATTERNS)
    if pattern is not None:
        return _classification(
            category=FailureCategory.AUTHENTICATION,
            retryable=False,
            reason_code="access_or_auth",
            message=message,
            stage=stage,
            matched_rule="access_or_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if pattern is not None:
        return _classification(
            category=stage_category,
            retryable=False,
            reason_code=f"{_stage_prefix(stage)}_quota_exhausted",
            message=message,
            stage=stage,
            matched_rule="billing_or_quota",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return _classification(
            category=stage_category,
            retryable=True,
            reason_code=f"{_stage_prefix(stage)}_rate_limited",
            message=message,
            stage=stage,
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or isinstance(error, ConnectionError):
        return _classification(
            category=stage_category,
            retryable=True,
            reason_code=f"{_stage_prefix(stage)}_transient",
            message=message,
            stage=stage,
            matched_rule="connection_error" if pattern is None else "generic_transient",
            matched_pattern=pattern,
        )

    return _classification(
        category=FailureCategory.INTERNAL,
        retryable=False,
        reason_code=f"{_stage_prefix(stage)}_unexpected_error",
        message=message,
        stage=stage,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _collaborator_category(
    error: CollaboratorError,
    *,
    fallback: FailureCategory,
) -> FailureCategory:
    for error_type, category in _ERROR_TYPE_CATEGORY:
        if isinstance(error, error_type):
            return category
    return fallback


def _classification(  # noqa: PLR0913
    *,
    category: FailureCategory,
    retryable: bool,
    reason_code: str,
    message: str,
    stage: PipelineStage | None,
    matched_rule: str,
    matched_pattern: str | None,
) -> FailureClassification:
    return FailureClassification(
        failure=JobFailure(
            category=category,
            retryable=retryable,
            reason_code=reason_code,
            message=message,
            stage=stage,
        ),
        matched_rule=matched_rule,
        matched_pattern=matched_pattern,
    )


def _stage_prefix(stage: PipelineStage | None) -> str:
    return stage.value if stage is not None else "attempt"


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
