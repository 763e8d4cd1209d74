"""Collaborator interfaces used by the content pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from content_pipeline.jobs.models import JobPayload


@dataclass(slots=True)
class GenerationRequest:
    """Inputs for one content generation call."""

    topic: str
    prompt: str
    model: str | None = None
    simplified: bool = False


@dataclass(slots=True)
class GeneratedContent:
    title: str
    body: str
    model: str | None = None
    metadata: dict[str, object] = field(default_factory=dict)


@dataclass(slots=True)
class Taxonomy:
    categories: tuple[str, ...] = ()
    tags: tuple[str, ...] = ()


class CollaboratorError(RuntimeError):
    """Failure reported by an external collaborator.

    retryable tells the retry policy whether the same call may succeed later;
    reason_code is a stable machine-readable cause recorded on the job.
    """

    def __init__(self, message: str, *, retryable: bool, reason_code: str) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.reason_code = reason_code


class GenerationError(CollaboratorError):
    pass


class ContentValidationError(CollaboratorError):
    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        reason_code: str = "content_invalid",
    ) -> None:
        super().__init__(message, retryable=retryable, reason_code=reason_code)


class TaxonomyError(CollaboratorError):
    pass


class PublishError(CollaboratorError):
    pass


class InputValidationError(CollaboratorError):
    def __init__(self, message: str, *, reason_code: str = "invalid_input") -> None:
        super().__init__(message, retryable=False, reason_code=reason_code)


class ContentGenerator(Protocol):
    def generate(self, request: GenerationRequest) -> GeneratedContent:
        """Produce a title and body for the request."""


class ContentValidator(Protocol):
    def validate(self, content: GeneratedContent, *, relaxed: bool) -> None:
        """Raise ContentValidationError when content does not meet the policy."""


class TaxonomyResolver(Protocol):
    def resolve(self, content: GeneratedContent, payload: JobPayload) -> Taxonomy:
        """Map requested categories and tags to target identifiers."""


class Publisher(Protocol):
    def publish(self, content: GeneratedContent, taxonomy: Taxonomy) -> str:
        """Publish content and return the external id."""
