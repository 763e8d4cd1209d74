"""Collaborator interfaces and local implementations."""

from content_pipeline.jobs.backend.base import (
    CollaboratorError,
    ContentGenerator,
    ContentValidationError,
    ContentValidator,
    GeneratedContent,
    GenerationError,
    GenerationRequest,
    InputValidationError,
    PublishError,
    Publisher,
    Taxonomy,
    TaxonomyError,
    TaxonomyResolver,
)
from content_pipeline.jobs.backend.echo import (
    EchoGenerator,
    InMemoryPublisher,
    PayloadTaxonomyResolver,
)

__all__ = [
    "CollaboratorError",
    "ContentGenerator",
    "ContentValidationError",
    "ContentValidator",
    "EchoGenerator",
    "GeneratedContent",
    "GenerationError",
    "GenerationRequest",
    "InMemoryPublisher",
    "InputValidationError",
    "PayloadTaxonomyResolver",
    "PublishError",
    "Publisher",
    "Taxonomy",
    "TaxonomyError",
    "TaxonomyResolver",
]
