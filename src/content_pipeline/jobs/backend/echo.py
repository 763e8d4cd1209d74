"""Deterministic local collaborators for offline runs and tests."""

from __future__ import annotations

import hashlib
import threading

from content_pipeline.jobs.backend.base import (
    GeneratedContent,
    GenerationRequest,
    Taxonomy,
)
from content_pipeline.jobs.models import JobPayload

_PARAGRAPH = (
    "This section walks through the background of {topic}, the main ideas "
    "practitioners rely on, and the trade-offs that matter when applying them "
    "in day to day work."
)


class EchoGenerator:
    """Builds a stable article from the request without calling a model."""

    def __init__(self, *, paragraphs: int = 3) -> None:
        self.paragraphs = paragraphs

    def generate(self, request: GenerationRequest) -> GeneratedContent:
        topic = request.topic.strip()
        count = max(1, self.paragraphs - 1) if request.simplified else self.paragraphs
        body = "\n\n".join(_PARAGRAPH.format(topic=topic) for _ in range(count))
        return GeneratedContent(
            title=f"Understanding {topic}",
            body=body,
            model=request.model or "echo",
            metadata={"backend": "echo", "simplified": request.simplified},
        )


class PayloadTaxonomyResolver:
    """Uses the categories and tags requested in the payload as-is."""

    def resolve(self, content: GeneratedContent, payload: JobPayload) -> Taxonomy:
        del content
        return Taxonomy(categories=payload.categories, tags=payload.tags)


class InMemoryPublisher:
    """Keeps published items in memory and returns content-hash ids."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.published: dict[str, tuple[GeneratedContent, Taxonomy]] = {}

    def publish(self, content: GeneratedContent, taxonomy: Taxonomy) -> str:
        digest = hashlib.sha256(f"{content.title}\n{content.body}".encode()).hexdigest()
        external_id = f"local-{digest[:12]}"
        with self._lock:
            self.published[external_id] = (content, taxonomy)
        return external_id
