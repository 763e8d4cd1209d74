"""One attempt of a content job: generate, validate, resolve taxonomy, publish."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from content_pipeline.jobs.backend.base import (
    ContentGenerator,
    ContentValidator,
    GeneratedContent,
    GenerationRequest,
    InputValidationError,
    Publisher,
    Taxonomy,
    TaxonomyResolver,
)
from content_pipeline.jobs.models import JobPayload, JobResult, PipelineStage
from content_pipeline.jobs.templates import (
    TEMPLATE_TITLE_MAX_CHARS,
    build_prompt,
    render_template_content,
)

logger = logging.getLogger(__name__)


class AttemptCancelledError(RuntimeError):
    """Raised between stages once the job's claim is no longer held."""


@dataclass(slots=True)
class ExecutionPlan:
    """How an attempt runs; the default plan is the normal full-quality path."""

    model: str | None = None
    regenerate: bool = False
    simplified_prompt: bool = False
    use_template: bool = False
    relaxed_validation: bool = False
    skip_validation: bool = False
    fixed_taxonomy: Taxonomy | None = None
    manual_review: bool = False
    manual_publish: bool = False


@dataclass(slots=True)
class AttemptState:
    """Partial output of an attempt, reused by degradation strategies."""

    stage: PipelineStage | None = None
    content: GeneratedContent | None = None
    validated: bool = False
    taxonomy: Taxonomy | None = None

    def snapshot(self) -> AttemptState:
        return AttemptState(
            stage=self.stage,
            content=self.content,
            validated=self.validated,
            taxonomy=self.taxonomy,
        )


class ContentPipeline:
    """Runs collaborator stages in order and tracks the stage in progress."""

    def __init__(
        self,
        *,
        generator: ContentGenerator,
        validator: ContentValidator,
        taxonomy_resolver: TaxonomyResolver,
        publisher: Publisher,
        default_model: str | None = None,
        max_title_chars: int = TEMPLATE_TITLE_MAX_CHARS,
    ) -> None:
        self.generator = generator
        self.validator = validator
        self.taxonomy_resolver = taxonomy_resolver
        self.publisher = publisher
        self.default_model = default_model
        self.max_title_chars = max_title_chars

    def run(
        self,
        payload: JobPayload,
        *,
        plan: ExecutionPlan | None = None,
        state: AttemptState | None = None,
        cancel_check: Callable[[], bool] | None = None,
    ) -> JobResult:
        plan = plan or ExecutionPlan()
        state = state if state is not None else AttemptState()

        def _checkpoint() -> None:
            if cancel_check is not None and cancel_check():
                raise AttemptCancelledError(f"Attempt cancelled during {state.stage}")

        state.stage = PipelineStage.GENERATE
        if not payload.topic.strip():
            raise InputValidationError("Job payload has an empty topic", reason_code="empty_topic")
        content = self._generate(payload, plan=plan, state=state)
        _checkpoint()

        state.stage = PipelineStage.VALIDATE
        if plan.skip_validation:
            state.validated = False
        elif not state.validated or plan.relaxed_validation:
            self.validator.validate(content, relaxed=plan.relaxed_validation)
            state.validated = True
            _checkpoint()

        state.stage = PipelineStage.RESOLVE_TAXONOMY
        if plan.fixed_taxonomy is not None:
            taxonomy = plan.fixed_taxonomy
        elif state.taxonomy is not None:
            taxonomy = state.taxonomy
        else:
            taxonomy = self.taxonomy_resolver.resolve(content, payload)
            _checkpoint()
        state.taxonomy = taxonomy

        state.stage = PipelineStage.PUBLISH
        external_id: str | None = None
        if not plan.manual_publish:
            external_id = self.publisher.publish(content, taxonomy)

        return JobResult(
            title=content.title,
            body=content.body,
            model=content.model,
            external_id=external_id,
            categories=taxonomy.categories,
            tags=taxonomy.tags,
            manual_review=plan.manual_review,
            manual_publish=plan.manual_publish,
        )

    def _generate(
        self,
        payload: JobPayload,
        *,
        plan: ExecutionPlan,
        state: AttemptState,
    ) -> GeneratedContent:
        if plan.use_template:
            content = render_template_content(payload, max_title_chars=self.max_title_chars)
        elif state.content is not None and not plan.regenerate:
            return state.content
        else:
            model = plan.model or payload.model or self.default_model
            content = self.generator.generate(
                GenerationRequest(
                    topic=payload.topic,
                    prompt=build_prompt(payload, simplified=plan.simplified_prompt),
                    model=model,
                    simplified=plan.simplified_prompt,
                ),
            )
            if content.model is None:
                content.model = model
        state.content = content
        state.validated = False
        state.taxonomy = None
        return content
