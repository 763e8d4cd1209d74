from __future__ import annotations

import allure
import pytest

from conftest import ScriptedGenerator, job_view
from content_pipeline.config import DegradationSettings
from content_pipeline.jobs.backend.base import (
    GeneratedContent,
    GenerationError,
    GenerationRequest,
    PublishError,
    Taxonomy,
)
from content_pipeline.jobs.backend.echo import InMemoryPublisher, PayloadTaxonomyResolver
from content_pipeline.jobs.degradation import (
    DEFAULT_STRATEGY_TABLE,
    DegradationEngine,
    select_strategy,
)
from content_pipeline.jobs.models import (
    DegradationOutcomeKind,
    DegradationStrategy,
    FailureCategory,
    JobPayload,
    PipelineStage,
)
from content_pipeline.jobs.pipeline import AttemptState, ContentPipeline
from content_pipeline.jobs.templates import TEMPLATE_MODEL
from content_pipeline.jobs.validator import LengthContentValidator

pytestmark = [
    allure.epic("Job Queue"),
    allure.feature("Graceful Degradation"),
]

SHORT_BODY = "A compact body that is long enough for relaxed validation only."


class ShortGenerator:
    def generate(self, request: GenerationRequest) -> GeneratedContent:
        return GeneratedContent(title=f"About {request.topic}", body=SHORT_BODY, model="small")


class FailingPublisher:
    def publish(self, content: GeneratedContent, taxonomy: Taxonomy) -> str:
        raise PublishError("CMS unavailable", retryable=True, reason_code="cms_down")


def _engine(
    *,
    generator=None,
    publisher=None,
    settings: DegradationSettings | None = None,
) -> DegradationEngine:
    pipeline = ContentPipeline(
        generator=generator or ShortGenerator(),
        validator=LengthContentValidator(),
        taxonomy_resolver=PayloadTaxonomyResolver(),
        publisher=publisher or InMemoryPublisher(),
    )
    return DegradationEngine(settings=settings or DegradationSettings(), pipeline=pipeline)


def test_select_strategy_is_an_ordered_lookup() -> None:
    table = DEFAULT_STRATEGY_TABLE

    assert [
        select_strategy(table, FailureCategory.GENERATION, count) for count in range(4)
    ] == [
        DegradationStrategy.FALLBACK_MODEL,
        DegradationStrategy.SIMPLIFIED_PROMPT,
        DegradationStrategy.TEMPLATE_FALLBACK,
        None,
    ]
    assert select_strategy(table, FailureCategory.PUBLISH, 0) == (
        DegradationStrategy.SAVE_FOR_MANUAL_PUBLISH
    )
    assert select_strategy(table, FailureCategory.PUBLISH, 1) is None
    assert select_strategy(table, FailureCategory.GENERATION, -1) is None
    assert select_strategy({}, FailureCategory.GENERATION, 0) is None


@pytest.mark.parametrize(
    "category",
    [
        FailureCategory.INPUT_VALIDATION,
        FailureCategory.AUTHENTICATION,
        FailureCategory.INTERNAL,
    ],
)
def test_categories_without_strategies(category: FailureCategory) -> None:
    engine = _engine()

    assert not engine.has_strategies(category)
    assert engine.select_strategy(category, 0) is None


def test_plans_reflect_strategy_semantics() -> None:
    engine = _engine(settings=DegradationSettings(fallback_model="backup-model"))

    fallback = engine.plan_for(DegradationStrategy.FALLBACK_MODEL)
    template = engine.plan_for(DegradationStrategy.TEMPLATE_FALLBACK)
    manual = engine.plan_for(DegradationStrategy.SAVE_FOR_MANUAL_PUBLISH)
    defaults = engine.plan_for(DegradationStrategy.DEFAULT_CATEGORIES)
    skipped = engine.plan_for(DegradationStrategy.SKIP_TAXONOMY)

    assert fallback.model == "backup-model"
    assert fallback.regenerate
    assert template.use_template
    assert template.manual_review
    assert manual.manual_publish
    assert defaults.fixed_taxonomy == Taxonomy(
        categories=("General", "Technology", "Business"),
        tags=("automated", "content", "draft"),
    )
    assert skipped.fixed_taxonomy == Taxonomy()
    assert skipped.manual_review


def test_relaxed_validation_reuses_generated_content() -> None:
    generator = ScriptedGenerator()
    engine = _engine(generator=generator)
    content = ShortGenerator().generate(
        GenerationRequest(topic="Edge caching", prompt="p"),
    )
    context = AttemptState(stage=PipelineStage.VALIDATE, content=content)

    outcome = engine.degrade(FailureCategory.OUTPUT_VALIDATION, 0, job_view(), context)

    assert outcome.kind == DegradationOutcomeKind.SUCCEEDED_DEGRADED
    assert outcome.strategy == DegradationStrategy.RELAXED_VALIDATION
    assert outcome.result is not None
    assert outcome.result.body == SHORT_BODY
    assert outcome.result.external_id is not None
    assert outcome.result.manual_review is False
    assert generator.requests == []


def test_template_fallback_marks_result_for_review() -> None:
    engine = _engine()
    job = job_view(payload=JobPayload(topic="Edge caching", categories=("Tech",)))

    outcome = engine.degrade(
        FailureCategory.GENERATION,
        2,
        job,
        AttemptState(stage=PipelineStage.GENERATE),
    )

    assert outcome.kind == DegradationOutcomeKind.SUCCEEDED_DEGRADED
    assert outcome.strategy == DegradationStrategy.TEMPLATE_FALLBACK
    assert outcome.result is not None
    assert outcome.result.model == TEMPLATE_MODEL
    assert outcome.result.title.startswith("Edge caching")
    assert outcome.result.categories == ("Tech",)
    assert outcome.result.manual_review is True


def test_save_for_manual_publish_skips_publisher() -> None:
    engine = _engine(publisher=FailingPublisher())
    content = ShortGenerator().generate(GenerationRequest(topic="Edge caching", prompt="p"))
    context = AttemptState(
        stage=PipelineStage.PUBLISH,
        content=content,
        validated=True,
        taxonomy=Taxonomy(categories=("Tech",)),
    )

    outcome = engine.degrade(FailureCategory.PUBLISH, 0, job_view(), context)

    assert outcome.kind == DegradationOutcomeKind.SUCCEEDED_DEGRADED
    assert outcome.result is not None
    assert outcome.result.manual_publish is True
    assert outcome.result.external_id is None
    assert outcome.result.categories == ("Tech",)


def test_failing_strategy_reports_strategy_failed() -> None:
    error = GenerationError("still overloaded", retryable=True, reason_code="overloaded")
    engine = _engine(generator=ScriptedGenerator(error))

    outcome = engine.degrade(
        FailureCategory.GENERATION,
        0,
        job_view(),
        AttemptState(stage=PipelineStage.GENERATE),
    )

    assert outcome.kind == DegradationOutcomeKind.STRATEGY_FAILED
    assert outcome.strategy == DegradationStrategy.FALLBACK_MODEL
    assert outcome.failure is not None
    assert outcome.failure.reason_code == "overloaded"
    assert outcome.failure.retryable is True


def test_exhausted_and_disabled_engines_do_nothing() -> None:
    exhausted = _engine().degrade(
        FailureCategory.PUBLISH,
        1,
        job_view(),
        AttemptState(stage=PipelineStage.PUBLISH),
    )
    disabled_engine = _engine(settings=DegradationSettings(enabled=False))

    assert exhausted.kind == DegradationOutcomeKind.EXHAUSTED
    assert exhausted.strategy is None
    assert disabled_engine.select_strategy(FailureCategory.GENERATION, 0) is None
    assert not disabled_engine.has_strategies(FailureCategory.GENERATION)
