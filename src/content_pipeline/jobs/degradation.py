"""Graceful degradation: reduced-quality execution plans per failure category."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from content_pipeline.config import DegradationSettings
from content_pipeline.jobs.backend.base import Taxonomy
from content_pipeline.jobs.failure_classifier import classify_exception
from content_pipeline.jobs.models import (
    DegradationOutcomeKind,
    DegradationStrategy,
    FailureCategory,
    JobFailure,
    JobResult,
    JobView,
)
from content_pipeline.jobs.pipeline import (
    AttemptCancelledError,
    AttemptState,
    ContentPipeline,
    ExecutionPlan,
)

logger = logging.getLogger(__name__)

StrategyTable = Mapping[FailureCategory, tuple[DegradationStrategy, ...]]

DEFAULT_STRATEGY_TABLE: StrategyTable = {
    FailureCategory.GENERATION: (
        DegradationStrategy.FALLBACK_MODEL,
        DegradationStrategy.SIMPLIFIED_PROMPT,
        DegradationStrategy.TEMPLATE_FALLBACK,
    ),
    FailureCategory.OUTPUT_VALIDATION: (
        DegradationStrategy.RELAXED_VALIDATION,
        DegradationStrategy.SKIP_VALIDATION,
    ),
    FailureCategory.PUBLISH: (DegradationStrategy.SAVE_FOR_MANUAL_PUBLISH,),
    FailureCategory.TAXONOMY_RESOLUTION: (
        DegradationStrategy.DEFAULT_CATEGORIES,
        DegradationStrategy.SKIP_TAXONOMY,
    ),
    FailureCategory.INPUT_VALIDATION: (),
    FailureCategory.AUTHENTICATION: (),
    FailureCategory.INTERNAL: (),
}


@dataclass(slots=True)
class DegradationOutcome:
    """Result of executing one degradation strategy."""

    kind: DegradationOutcomeKind
    strategy: DegradationStrategy | None
    result: JobResult | None = None
    failure: JobFailure | None = None
    details: dict[str, object] = field(default_factory=dict)


def select_strategy(
    table: StrategyTable,
    category: FailureCategory,
    attempt_count: int,
) -> DegradationStrategy | None:
    """Pure lookup: the strategy at index attempt_count for the category, if any."""

    strategies = table.get(category, ())
    if attempt_count < 0 or attempt_count >= len(strategies):
        return None
    return strategies[attempt_count]


class DegradationEngine:
    """Selects and executes exactly one strategy for a failed attempt."""

    def __init__(
        self,
        *,
        settings: DegradationSettings,
        pipeline: ContentPipeline,
        strategy_table: StrategyTable | None = None,
    ) -> None:
        self.settings = settings
        self.pipeline = pipeline
        self.strategy_table = (
            strategy_table if strategy_table is not None else DEFAULT_STRATEGY_TABLE
        )

    def has_strategies(self, category: FailureCategory) -> bool:
        return self.settings.enabled and bool(self.strategy_table.get(category, ()))

    def select_strategy(
        self,
        category: FailureCategory,
        attempt_count: int,
    ) -> DegradationStrategy | None:
        if not self.settings.enabled:
            return None
        return select_strategy(self.strategy_table, category, attempt_count)

    def plan_for(self, strategy: DegradationStrategy) -> ExecutionPlan:  # noqa: PLR0911
        if strategy == DegradationStrategy.FALLBACK_MODEL:
            return ExecutionPlan(model=self.settings.fallback_model, regenerate=True)
        if strategy == DegradationStrategy.SIMPLIFIED_PROMPT:
            return ExecutionPlan(simplified_prompt=True, regenerate=True)
        if strategy == DegradationStrategy.TEMPLATE_FALLBACK:
            return ExecutionPlan(use_template=True, manual_review=True)
        if strategy == DegradationStrategy.RELAXED_VALIDATION:
            return ExecutionPlan(relaxed_validation=True)
        if strategy == DegradationStrategy.SKIP_VALIDATION:
            return ExecutionPlan(skip_validation=True, manual_review=True)
        if strategy == DegradationStrategy.SAVE_FOR_MANUAL_PUBLISH:
            return ExecutionPlan(manual_publish=True)
        if strategy == DegradationStrategy.DEFAULT_CATEGORIES:
            return ExecutionPlan(
                fixed_taxonomy=Taxonomy(
                    categories=self.settings.default_categories,
                    tags=self.settings.default_tags,
                ),
            )
        if strategy == DegradationStrategy.SKIP_TAXONOMY:
            return ExecutionPlan(fixed_taxonomy=Taxonomy(), manual_review=True)
        raise ValueError(f"Unsupported degradation strategy: {strategy}")

    def degrade(
        self,
        failure_category: FailureCategory,
        attempt_count: int,
        job: JobView,
        context: AttemptState,
        *,
        cancel_check: Callable[[], bool] | None = None,
    ) -> DegradationOutcome:
        """Run the strategy selected for (category, attempt_count) against the job.

        AttemptCancelledError propagates; any other error becomes strategy_failed.
        """

        strategy = self.select_strategy(failure_category, attempt_count)
        if strategy is None:
            return DegradationOutcome(
                kind=DegradationOutcomeKind.EXHAUSTED,
                strategy=None,
                details={
                    "category": failure_category.value,
                    "attempt_count": attempt_count,
                },
            )

        plan = self.plan_for(strategy)
        logger.info(
            "Degrading job %s with %s (category=%s attempt_count=%d)",
            job.job_id,
            strategy.value,
            failure_category.value,
            attempt_count,
        )
        try:
            result = self.pipeline.run(
                job.payload,
                plan=plan,
                state=context,
                cancel_check=cancel_check,
            )
        except AttemptCancelledError:
            raise
        except Exception as error:  # noqa: BLE001
            classification = classify_exception(error, stage=context.stage)
            logger.warning(
                "Degradation strategy %s failed for job %s: %s",
                strategy.value,
                job.job_id,
                classification.failure.message,
            )
            return DegradationOutcome(
                kind=DegradationOutcomeKind.STRATEGY_FAILED,
                strategy=strategy,
                failure=classification.failure,
                details=classification.to_event_details(),
            )
        return DegradationOutcome(
            kind=DegradationOutcomeKind.SUCCEEDED_DEGRADED,
            strategy=strategy,
            result=result,
            details={
                "model": result.model,
                "manual_review": result.manual_review,
                "manual_publish": result.manual_publish,
            },
        )
