"""Retry decisions and backoff curves."""

from __future__ import annotations

from dataclasses import dataclass

from content_pipeline.config import RetrySettings
from content_pipeline.jobs.degradation import DegradationEngine
from content_pipeline.jobs.models import DegradationStrategy, JobFailure, JobView


@dataclass(slots=True, frozen=True)
class BackoffPolicy:
    """Delay before retry number N (1-based); non-decreasing in N and capped."""

    curve: str = "exponential"
    base_seconds: float = 30.0
    multiplier: float = 2.0
    max_seconds: float = 900.0

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> BackoffPolicy:
        return cls(
            curve=settings.backoff_curve,
            base_seconds=settings.backoff_base_seconds,
            multiplier=settings.backoff_multiplier,
            max_seconds=settings.backoff_max_seconds,
        )

    def delay_for(self, retry_number: int) -> float:
        steps = max(1, retry_number) - 1
        if self.curve == "constant":
            delay = self.base_seconds
        elif self.curve == "linear":
            delay = self.base_seconds * (steps + 1)
        elif self.curve == "exponential":
            delay = self.base_seconds
            for _ in range(steps):
                if delay >= self.max_seconds:
                    break
                delay *= self.multiplier
        else:
            raise ValueError(f"Unsupported backoff curve: {self.curve}")
        return min(self.max_seconds, delay)


@dataclass(slots=True, frozen=True)
class Requeue:
    delay_seconds: float
    retry_number: int


@dataclass(slots=True, frozen=True)
class Degrade:
    strategy: DegradationStrategy
    attempt_count: int


@dataclass(slots=True, frozen=True)
class Terminal:
    reason: str


RetryDecision = Requeue | Degrade | Terminal


class RetryController:
    """Decides what happens to a job after a failed attempt.

    Non-retryable failures are terminal. Retryable failures are requeued with
    backoff while retry budget remains; once it is spent the degradation engine
    gets one chance per attempt, and without a strategy the job is terminal.
    """

    def __init__(
        self,
        *,
        backoff: BackoffPolicy,
        degradation: DegradationEngine | None = None,
    ) -> None:
        self.backoff = backoff
        self.degradation = degradation

    def on_failure(self, job: JobView, failure: JobFailure) -> RetryDecision:
        if not failure.retryable:
            return Terminal(reason="non_retryable")
        if job.retry_count < job.max_retries:
            retry_number = job.retry_count + 1
            return Requeue(
                delay_seconds=self.backoff.delay_for(retry_number),
                retry_number=retry_number,
            )
        if self.degradation is not None:
            strategy = self.degradation.select_strategy(failure.category, job.attempt_count)
            if strategy is not None:
                return Degrade(strategy=strategy, attempt_count=job.attempt_count)
            if self.degradation.has_strategies(failure.category):
                return Terminal(reason="degradation_exhausted")
        return Terminal(reason="retries_exhausted")
