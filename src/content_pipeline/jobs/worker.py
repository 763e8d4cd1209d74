"""Queue worker that claims content jobs and drives them to a terminal state or requeue."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from content_pipeline.jobs.degradation import DegradationOutcome
from content_pipeline.jobs.events import EventSink
from content_pipeline.jobs.failure_classifier import classify_exception, classify_timeout
from content_pipeline.jobs.models import (
    DegradationOutcomeKind,
    DegradationStrategy,
    JobFailure,
    JobResult,
    JobStatus,
    JobView,
    LifecycleEvent,
    RunOutcome,
)
from content_pipeline.jobs.pipeline import AttemptCancelledError, AttemptState, ContentPipeline
from content_pipeline.jobs.repository import JobRepository
from content_pipeline.jobs.retry import Degrade, Requeue, RetryController, Terminal
from content_pipeline.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    degraded: int = 0
    requeued: int = 0
    failed: int = 0
    cancelled: int = 0
    timeouts: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.degraded += other.degraded
        self.requeued += other.requeued
        self.failed += other.failed
        self.cancelled += other.cancelled
        self.timeouts += other.timeouts
        self.idle_polls += other.idle_polls


@dataclass(slots=True)
class AttemptResult:
    """Explicit outcome of one future run under the job timeout."""

    ok: bool
    value: Any = None
    failure: JobFailure | None = None
    timed_out: bool = False
    cancelled: bool = False
    details: dict[str, object] = field(default_factory=dict)


class JobWorker:
    """Claims jobs and executes each attempt as a future with a timeout.

    The attempt runs on a worker-owned single-thread executor while this thread
    waits in heartbeat-sized slices. A timed out or cancelled attempt is
    abandoned: its executor is replaced and the stale thread stops at its next
    checkpoint because its claim is gone.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobRepository,
        pipeline: ContentPipeline,
        retry_controller: RetryController,
        worker_id: str,
        job_timeout_seconds: float = 300.0,
        heartbeat_interval_seconds: float = 15.0,
        poll_interval_seconds: float = 2.0,
        event_sink: EventSink | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.repository = repository
        self.pipeline = pipeline
        self.retry_controller = retry_controller
        self.worker_id = worker_id
        self.job_timeout_seconds = job_timeout_seconds
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.event_sink = event_sink
        self.stop_event = stop_event or threading.Event()
        self._executor = self._new_executor()

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    def request_stop(self) -> None:
        self.stop_event.set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self.stop_event.is_set():
            summary.idle_polls = 1
            return summary

        job = self.repository.claim_next_job(worker_id=self.worker_id)
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._emit(job, "claimed", JobStatus.PENDING, JobStatus.PROCESSING)
        run_id = self.repository.start_run(job=job, worker_id=self.worker_id)
        state = AttemptState()
        deadline = time.monotonic() + self.job_timeout_seconds
        attempt = self._execute(
            job,
            state=state,
            deadline=deadline,
            call=lambda cancel_check: self.pipeline.run(
                job.payload,
                state=state,
                cancel_check=cancel_check,
            ),
        )

        if attempt.cancelled:
            self._finish_cancelled(job, run_id=run_id, summary=summary)
            return summary
        if attempt.ok:
            self._finish_completed(job, run_id=run_id, result=attempt.value, summary=summary)
            return summary

        if attempt.timed_out:
            summary.timeouts = 1
        failure = attempt.failure
        if failure is None:
            raise RuntimeError("Failed attempt must carry a failure.")
        self._handle_failure(
            job,
            run_id=run_id,
            state=state,
            failure=failure,
            summary=summary,
            deadline=deadline,
        )
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
        handle_signals: bool = True,
    ) -> WorkerRunSummary:
        """Run until idle, stopped, or max_jobs processed.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = keep polling until stopped).
            handle_signals: Install SIGINT/SIGTERM handlers that request stop.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        handlers = stop_signal_handlers(self.request_stop) if handle_signals else _no_handlers()
        with handlers:
            while True:
                if self.stop_event.is_set():
                    return aggregate
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self.stop_event.wait(self.poll_interval_seconds)
                    continue
                consecutive_idle = 0

    def _execute(
        self,
        job: JobView,
        *,
        state: AttemptState,
        call: Callable[[Callable[[], bool]], Any],
        deadline: float,
    ) -> AttemptResult:
        """Run call on the attempt executor until it returns or the monotonic deadline passes."""

        if deadline - time.monotonic() <= 0:
            return self._timed_out(job, state=state)
        abandoned = threading.Event()

        def _cancel_check() -> bool:
            if abandoned.is_set():
                return True
            return not self.repository.holds_claim(
                job_id=job.job_id,
                attempt=job.attempt,
                worker_id=self.worker_id,
            )

        future: Future[Any] = self._executor.submit(call, _cancel_check)
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                abandoned.set()
                self._abandon(future)
                return self._timed_out(job, state=state)
            try:
                value = future.result(timeout=min(self.heartbeat_interval_seconds, remaining))
            except FutureTimeoutError:
                if future.done():
                    return self._failed_attempt(future, state=state)
                if not self.repository.touch_job(
                    job_id=job.job_id,
                    attempt=job.attempt,
                    worker_id=self.worker_id,
                ):
                    abandoned.set()
                    self._abandon(future)
                    logger.info("Job %s claim lost while running; abandoning attempt", job.job_id)
                    return AttemptResult(ok=False, cancelled=True)
                continue
            except AttemptCancelledError:
                return AttemptResult(ok=False, cancelled=True)
            except Exception:  # noqa: BLE001
                return self._failed_attempt(future, state=state)
            return AttemptResult(ok=True, value=value)

    def _timed_out(self, job: JobView, *, state: AttemptState) -> AttemptResult:
        logger.warning(
            "Job %s attempt %d timed out after %ss during %s",
            job.job_id,
            job.attempt,
            self.job_timeout_seconds,
            state.stage.value if state.stage else "start",
        )
        return AttemptResult(
            ok=False,
            failure=classify_timeout(stage=state.stage, timeout_seconds=self.job_timeout_seconds),
            timed_out=True,
        )

    def _failed_attempt(self, future: Future[Any], *, state: AttemptState) -> AttemptResult:
        error = future.exception()
        if error is None:
            return AttemptResult(ok=True, value=future.result())
        if isinstance(error, AttemptCancelledError):
            return AttemptResult(ok=False, cancelled=True)
        classification = classify_exception(error, stage=state.stage)
        return AttemptResult(
            ok=False,
            failure=classification.failure,
            details=classification.to_event_details(),
        )

    def _abandon(self, future: Future[Any]) -> None:
        future.cancel()
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._executor = self._new_executor()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"{self.worker_id}-attempt")

    def _handle_failure(  # noqa: PLR0913
        self,
        job: JobView,
        *,
        run_id: int,
        state: AttemptState,
        failure: JobFailure,
        summary: WorkerRunSummary,
        deadline: float,
    ) -> None:
        decision = self.retry_controller.on_failure(job, failure)
        if isinstance(decision, Requeue):
            requeued = self.repository.requeue_job(
                job_id=job.job_id,
                attempt=job.attempt,
                worker_id=self.worker_id,
                run_after=utc_now() + timedelta(seconds=decision.delay_seconds),
                failure=failure,
                details={"retry_number": decision.retry_number},
            )
            if not requeued:
                self._finish_cancelled(job, run_id=run_id, summary=summary, failure=failure)
                return
            logger.info(
                "Job %s requeued (retry %d/%d, delay=%.1fs): %s",
                job.job_id,
                decision.retry_number,
                job.max_retries,
                decision.delay_seconds,
                failure.reason_code,
            )
            self.repository.close_run(
                run_id=run_id,
                outcome=RunOutcome.REQUEUED,
                error_category=failure.category,
                error_message=failure.message,
            )
            self._emit(job, "requeued", JobStatus.PROCESSING, JobStatus.PENDING, failure)
            summary.requeued = 1
            return

        if isinstance(decision, Degrade):
            self._degrade(
                job,
                run_id=run_id,
                state=state,
                failure=failure,
                decision=decision,
                summary=summary,
                deadline=deadline,
            )
            return

        if isinstance(decision, Terminal) and decision.reason == "degradation_exhausted":
            self.repository.record_degradation_decision(
                job_id=job.job_id,
                run_id=run_id,
                failure_category=failure.category,
                attempt_count=job.attempt_count,
                strategy=None,
                outcome=DegradationOutcomeKind.EXHAUSTED,
                details={"reason_code": failure.reason_code},
            )
        self._finish_failed(
            job,
            run_id=run_id,
            failure=failure,
            summary=summary,
            details={"decision": decision.reason},
        )

    def _degrade(  # noqa: PLR0913
        self,
        job: JobView,
        *,
        run_id: int,
        state: AttemptState,
        failure: JobFailure,
        decision: Degrade,
        summary: WorkerRunSummary,
        deadline: float,
    ) -> None:
        engine = self.retry_controller.degradation
        if engine is None:
            raise RuntimeError("Degrade decision requires a degradation engine.")
        context = state.snapshot()
        # The strategy shares the attempt's deadline rather than getting a fresh timeout.
        attempt = self._execute(
            job,
            state=context,
            deadline=deadline,
            call=lambda cancel_check: engine.degrade(
                failure.category,
                decision.attempt_count,
                job,
                context,
                cancel_check=cancel_check,
            ),
        )
        if attempt.cancelled:
            self._finish_cancelled(job, run_id=run_id, summary=summary, failure=failure)
            return

        if attempt.ok:
            outcome: DegradationOutcome = attempt.value
        else:
            if attempt.timed_out:
                summary.timeouts = 1
            outcome = DegradationOutcome(
                kind=DegradationOutcomeKind.STRATEGY_FAILED,
                strategy=decision.strategy,
                failure=attempt.failure,
                details=attempt.details,
            )

        self.repository.record_degradation_decision(
            job_id=job.job_id,
            run_id=run_id,
            failure_category=failure.category,
            attempt_count=decision.attempt_count,
            strategy=outcome.strategy,
            outcome=outcome.kind,
            details=outcome.details,
        )

        if outcome.kind == DegradationOutcomeKind.SUCCEEDED_DEGRADED and outcome.result is not None:
            self._finish_completed(
                job,
                run_id=run_id,
                result=outcome.result,
                summary=summary,
                strategy=outcome.strategy,
            )
            return

        strategy_failure = outcome.failure or failure
        if outcome.kind == DegradationOutcomeKind.STRATEGY_FAILED and strategy_failure.retryable:
            requeued = self.repository.requeue_job(
                job_id=job.job_id,
                attempt=job.attempt,
                worker_id=self.worker_id,
                run_after=utc_now()
                + timedelta(seconds=self.retry_controller.backoff.delay_for(job.retry_count)),
                failure=strategy_failure,
                consume_retry=False,
                details={"degradation_strategy": decision.strategy.value},
            )
            if not requeued:
                self._finish_cancelled(job, run_id=run_id, summary=summary, failure=failure)
                return
            self.repository.close_run(
                run_id=run_id,
                outcome=RunOutcome.REQUEUED,
                error_category=strategy_failure.category,
                error_message=strategy_failure.message,
                degradation_strategy=decision.strategy,
            )
            self._emit(
                job,
                "requeued",
                JobStatus.PROCESSING,
                JobStatus.PENDING,
                strategy_failure,
            )
            summary.requeued = 1
            return

        self._finish_failed(
            job,
            run_id=run_id,
            failure=strategy_failure,
            summary=summary,
            details={
                "decision": outcome.kind.value,
                "degradation_strategy": decision.strategy.value,
            },
            strategy=decision.strategy,
        )

    def _finish_completed(
        self,
        job: JobView,
        *,
        run_id: int,
        result: JobResult,
        summary: WorkerRunSummary,
        strategy: DegradationStrategy | None = None,
    ) -> None:
        completed = self.repository.complete_job(
            job_id=job.job_id,
            attempt=job.attempt,
            worker_id=self.worker_id,
            result=result,
            degradation_strategy=strategy,
        )
        if not completed:
            self._finish_cancelled(job, run_id=run_id, summary=summary)
            return
        self.repository.close_run(
            run_id=run_id,
            outcome=RunOutcome.DEGRADED if strategy is not None else RunOutcome.COMPLETED,
            degradation_strategy=strategy,
        )
        if strategy is not None:
            logger.warning("Job %s completed in degraded mode (%s)", job.job_id, strategy.value)
            summary.degraded = 1
        else:
            summary.completed = 1
        self._emit(
            job,
            "degraded" if strategy is not None else "completed",
            JobStatus.PROCESSING,
            JobStatus.COMPLETED,
        )

    def _finish_failed(  # noqa: PLR0913
        self,
        job: JobView,
        *,
        run_id: int,
        failure: JobFailure,
        summary: WorkerRunSummary,
        details: dict[str, object],
        strategy: DegradationStrategy | None = None,
    ) -> None:
        failed = self.repository.fail_job(
            job_id=job.job_id,
            attempt=job.attempt,
            worker_id=self.worker_id,
            failure=failure,
            details=details,
        )
        if not failed:
            self._finish_cancelled(job, run_id=run_id, summary=summary, failure=failure)
            return
        logger.warning(
            "Job %s failed terminally (%s/%s): %s",
            job.job_id,
            failure.category.value,
            failure.reason_code,
            failure.message,
        )
        self.repository.close_run(
            run_id=run_id,
            outcome=RunOutcome.FAILED,
            error_category=failure.category,
            error_message=failure.message,
            degradation_strategy=strategy,
        )
        self._emit(job, "terminal", JobStatus.PROCESSING, JobStatus.ERROR, failure)
        summary.failed = 1

    def _finish_cancelled(
        self,
        job: JobView,
        *,
        run_id: int,
        summary: WorkerRunSummary,
        failure: JobFailure | None = None,
    ) -> None:
        logger.info("Job %s attempt %d no longer holds its claim", job.job_id, job.attempt)
        self.repository.close_run(
            run_id=run_id,
            outcome=RunOutcome.CANCELLED,
            error_category=failure.category if failure is not None else None,
            error_message=failure.message if failure is not None else None,
        )
        self._emit(job, "claim_lost", JobStatus.PROCESSING, None, failure)
        summary.cancelled = 1

    def _emit(
        self,
        job: JobView,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        failure: JobFailure | None = None,
    ) -> None:
        if self.event_sink is None:
            return
        self.event_sink.emit(
            LifecycleEvent(
                event_type=event_type,
                job_id=job.job_id,
                occurred_at=utc_now(),
                status_from=status_from,
                status_to=status_to,
                worker_id=self.worker_id,
                details={"attempt": job.attempt}
                | (failure.to_event_details() if failure is not None else {}),
            ),
        )


@contextmanager
def stop_signal_handlers(request_stop: Callable[[], None]) -> Iterator[None]:
    """Route SIGINT/SIGTERM to request_stop while the block runs in the main thread."""

    if not hasattr(signal, "SIGINT"):
        yield
        return
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.info("Received %s, finishing in-flight jobs", name)
        request_stop()

    signal.signal(signal.SIGINT, _handler)
    signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, original_sigint)
        signal.signal(signal.SIGTERM, original_sigterm)


@contextmanager
def _no_handlers() -> Iterator[None]:
    yield
