"""Queue health metrics rendered by the stats command."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import timedelta

from content_pipeline.jobs.models import (
    DegradationDecisionView,
    DegradationOutcomeKind,
    JobRunView,
    JobStatus,
    JobView,
    SweepResult,
)
from content_pipeline.jobs.repository import JobRepository
from content_pipeline.storage.common import utc_now

MAX_SWEEPS_IN_WINDOW = 1000


@dataclass(slots=True)
class RunDurationPercentiles:
    """Duration percentiles over finished runs."""

    sample_size: int
    avg_seconds: float
    p50_seconds: float
    p95_seconds: float


@dataclass(slots=True)
class QueueMetricsSnapshot:
    """Aggregated queue metrics for one time window."""

    status_counts: dict[str, int]
    window_job_count: int
    completed_total: int
    degraded_total: int
    error_total: int
    retried_job_total: int
    error_category_counts: dict[str, int]
    run_outcome_counts: dict[str, int]
    run_durations: RunDurationPercentiles | None
    strategy_counts: dict[str, int]
    decision_outcome_counts: dict[str, int]
    sweep_count: int
    swept_reset_total: int
    swept_failed_total: int

    @property
    def degraded_rate(self) -> float | None:
        return _safe_ratio(numerator=self.degraded_total, denominator=self.completed_total)


def collect_queue_metrics(*, repository: JobRepository, hours: int) -> QueueMetricsSnapshot:
    """Read the window from the store and build a snapshot."""

    since = utc_now() - timedelta(hours=hours)
    return build_queue_metrics(
        status_counts={
            status.value: count for status, count in repository.count_jobs_by_status().items()
        },
        window_jobs=repository.list_jobs_for_metrics(since=since),
        window_runs=repository.list_runs_for_metrics(since=since),
        window_decisions=repository.list_decisions_for_metrics(since=since),
        window_sweeps=repository.list_sweep_runs(limit=MAX_SWEEPS_IN_WINDOW, since=since),
    )


def build_queue_metrics(
    *,
    status_counts: dict[str, int],
    window_jobs: list[JobView],
    window_runs: list[JobRunView],
    window_decisions: list[DegradationDecisionView],
    window_sweeps: list[SweepResult],
) -> QueueMetricsSnapshot:
    """Build one metrics snapshot from job/run/decision views."""

    completed_total = 0
    degraded_total = 0
    error_total = 0
    retried_job_total = 0
    error_category_counts = Counter[str]()
    for job in window_jobs:
        if job.retry_count > 0:
            retried_job_total += 1
        if job.status == JobStatus.COMPLETED:
            completed_total += 1
            if job.degradation_strategy_used is not None:
                degraded_total += 1
        elif job.status == JobStatus.ERROR:
            error_total += 1
            if job.last_error_category is not None:
                error_category_counts[job.last_error_category.value] += 1

    run_outcome_counts = Counter[str]()
    durations: list[float] = []
    for run in window_runs:
        run_outcome_counts[run.outcome.value if run.outcome is not None else "running"] += 1
        if run.duration_ms is not None:
            durations.append(run.duration_ms / 1000)

    strategy_counts = Counter[str]()
    decision_outcome_counts = Counter[str]()
    for decision in window_decisions:
        decision_outcome_counts[decision.outcome.value] += 1
        if (
            decision.outcome == DegradationOutcomeKind.SUCCEEDED_DEGRADED
            and decision.strategy is not None
        ):
            strategy_counts[decision.strategy.value] += 1

    run_durations = None
    if durations:
        run_durations = RunDurationPercentiles(
            sample_size=len(durations),
            avg_seconds=sum(durations) / len(durations),
            p50_seconds=_percentile(durations, 0.50),
            p95_seconds=_percentile(durations, 0.95),
        )

    real_sweeps = [sweep for sweep in window_sweeps if not sweep.dry_run]
    return QueueMetricsSnapshot(
        status_counts=dict(sorted(status_counts.items())),
        window_job_count=len(window_jobs),
        completed_total=completed_total,
        degraded_total=degraded_total,
        error_total=error_total,
        retried_job_total=retried_job_total,
        error_category_counts=dict(sorted(error_category_counts.items())),
        run_outcome_counts=dict(sorted(run_outcome_counts.items())),
        run_durations=run_durations,
        strategy_counts=dict(sorted(strategy_counts.items())),
        decision_outcome_counts=dict(sorted(decision_outcome_counts.items())),
        sweep_count=len(window_sweeps),
        swept_reset_total=sum(sweep.jobs_reset for sweep in real_sweeps),
        swept_failed_total=sum(sweep.jobs_failed for sweep in real_sweeps),
    )


def render_stats_lines(*, snapshot: QueueMetricsSnapshot, hours: int) -> list[str]:
    """Render operator-facing metrics lines for CLI output."""

    lines = [
        f"Content queue health (window={hours}h)",
        "Queue status: " + (_fmt_key_value(snapshot.status_counts) or "none"),
        f"Window jobs: {snapshot.window_job_count}",
        (
            "Completions: "
            f"completed={snapshot.completed_total} "
            f"degraded={snapshot.degraded_total} "
            f"degraded_rate={_fmt_ratio(snapshot.degraded_rate)}"
        ),
        f"Errors: {snapshot.error_total}",
        "Error categories: " + (_fmt_key_value(snapshot.error_category_counts) or "none"),
        f"Jobs with retries: {snapshot.retried_job_total}",
        "Run outcomes: " + (_fmt_key_value(snapshot.run_outcome_counts) or "none"),
    ]

    if snapshot.run_durations is not None:
        durations = snapshot.run_durations
        lines.append(
            f"Run durations: n={durations.sample_size} "
            f"avg={durations.avg_seconds:.2f}s "
            f"p50={durations.p50_seconds:.2f}s "
            f"p95={durations.p95_seconds:.2f}s",
        )
    else:
        lines.append("Run durations: none")

    lines.append(
        "Degradation strategies used: " + (_fmt_key_value(snapshot.strategy_counts) or "none"),
    )
    lines.append(
        "Degradation outcomes: " + (_fmt_key_value(snapshot.decision_outcome_counts) or "none"),
    )
    lines.append(
        f"Sweeps: runs={snapshot.sweep_count} "
        f"reset={snapshot.swept_reset_total} "
        f"failed={snapshot.swept_failed_total}",
    )
    return lines


def _safe_ratio(*, numerator: int, denominator: int) -> float | None:
    if denominator <= 0:
        return None
    return numerator / denominator


def _fmt_ratio(value: float | None) -> str:
    if value is None:
        return "n/a"
    return f"{value:.2%}"


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
