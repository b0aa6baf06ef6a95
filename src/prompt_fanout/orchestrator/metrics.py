"""Run metrics derived from scheduler reports."""

from __future__ import annotations

from collections import Counter, defaultdict, deque
from dataclasses import dataclass

from prompt_fanout.orchestrator.models import JobId, RunReport


@dataclass(slots=True)
class RetryClassMetric:
    """Retry metrics for one failure class."""

    failure_class: str
    scheduled: int
    succeeded_after_retry: int

    @property
    def success_ratio(self) -> float:
        """Share of retries of this class whose job eventually succeeded."""

        if self.scheduled == 0:
            return 0.0
        return self.succeeded_after_retry / self.scheduled


@dataclass(slots=True)
class LatencyPercentiles:
    sample_size: int
    p50_seconds: float
    p90_seconds: float
    p99_seconds: float


@dataclass(slots=True)
class RunMetricsSnapshot:
    """Aggregated metrics of one run (or several merged runs)."""

    job_count: int
    succeeded: int
    dead_lettered: int
    not_started: int
    success_rate: float | None
    timeouts: int
    max_in_flight: int
    retry_metrics: list[RetryClassMetric]
    failure_class_counts: dict[str, int]
    attempt_counts: dict[int, int]
    latency: LatencyPercentiles


def build_run_metrics(report: RunReport) -> RunMetricsSnapshot:
    """Build one metrics snapshot from a run report."""

    retry_totals = Counter[str]()
    retry_successes = Counter[str]()
    pending_retries: dict[JobId, deque[str]] = defaultdict(deque)
    for event in report.retry_events:
        failure_class = event.failure_class.value if event.failure_class else "unknown"
        retry_totals[failure_class] += 1
        pending_retries[event.job_id].append(failure_class)

    # A terminal result owns the oldest attempts - 1 retries recorded for its id.
    for result in report.results:
        pending = pending_retries.get(result.job_id)
        for _ in range(result.attempts - 1):
            if not pending:
                break
            failure_class = pending.popleft()
            if result.success:
                retry_successes[failure_class] += 1

    failure_class_counts = Counter[str]()
    for dead_letter in report.dead_lettered:
        failure_class = dead_letter.failure_class.value if dead_letter.failure_class else "unknown"
        failure_class_counts[failure_class] += 1

    attempt_counts = Counter[int](result.attempts for result in report.results)
    durations = [result.duration_ms / 1000 for result in report.results]

    return RunMetricsSnapshot(
        job_count=len(report.results),
        succeeded=report.succeeded,
        dead_lettered=len(report.dead_lettered),
        not_started=len(report.not_started),
        success_rate=_safe_ratio(numerator=report.succeeded, denominator=len(report.results)),
        timeouts=report.timeouts,
        max_in_flight=report.max_in_flight,
        retry_metrics=[
            RetryClassMetric(
                failure_class=failure_class,
                scheduled=retry_totals[failure_class],
                succeeded_after_retry=retry_successes[failure_class],
            )
            for failure_class in sorted(retry_totals)
        ],
        failure_class_counts=dict(sorted(failure_class_counts.items())),
        attempt_counts=dict(sorted(attempt_counts.items())),
        latency=LatencyPercentiles(
            sample_size=len(durations),
            p50_seconds=_percentile(durations, 0.50),
            p90_seconds=_percentile(durations, 0.90),
            p99_seconds=_percentile(durations, 0.99),
        ),
    )


def render_metrics_lines(snapshot: RunMetricsSnapshot) -> list[str]:
    """Render a snapshot as plain log-friendly lines."""

    lines = [
        f"jobs={snapshot.job_count} succeeded={snapshot.succeeded} "
        f"dead_lettered={snapshot.dead_lettered} not_started={snapshot.not_started}",
        f"success_rate={_fmt_ratio(snapshot.success_rate)} timeouts={snapshot.timeouts} "
        f"max_in_flight={snapshot.max_in_flight}",
        f"latency p50={snapshot.latency.p50_seconds:.2f}s "
        f"p90={snapshot.latency.p90_seconds:.2f}s "
        f"p99={snapshot.latency.p99_seconds:.2f}s (n={snapshot.latency.sample_size})",
    ]
    for metric in snapshot.retry_metrics:
        lines.append(
            f"retry {metric.failure_class}: scheduled={metric.scheduled} "
            f"succeeded_after_retry={metric.succeeded_after_retry} "
            f"ratio={metric.success_ratio:.2%}",
        )
    if snapshot.failure_class_counts:
        lines.append(
            "dead letters by class: "
            + " ".join(f"{key}={value}" for key, value in snapshot.failure_class_counts.items()),
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
