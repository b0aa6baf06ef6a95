from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from prompt_fanout.orchestrator.metrics import build_run_metrics, render_metrics_lines
from prompt_fanout.orchestrator.models import (
    DeadLetter,
    FailureClass,
    Job,
    JobResult,
    RetryEvent,
    RunReport,
)

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Run Metrics"),
]


def _result(job_id: str, *, success: bool, duration_ms: int, attempts: int = 1) -> JobResult:
    return JobResult(
        job_id=job_id,
        success=success,
        output="",
        error=None if success else "boom",
        duration_ms=duration_ms,
        completed_at=datetime(2026, 1, 1, tzinfo=UTC),
        attempts=attempts,
    )


def test_build_run_metrics_aggregates_retries_latency_and_failures() -> None:
    report = RunReport(
        completed=4,
        succeeded=3,
        retried=3,
        timeouts=1,
        max_in_flight=2,
        results=[
            _result("a", success=True, duration_ms=1_000),
            _result("b", success=True, duration_ms=2_000, attempts=2),
            _result("c", success=True, duration_ms=3_000),
            _result("d", success=False, duration_ms=4_000, attempts=3),
        ],
        retry_events=[
            RetryEvent(job_id="b", failure_class=FailureClass.TIMEOUT, delay_seconds=1.0),
            RetryEvent(job_id="d", failure_class=FailureClass.TIMEOUT, delay_seconds=1.0),
            RetryEvent(job_id="d", failure_class=FailureClass.BACKEND_TRANSIENT, delay_seconds=2.0),
        ],
        dead_lettered=[
            DeadLetter(
                job=Job(job_id="d", prompt="d"),
                error="boom",
                failure_class=FailureClass.BACKEND_TRANSIENT,
            ),
        ],
    )

    snapshot = build_run_metrics(report)

    assert snapshot.job_count == 4
    assert snapshot.success_rate == pytest.approx(0.75)
    assert snapshot.attempt_counts == {1: 2, 2: 1, 3: 1}
    assert snapshot.failure_class_counts == {"backend_transient": 1}
    retry = {metric.failure_class: metric for metric in snapshot.retry_metrics}
    assert retry["timeout"].scheduled == 2
    assert retry["timeout"].succeeded_after_retry == 1
    assert retry["timeout"].success_ratio == pytest.approx(0.5)
    assert retry["backend_transient"].success_ratio == 0.0
    assert snapshot.latency.sample_size == 4
    assert snapshot.latency.p50_seconds == pytest.approx(2.5)
    assert snapshot.latency.p99_seconds == pytest.approx(3.97)


def test_empty_report_has_neutral_metrics() -> None:
    snapshot = build_run_metrics(RunReport())

    assert snapshot.success_rate is None
    assert snapshot.latency.p90_seconds == 0.0
    assert snapshot.retry_metrics == []
    assert "success_rate=n/a" in render_metrics_lines(snapshot)[1]


def test_render_metrics_lines_lists_retry_classes() -> None:
    report = RunReport(
        completed=1,
        succeeded=1,
        results=[_result("a", success=True, duration_ms=500, attempts=2)],
        retry_events=[
            RetryEvent(job_id="a", failure_class=FailureClass.TIMEOUT, delay_seconds=1.0),
        ],
    )

    lines = render_metrics_lines(build_run_metrics(report))

    assert lines[0] == "jobs=1 succeeded=1 dead_lettered=0 not_started=0"
    assert "retry timeout: scheduled=1 succeeded_after_retry=1 ratio=100.00%" in lines


def test_retries_are_credited_to_the_job_run_that_scheduled_them() -> None:
    report = RunReport(
        completed=2,
        succeeded=1,
        results=[
            _result("a", success=False, duration_ms=100, attempts=2),
            _result("a", success=True, duration_ms=100, attempts=1),
        ],
        retry_events=[
            RetryEvent(job_id="a", failure_class=FailureClass.TIMEOUT, delay_seconds=1.0),
        ],
    )

    [metric] = build_run_metrics(report).retry_metrics

    assert metric.scheduled == 1
    assert metric.succeeded_after_retry == 0
