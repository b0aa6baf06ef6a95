"""Domain models for jobs, results, and run reports."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

JobId = str | int


class JobStatus(str, Enum):
    """Job lifecycle states inside one scheduler run."""

    PENDING = "pending"
    RUNNING = "running"
    RETRY_WAIT = "retry_wait"
    SUCCEEDED = "succeeded"
    DEAD_LETTERED = "dead_lettered"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy and reporting."""

    TIMEOUT = "timeout"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    ALLOCATION_EXHAUSTED = "allocation_exhausted"
    CANCELLED = "cancelled"


RETRYABLE_FAILURE_CLASSES = frozenset({FailureClass.TIMEOUT, FailureClass.BACKEND_TRANSIENT})


@dataclass(slots=True)
class Job:
    """One unit of work; owned by the scheduler until a terminal outcome."""

    job_id: JobId
    prompt: str
    payload: Any = None
    timeout_seconds: float | None = None
    submitted_at: float = field(default_factory=time.monotonic)
    retry_count: int = 0
    backoff_seconds: float = 0.0
    status: JobStatus = JobStatus.PENDING
    last_error: str | None = None
    last_failure_class: FailureClass | None = None

    @property
    def attempts(self) -> int:
        return self.retry_count + 1


@dataclass(slots=True, frozen=True)
class JobResult:
    """Terminal outcome handed to exactly one callback invocation."""

    job_id: JobId
    success: bool
    output: str
    error: str | None
    duration_ms: int
    completed_at: datetime
    attempts: int = 1
    failure_class: FailureClass | None = None
    sequence_number: int | None = None


@dataclass(slots=True, frozen=True)
class DeadLetter:
    """Permanently failed job with its last error recorded verbatim."""

    job: Job
    error: str
    failure_class: FailureClass | None


@dataclass(slots=True, frozen=True)
class RetryEvent:
    """One scheduled retry, kept for per-class retry metrics."""

    job_id: JobId
    failure_class: FailureClass | None
    delay_seconds: float


@dataclass(slots=True)
class RunReport:
    """Aggregate counters and outcomes of one scheduler run."""

    completed: int = 0
    succeeded: int = 0
    retried: int = 0
    timeouts: int = 0
    max_in_flight: int = 0
    cancelled: bool = False
    dead_lettered: list[DeadLetter] = field(default_factory=list)
    not_started: list[Job] = field(default_factory=list)
    results: list[JobResult] = field(default_factory=list)
    retry_events: list[RetryEvent] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return not self.dead_lettered and not self.not_started and not self.cancelled

    def merge(self, other: RunReport) -> None:
        """Fold another run's counters into this report."""

        self.completed += other.completed
        self.succeeded += other.succeeded
        self.retried += other.retried
        self.timeouts += other.timeouts
        self.max_in_flight = max(self.max_in_flight, other.max_in_flight)
        self.cancelled = self.cancelled or other.cancelled
        self.dead_lettered.extend(other.dead_lettered)
        self.not_started.extend(other.not_started)
        self.results.extend(other.results)
        self.retry_events.extend(other.retry_events)
