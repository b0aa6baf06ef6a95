"""Bounded-concurrency scheduler that drains a work queue through a backend."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from prompt_fanout.config import EngineSettings
from prompt_fanout.orchestrator.backend import BackendRunError, PromptBackend
from prompt_fanout.orchestrator.errors import (
    AllocationExhaustedError,
    ConfigurationError,
    FanoutError,
)
from prompt_fanout.orchestrator.failure_classifier import (
    FailureClassification,
    classify_backend_failure,
)
from prompt_fanout.orchestrator.models import (
    DeadLetter,
    FailureClass,
    Job,
    JobResult,
    JobStatus,
    RetryEvent,
    RunReport,
)
from prompt_fanout.orchestrator.rate_limiter import RollingWindowRateLimiter
from prompt_fanout.orchestrator.retry import RetryController, RetryPolicy
from prompt_fanout.orchestrator.sequence import SequenceAllocator
from prompt_fanout.orchestrator.work_queue import DynamicWorkQueue

logger = logging.getLogger(__name__)

OnComplete = Callable[[JobResult], Awaitable[None] | None]

_ERROR_PREVIEW_CHARS = 1200


@dataclass(slots=True)
class _RunState:
    """Mutable state of one ``JobScheduler.run`` call."""

    queue: DynamicWorkQueue
    on_complete: OnComplete | None
    concurrency: int
    rate_limiter: RollingWindowRateLimiter
    allocator: SequenceAllocator | None
    wake: asyncio.Event
    cancelled: asyncio.Event
    in_flight: set[asyncio.Task[None]] = field(default_factory=set)
    retry_timers: dict[asyncio.Task[None], Job] = field(default_factory=dict)
    report: RunReport = field(default_factory=RunReport)


class JobScheduler:
    """Runs queued jobs against a backend with at most ``concurrency`` in flight.

    Each terminal job (success or dead letter) produces exactly one
    ``on_complete`` call. The callback may push derived jobs onto the queue
    being drained; the run ends only once the queue is empty, nothing is in
    flight, and no retry is waiting on its backoff timer.

    Usage:
        scheduler = JobScheduler(backend, EngineSettings(max_concurrency=4))
        report = await scheduler.run(DynamicWorkQueue(jobs), on_complete=save)
    """

    def __init__(
        self,
        backend: PromptBackend,
        settings: EngineSettings | None = None,
        *,
        retry_controller: RetryController | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self.settings.validate()
        self.backend = backend
        self.retry = retry_controller or RetryController(RetryPolicy.from_settings(self.settings))
        self._state: _RunState | None = None
        self._cancel_requested = False

    async def run(  # noqa: PLR0913
        self,
        queue: DynamicWorkQueue,
        on_complete: OnComplete | None = None,
        *,
        concurrency: int | None = None,
        rate_limiter: RollingWindowRateLimiter | None = None,
        allocator: SequenceAllocator | None = None,
    ) -> RunReport:
        """Drain ``queue`` and return the run report.

        A fresh rate limiter and (when sequential naming is enabled) a fresh
        sequence allocator are created per run unless shared ones are passed.
        A ``cancel()`` issued before the run starts applies to this run.
        """

        limit = concurrency if concurrency is not None else self.settings.max_concurrency
        if limit <= 0:
            raise ConfigurationError(f"Scheduler concurrency must be > 0, got {limit}.")
        if self._state is not None:
            raise FanoutError("Scheduler is already running.")

        state = _RunState(
            queue=queue,
            on_complete=on_complete,
            concurrency=limit,
            rate_limiter=rate_limiter
            or RollingWindowRateLimiter.per_minute(self.settings.requests_per_minute),
            allocator=allocator if allocator is not None else self.default_allocator(),
            wake=asyncio.Event(),
            cancelled=asyncio.Event(),
        )
        if self._cancel_requested:
            state.cancelled.set()
        self._state = state
        queue.add_push_listener(state.wake.set)
        logger.info("Scheduler run started: queued=%d concurrency=%d", len(queue), limit)
        try:
            await self._drain(state)
        finally:
            queue.remove_push_listener(state.wake.set)
            self._state = None
            self._cancel_requested = False

        _log_report(state.report)
        return state.report

    def cancel(self) -> None:
        """Stop admitting jobs; in-flight jobs finish but are never retried."""

        self._cancel_requested = True
        if self._state is not None:
            self._state.cancelled.set()
            self._state.wake.set()
            logger.info(
                "Scheduler cancel requested: in_flight=%d queued=%d",
                len(self._state.in_flight),
                len(self._state.queue),
            )

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested

    @property
    def running(self) -> bool:
        return self._state is not None

    def get_stats(self) -> dict[str, object]:
        """Snapshot of the current run for status reporting."""

        state = self._state
        if state is None:
            return {"running": False, "in_flight": 0, "queued": 0, "pending_retries": 0}
        report = state.report
        return {
            "running": True,
            "cancel_requested": self._cancel_requested,
            "concurrency": state.concurrency,
            "in_flight": sum(1 for task in state.in_flight if not task.done()),
            "queued": len(state.queue),
            "pending_retries": sum(1 for task in state.retry_timers if not task.done()),
            "completed": report.completed,
            "succeeded": report.succeeded,
            "retried": report.retried,
            "timeouts": report.timeouts,
            "dead_lettered": len(report.dead_lettered),
            "max_in_flight": report.max_in_flight,
            "rate_window_starts": state.rate_limiter.in_window(),
        }

    def default_allocator(self) -> SequenceAllocator | None:
        """Fresh allocator when sequential naming is enabled, else None."""

        if not self.settings.sequential_naming_enabled:
            return None
        return SequenceAllocator(max_probes=self.settings.max_allocation_probes)

    async def _drain(self, state: _RunState) -> None:
        while True:
            await self._admit_jobs(state)

            if self._cancel_requested and state.retry_timers:
                await self._finalize_cancelled_retries(state)

            state.in_flight = {task for task in state.in_flight if not task.done()}
            for timer in [timer for timer in state.retry_timers if timer.done()]:
                del state.retry_timers[timer]

            if not state.in_flight and not state.retry_timers:
                if self._cancel_requested or state.queue.is_empty:
                    break
                continue

            state.wake.clear()
            wake_waiter = asyncio.ensure_future(state.wake.wait())
            try:
                await asyncio.wait(
                    {*state.in_flight, *state.retry_timers, wake_waiter},
                    return_when=asyncio.FIRST_COMPLETED,
                )
            finally:
                wake_waiter.cancel()

        if self._cancel_requested:
            state.report.cancelled = True
            state.report.not_started.extend(state.queue.drain())

    async def _admit_jobs(self, state: _RunState) -> None:
        while not self._cancel_requested and self._active_count(state) < state.concurrency:
            if state.queue.is_empty:
                return
            # The job stays queued until a start is admitted, so cancel leaves it not_started.
            if not await state.rate_limiter.acquire(state.cancelled):
                return
            job = state.queue.pop()
            if job is None:
                return
            self._start(state, job)

    def _active_count(self, state: _RunState) -> int:
        return sum(1 for task in state.in_flight if not task.done())

    def _start(self, state: _RunState, job: Job) -> None:
        job.status = JobStatus.RUNNING
        task = asyncio.create_task(self._execute(state, job), name=f"job-{job.job_id}")
        state.in_flight.add(task)
        state.report.max_in_flight = max(state.report.max_in_flight, self._active_count(state))
        logger.debug("Job %s started (attempt %d)", job.job_id, job.attempts)

    async def _execute(self, state: _RunState, job: Job) -> None:
        timeout_seconds = job.timeout_seconds or self.settings.job_timeout_seconds
        started = time.monotonic()
        output = ""
        try:
            invocation = await asyncio.wait_for(
                self.backend.invoke(job.prompt, timeout_seconds),
                timeout=timeout_seconds,
            )
        except TimeoutError as error:
            state.report.timeouts += 1
            await self._handle_failure(
                state,
                job,
                error=str(error) or f"Backend call timed out after {timeout_seconds:g}s",
                classification=classify_backend_failure(exit_status=None, timed_out=True),
                duration_ms=_elapsed_ms(started),
                output=output,
            )
            return
        except BackendRunError as error:
            await self._handle_failure(
                state,
                job,
                error=str(error),
                classification=FailureClassification(
                    failure_class=(
                        FailureClass.BACKEND_TRANSIENT
                        if error.transient
                        else FailureClass.BACKEND_NON_RETRYABLE
                    ),
                    matched_rule="backend_run_error",
                    matched_pattern=None,
                ),
                duration_ms=_elapsed_ms(started),
                output=output,
            )
            return
        except Exception as error:  # noqa: BLE001
            await self._handle_failure(
                state,
                job,
                error=f"{type(error).__name__}: {error}",
                classification=classify_backend_failure(exit_status=None, stderr=str(error)),
                duration_ms=_elapsed_ms(started),
                output=output,
            )
            return

        duration_ms = invocation.duration_ms or _elapsed_ms(started)
        if invocation.ok:
            await self._handle_success(
                state,
                job,
                output=invocation.stdout,
                duration_ms=duration_ms,
            )
            return

        await self._handle_failure(
            state,
            job,
            error=_failure_summary(invocation.exit_status, invocation.stderr, invocation.stdout),
            classification=classify_backend_failure(
                exit_status=invocation.exit_status,
                stdout=invocation.stdout,
                stderr=invocation.stderr,
            ),
            duration_ms=duration_ms,
            output=invocation.stdout,
        )

    async def _handle_success(
        self,
        state: _RunState,
        job: Job,
        *,
        output: str,
        duration_ms: int,
    ) -> None:
        report = state.report
        if state.allocator is None:
            job.status = JobStatus.SUCCEEDED
            report.completed += 1
            report.succeeded += 1
            await self._deliver(
                state,
                _result(job, success=True, output=output, duration_ms=duration_ms),
            )
            return

        try:
            number = await state.allocator.claim_next()
        except AllocationExhaustedError as error:
            await self._dead_letter(
                state,
                job,
                error=str(error),
                failure_class=FailureClass.ALLOCATION_EXHAUSTED,
                duration_ms=duration_ms,
                output=output,
            )
            return

        job.status = JobStatus.SUCCEEDED
        report.completed += 1
        report.succeeded += 1
        result = _result(
            job,
            success=True,
            output=output,
            duration_ms=duration_ms,
            sequence_number=number,
        )
        position = len(report.results)
        if await self._deliver(state, result):
            state.allocator.commit(number)
            return
        state.allocator.abandon(number)
        report.results[position] = replace(result, sequence_number=None)
        logger.warning(
            "Sequence number %d released for job %s; its artifact was not written.",
            number,
            job.job_id,
        )

    async def _handle_failure(  # noqa: PLR0913
        self,
        state: _RunState,
        job: Job,
        *,
        error: str,
        classification: FailureClassification,
        duration_ms: int,
        output: str,
    ) -> None:
        # Billing, auth, and model errors are retried unless fail-fast is on;
        # an explicit non-retryable backend error never is.
        retryable = not self._cancel_requested and (
            classification.retryable
            or (
                classification.failure_class is not FailureClass.BACKEND_NON_RETRYABLE
                and not self.settings.fail_fast_non_retryable
            )
        )
        decision = self.retry.on_failure(
            job,
            error=error,
            failure_class=classification.failure_class,
            retryable=retryable,
        )
        if not decision.retry:
            await self._dead_letter(
                state,
                job,
                error=error,
                failure_class=classification.failure_class,
                duration_ms=duration_ms,
                output=output,
            )
            return

        state.report.retried += 1
        state.report.retry_events.append(
            RetryEvent(
                job_id=job.job_id,
                failure_class=classification.failure_class,
                delay_seconds=decision.delay_seconds,
            ),
        )
        logger.warning(
            "Job %s failed (%s); retry %d/%d in %.2fs",
            job.job_id,
            classification.failure_class.value,
            job.retry_count,
            self.retry.policy.max_retries,
            decision.delay_seconds,
        )
        timer = asyncio.create_task(
            self._requeue_after(state, job, decision.delay_seconds),
            name=f"retry-{job.job_id}",
        )
        state.retry_timers[timer] = job

    async def _requeue_after(self, state: _RunState, job: Job, delay_seconds: float) -> None:
        await asyncio.sleep(delay_seconds)
        if state.queue.push(job):
            return
        await self._dead_letter(
            state,
            job,
            error=(
                f"Job id {job.job_id!r} already queued; retry dropped. "
                f"Last error: {job.last_error}"
            ),
            failure_class=job.last_failure_class,
            duration_ms=0,
            output="",
        )

    async def _finalize_cancelled_retries(self, state: _RunState) -> None:
        pending = [(timer, job) for timer, job in state.retry_timers.items() if not timer.done()]
        for timer, _ in pending:
            timer.cancel()
        if pending:
            await asyncio.gather(*(timer for timer, _ in pending), return_exceptions=True)
        for timer, job in pending:
            del state.retry_timers[timer]
            if job.status is not JobStatus.RETRY_WAIT:
                continue
            await self._dead_letter(
                state,
                job,
                error=job.last_error or "Retry cancelled.",
                failure_class=FailureClass.CANCELLED,
                duration_ms=0,
                output="",
            )

    async def _dead_letter(  # noqa: PLR0913
        self,
        state: _RunState,
        job: Job,
        *,
        error: str,
        failure_class: FailureClass | None,
        duration_ms: int,
        output: str,
    ) -> None:
        job.status = JobStatus.DEAD_LETTERED
        job.last_error = error
        job.last_failure_class = failure_class
        state.report.completed += 1
        state.report.dead_lettered.append(
            DeadLetter(job=job, error=error, failure_class=failure_class),
        )
        await self._deliver(
            state,
            _result(
                job,
                success=False,
                output=output,
                duration_ms=duration_ms,
                error=error,
                failure_class=failure_class,
            ),
        )

    async def _deliver(self, state: _RunState, result: JobResult) -> bool:
        state.report.results.append(result)
        if state.on_complete is None:
            return True
        try:
            outcome = state.on_complete(result)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:  # noqa: BLE001
            logger.exception("on_complete callback failed for job %s", result.job_id)
            return False
        return True


def _result(  # noqa: PLR0913
    job: Job,
    *,
    success: bool,
    output: str,
    duration_ms: int,
    error: str | None = None,
    failure_class: FailureClass | None = None,
    sequence_number: int | None = None,
) -> JobResult:
    return JobResult(
        job_id=job.job_id,
        success=success,
        output=output,
        error=error,
        duration_ms=duration_ms,
        completed_at=datetime.now(UTC),
        attempts=job.attempts,
        failure_class=failure_class,
        sequence_number=sequence_number,
    )


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _failure_summary(exit_status: int, stderr: str, stdout: str) -> str:
    detail = (stderr or stdout).strip()
    if len(detail) > _ERROR_PREVIEW_CHARS:
        detail = detail[:_ERROR_PREVIEW_CHARS]
    if not detail:
        return f"Backend exited with status {exit_status}"
    return f"Backend exited with status {exit_status}: {detail}"


def _log_report(report: RunReport) -> None:
    for dead_letter in report.dead_lettered:
        logger.warning(
            "Dead-lettered job %s after %d attempt(s): %s",
            dead_letter.job.job_id,
            dead_letter.job.attempts,
            dead_letter.error,
        )
    logger.info(
        "Scheduler run finished: completed=%d succeeded=%d retried=%d dead_lettered=%d "
        "not_started=%d cancelled=%s",
        report.completed,
        report.succeeded,
        report.retried,
        len(report.dead_lettered),
        len(report.not_started),
        report.cancelled,
    )
