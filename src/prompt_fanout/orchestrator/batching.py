"""Adaptive batch sizing driven by observed batch latency."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

from prompt_fanout.config import EngineSettings
from prompt_fanout.orchestrator.errors import BatchInProgressError, ConfigurationError
from prompt_fanout.orchestrator.models import RunReport
from prompt_fanout.orchestrator.rate_limiter import RollingWindowRateLimiter
from prompt_fanout.orchestrator.scheduler import JobScheduler, OnComplete
from prompt_fanout.orchestrator.sequence import SequenceAllocator
from prompt_fanout.orchestrator.work_queue import DynamicWorkQueue

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BatchTuning:
    """Batch size bounds, latency target, and asymmetric adjustment steps."""

    batch_size: int = 5
    target_latency_seconds: float = 30.0
    tolerance_seconds: float = 5.0
    min_batch_size: int = 1
    max_batch_size: int = 15
    increase_step: int = 2
    decrease_step: int = 1

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> BatchTuning:
        return cls(
            batch_size=settings.initial_batch_size,
            target_latency_seconds=settings.target_batch_latency_seconds,
            tolerance_seconds=settings.batch_latency_tolerance_seconds,
            min_batch_size=settings.min_batch_size,
            max_batch_size=settings.max_batch_size,
            increase_step=settings.batch_increase_step,
            decrease_step=settings.batch_decrease_step,
        )

    def validate(self) -> None:
        if self.min_batch_size <= 0:
            raise ConfigurationError("min_batch_size must be > 0.")
        if self.max_batch_size < self.min_batch_size:
            raise ConfigurationError("max_batch_size must be >= min_batch_size.")
        if not self.min_batch_size <= self.batch_size <= self.max_batch_size:
            raise ConfigurationError(
                f"batch_size must be within [{self.min_batch_size}, {self.max_batch_size}].",
            )
        if self.target_latency_seconds <= 0:
            raise ConfigurationError("target_latency_seconds must be > 0.")
        if self.tolerance_seconds < 0:
            raise ConfigurationError("tolerance_seconds must be >= 0.")
        if self.increase_step <= 0 or self.decrease_step <= 0:
            raise ConfigurationError("Batch adjustment steps must be > 0.")


@dataclass(slots=True, frozen=True)
class BatchRecord:
    """Outcome of one executed batch."""

    index: int
    size: int
    concurrency: int
    duration_seconds: float
    next_batch_size: int
    succeeded: int
    dead_lettered: int


@dataclass(slots=True)
class BatchRunReport:
    """All batches of one controller run plus the merged scheduler report."""

    batches: list[BatchRecord] = field(default_factory=list)
    run: RunReport = field(default_factory=RunReport)
    final_batch_size: int = 0


class AdaptiveBatchController:
    """Runs a queue in consecutive batches, resizing after each one.

    A batch that finishes faster than ``target - tolerance`` grows the next
    batch by ``increase_step``; one slower than ``target + tolerance`` shrinks
    it by ``decrease_step``. The batch size doubles as the scheduler
    concurrency for that batch. One rate limiter and one sequence allocator
    are shared by all batches of a controller.
    """

    def __init__(
        self,
        scheduler: JobScheduler,
        tuning: BatchTuning | None = None,
        *,
        rate_limiter: RollingWindowRateLimiter | None = None,
        allocator: SequenceAllocator | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.scheduler = scheduler
        self.tuning = tuning or BatchTuning.from_settings(scheduler.settings)
        self.tuning.validate()
        self.rate_limiter = rate_limiter or RollingWindowRateLimiter.per_minute(
            scheduler.settings.requests_per_minute,
        )
        self.allocator = allocator if allocator is not None else scheduler.default_allocator()
        self._clock = clock
        self._batch_running = False
        self._cancel_requested = False
        self.last_latency_seconds: float | None = None

    @property
    def batch_size(self) -> int:
        return self.tuning.batch_size

    @property
    def batch_running(self) -> bool:
        return self._batch_running

    def adjust(self, duration_seconds: float) -> int:
        """Apply one latency observation and return the next batch size."""

        if self._batch_running:
            raise BatchInProgressError("Batch size cannot change while a batch is executing.")

        tuning = self.tuning
        self.last_latency_seconds = duration_seconds
        previous = tuning.batch_size
        if duration_seconds < tuning.target_latency_seconds - tuning.tolerance_seconds:
            tuning.batch_size = min(tuning.max_batch_size, previous + tuning.increase_step)
        elif duration_seconds > tuning.target_latency_seconds + tuning.tolerance_seconds:
            tuning.batch_size = max(tuning.min_batch_size, previous - tuning.decrease_step)

        if tuning.batch_size != previous:
            logger.info(
                "Batch size %d -> %d (latency %.2fs, target %.2fs +/- %.2fs)",
                previous,
                tuning.batch_size,
                duration_seconds,
                tuning.target_latency_seconds,
                tuning.tolerance_seconds,
            )
        return tuning.batch_size

    def cancel(self) -> None:
        """Cancel the running batch and leave the rest of the queue unstarted."""

        self._cancel_requested = True
        if self.scheduler.running:
            self.scheduler.cancel()

    async def run(
        self,
        queue: DynamicWorkQueue,
        on_complete: OnComplete | None = None,
    ) -> BatchRunReport:
        """Drain ``queue`` batch by batch until it stays empty."""

        report = BatchRunReport()
        self._cancel_requested = False
        index = 0
        while not queue.is_empty and not self._cancel_requested:
            index += 1
            size = self.tuning.batch_size
            batch = DynamicWorkQueue()
            while len(batch) < size and (job := queue.pop()) is not None:
                batch.push(job)
            job_count = len(batch)

            logger.info("Batch %d started: jobs=%d concurrency=%d", index, job_count, size)
            started = self._clock()
            self._batch_running = True
            try:
                batch_report = await self.scheduler.run(
                    batch,
                    on_complete,
                    concurrency=size,
                    rate_limiter=self.rate_limiter,
                    allocator=self.allocator,
                )
            finally:
                self._batch_running = False
            duration_seconds = self._clock() - started

            report.run.merge(batch_report)
            if batch_report.cancelled:
                self._cancel_requested = True
                next_size = self.tuning.batch_size
            else:
                next_size = self.adjust(duration_seconds)
            report.batches.append(
                BatchRecord(
                    index=index,
                    size=job_count,
                    concurrency=size,
                    duration_seconds=duration_seconds,
                    next_batch_size=next_size,
                    succeeded=batch_report.succeeded,
                    dead_lettered=len(batch_report.dead_lettered),
                ),
            )
            logger.info(
                "Batch %d finished in %.2fs: succeeded=%d dead_lettered=%d",
                index,
                duration_seconds,
                batch_report.succeeded,
                len(batch_report.dead_lettered),
            )

        if self._cancel_requested:
            report.run.cancelled = True
            report.run.not_started.extend(queue.drain())
        report.final_batch_size = self.tuning.batch_size
        return report
