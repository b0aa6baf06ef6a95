"""Retry decisions with capped exponential backoff and jitter."""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import NamedTuple

from prompt_fanout.config import EngineSettings
from prompt_fanout.orchestrator.errors import ConfigurationError
from prompt_fanout.orchestrator.models import FailureClass, Job, JobStatus

logger = logging.getLogger(__name__)


class RetryDecision(NamedTuple):
    retry: bool
    delay_seconds: float


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Retry budget and backoff shape shared by all jobs of a run."""

    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    jitter_seconds: float = 0.999

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> RetryPolicy:
        return cls(
            max_retries=settings.max_retries,
            base_delay_seconds=settings.base_delay_seconds,
            max_delay_seconds=settings.max_delay_seconds,
            jitter_seconds=settings.jitter_seconds,
        )


class RetryController:
    """Decides per failed job whether and when it runs again.

    Retry state lives on the ``Job`` itself (``retry_count``,
    ``backoff_seconds``, ``last_error``), so the controller holds nothing
    per job and can be shared freely.
    """

    def __init__(self, policy: RetryPolicy, *, rng: random.Random | None = None) -> None:
        if policy.max_retries < 0:
            raise ConfigurationError("max_retries must be >= 0.")
        if policy.max_delay_seconds < policy.base_delay_seconds:
            raise ConfigurationError("max_delay_seconds must be >= base_delay_seconds.")
        self.policy = policy
        self._random = rng or random.Random()  # noqa: S311

    def backoff_delay(self, retry_count: int) -> float:
        """Jitter-free delay before retry number ``retry_count + 1``."""

        return min(
            self.policy.max_delay_seconds,
            self.policy.base_delay_seconds * (2 ** max(retry_count, 0)),
        )

    def on_failure(
        self,
        job: Job,
        *,
        error: str,
        failure_class: FailureClass | None = None,
        retryable: bool = True,
    ) -> RetryDecision:
        """Record the failure on ``job`` and return the retry decision."""

        job.last_error = error
        job.last_failure_class = failure_class

        if not retryable or job.retry_count >= self.policy.max_retries:
            job.status = JobStatus.DEAD_LETTERED
            logger.debug(
                "Job %s exhausted retries after %d attempt(s): %s",
                job.job_id,
                job.attempts,
                error,
            )
            return RetryDecision(retry=False, delay_seconds=0.0)

        jitter = 0.0
        if self.policy.jitter_seconds:
            jitter = self._random.uniform(0, self.policy.jitter_seconds)
        delay_seconds = self.backoff_delay(job.retry_count) + jitter
        job.retry_count += 1
        job.backoff_seconds = delay_seconds
        job.status = JobStatus.RETRY_WAIT
        return RetryDecision(retry=True, delay_seconds=delay_seconds)
