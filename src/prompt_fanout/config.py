"""Runtime configuration for the job orchestration engine."""

from __future__ import annotations

import os
from dataclasses import dataclass, replace
from enum import Enum

import psutil

from prompt_fanout.orchestrator.errors import ConfigurationError

_BYTES_PER_GB = 1024**3


class PerformanceMode(str, Enum):
    """Host capacity tiers used to pick concurrency and batch defaults."""

    TURBO = "turbo"
    STANDARD = "standard"
    CONSERVATIVE = "conservative"


@dataclass(slots=True, frozen=True)
class PerformanceProfile:
    """Concurrency and batch defaults for one host tier."""

    mode: PerformanceMode
    max_concurrency: int
    batch_size: int


PERFORMANCE_PROFILES: dict[PerformanceMode, PerformanceProfile] = {
    PerformanceMode.TURBO: PerformanceProfile(
        PerformanceMode.TURBO,
        max_concurrency=6,
        batch_size=10,
    ),
    PerformanceMode.STANDARD: PerformanceProfile(
        PerformanceMode.STANDARD,
        max_concurrency=3,
        batch_size=5,
    ),
    PerformanceMode.CONSERVATIVE: PerformanceProfile(
        PerformanceMode.CONSERVATIVE,
        max_concurrency=2,
        batch_size=3,
    ),
}


@dataclass(slots=True)
class EngineSettings:
    """Tunables recognized by scheduler, retry, rate limiter, and batch controller."""

    max_concurrency: int = 3
    max_retries: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 60.0
    jitter_seconds: float = 0.999
    requests_per_minute: int = 0
    job_timeout_seconds: float = 300.0
    target_batch_latency_seconds: float = 30.0
    batch_latency_tolerance_seconds: float = 5.0
    min_batch_size: int = 1
    max_batch_size: int = 15
    initial_batch_size: int = 5
    batch_increase_step: int = 2
    batch_decrease_step: int = 1
    sequential_naming_enabled: bool = False
    max_allocation_probes: int = 1_000
    fail_fast_non_retryable: bool = False

    @classmethod
    def from_env(cls) -> EngineSettings:
        """Load settings from ``PROMPT_FANOUT_*`` environment variables."""

        defaults = cls()
        return cls(
            max_concurrency=_env_int("PROMPT_FANOUT_MAX_CONCURRENCY", defaults.max_concurrency),
            max_retries=_env_int("PROMPT_FANOUT_MAX_RETRIES", defaults.max_retries),
            base_delay_seconds=_env_float(
                "PROMPT_FANOUT_BASE_DELAY_SECONDS",
                defaults.base_delay_seconds,
            ),
            max_delay_seconds=_env_float(
                "PROMPT_FANOUT_MAX_DELAY_SECONDS",
                defaults.max_delay_seconds,
            ),
            jitter_seconds=_env_float("PROMPT_FANOUT_JITTER_SECONDS", defaults.jitter_seconds),
            requests_per_minute=_env_int(
                "PROMPT_FANOUT_REQUESTS_PER_MINUTE",
                defaults.requests_per_minute,
            ),
            job_timeout_seconds=_env_float(
                "PROMPT_FANOUT_JOB_TIMEOUT_SECONDS",
                defaults.job_timeout_seconds,
            ),
            target_batch_latency_seconds=_env_float(
                "PROMPT_FANOUT_TARGET_BATCH_LATENCY_SECONDS",
                defaults.target_batch_latency_seconds,
            ),
            batch_latency_tolerance_seconds=_env_float(
                "PROMPT_FANOUT_BATCH_LATENCY_TOLERANCE_SECONDS",
                defaults.batch_latency_tolerance_seconds,
            ),
            min_batch_size=_env_int("PROMPT_FANOUT_MIN_BATCH_SIZE", defaults.min_batch_size),
            max_batch_size=_env_int("PROMPT_FANOUT_MAX_BATCH_SIZE", defaults.max_batch_size),
            initial_batch_size=_env_int(
                "PROMPT_FANOUT_INITIAL_BATCH_SIZE",
                defaults.initial_batch_size,
            ),
            batch_increase_step=_env_int(
                "PROMPT_FANOUT_BATCH_INCREASE_STEP",
                defaults.batch_increase_step,
            ),
            batch_decrease_step=_env_int(
                "PROMPT_FANOUT_BATCH_DECREASE_STEP",
                defaults.batch_decrease_step,
            ),
            sequential_naming_enabled=_env_bool(
                "PROMPT_FANOUT_SEQUENTIAL_NAMING",
                default=defaults.sequential_naming_enabled,
            ),
            max_allocation_probes=_env_int(
                "PROMPT_FANOUT_MAX_ALLOCATION_PROBES",
                defaults.max_allocation_probes,
            ),
            fail_fast_non_retryable=_env_bool(
                "PROMPT_FANOUT_FAIL_FAST_NON_RETRYABLE",
                default=defaults.fail_fast_non_retryable,
            ),
        )

    def for_host(self, profile: PerformanceProfile | None = None) -> EngineSettings:
        """Return a copy with concurrency and batch size tuned to the host tier."""

        resolved = profile or detect_performance_profile()
        initial = min(max(resolved.batch_size, self.min_batch_size), self.max_batch_size)
        return replace(
            self,
            max_concurrency=resolved.max_concurrency,
            initial_batch_size=initial,
        )

    def validate(self) -> None:
        """Raise ConfigurationError for settings that cannot drive a run."""

        if self.max_concurrency <= 0:
            raise ConfigurationError("PROMPT_FANOUT_MAX_CONCURRENCY must be > 0.")
        if self.max_retries < 0:
            raise ConfigurationError("PROMPT_FANOUT_MAX_RETRIES must be >= 0.")
        if self.base_delay_seconds < 0:
            raise ConfigurationError("PROMPT_FANOUT_BASE_DELAY_SECONDS must be >= 0.")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ConfigurationError(
                "PROMPT_FANOUT_MAX_DELAY_SECONDS must be >= PROMPT_FANOUT_BASE_DELAY_SECONDS.",
            )
        if self.jitter_seconds < 0:
            raise ConfigurationError("PROMPT_FANOUT_JITTER_SECONDS must be >= 0.")
        if self.requests_per_minute < 0:
            raise ConfigurationError("PROMPT_FANOUT_REQUESTS_PER_MINUTE must be >= 0.")
        if self.job_timeout_seconds <= 0:
            raise ConfigurationError("PROMPT_FANOUT_JOB_TIMEOUT_SECONDS must be > 0.")
        if self.target_batch_latency_seconds <= 0:
            raise ConfigurationError("PROMPT_FANOUT_TARGET_BATCH_LATENCY_SECONDS must be > 0.")
        if self.batch_latency_tolerance_seconds < 0:
            raise ConfigurationError(
                "PROMPT_FANOUT_BATCH_LATENCY_TOLERANCE_SECONDS must be >= 0.",
            )
        if self.min_batch_size <= 0:
            raise ConfigurationError("PROMPT_FANOUT_MIN_BATCH_SIZE must be > 0.")
        if self.max_batch_size < self.min_batch_size:
            raise ConfigurationError(
                "PROMPT_FANOUT_MAX_BATCH_SIZE must be >= PROMPT_FANOUT_MIN_BATCH_SIZE.",
            )
        if not self.min_batch_size <= self.initial_batch_size <= self.max_batch_size:
            raise ConfigurationError(
                "PROMPT_FANOUT_INITIAL_BATCH_SIZE must lie within the min/max batch size.",
            )
        if self.batch_increase_step <= 0 or self.batch_decrease_step <= 0:
            raise ConfigurationError("Batch increase/decrease steps must be > 0.")
        if self.max_allocation_probes <= 0:
            raise ConfigurationError("PROMPT_FANOUT_MAX_ALLOCATION_PROBES must be > 0.")


def detect_performance_profile(
    *,
    cpu_count: int | None = None,
    ram_gb: float | None = None,
) -> PerformanceProfile:
    """Pick a host tier from CPU cores and total memory."""

    cores = cpu_count if cpu_count is not None else os.cpu_count() or 4
    memory_gb = ram_gb if ram_gb is not None else psutil.virtual_memory().total / _BYTES_PER_GB

    if cores >= 8 and memory_gb >= 16:
        return PERFORMANCE_PROFILES[PerformanceMode.TURBO]
    if cores >= 4 and memory_gb >= 8:
        return PERFORMANCE_PROFILES[PerformanceMode.STANDARD]
    return PERFORMANCE_PROFILES[PerformanceMode.CONSERVATIVE]


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ConfigurationError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value.strip())
    except ValueError as error:
        raise ConfigurationError(f"Invalid float value for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value for {name}: {value!r}")
