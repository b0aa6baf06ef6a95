"""Engine-level error taxonomy."""

from __future__ import annotations


class FanoutError(RuntimeError):
    """Base class for errors raised by the orchestration engine."""


class ConfigurationError(FanoutError, ValueError):
    """Settings that cannot drive a run; raised before any job starts."""


class AllocationExhaustedError(FanoutError):
    """Sequential allocator gave up after its probe limit."""

    def __init__(self, *, probes: int, last_candidate: int) -> None:
        super().__init__(
            f"Sequence allocation exhausted after {probes} probes "
            f"(last candidate slot: {last_candidate}).",
        )
        self.probes = probes
        self.last_candidate = last_candidate


class BatchInProgressError(FanoutError):
    """Batch size change requested while a batch is executing."""
