"""Rolling-window admission control for backend invocation starts."""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import NamedTuple

from prompt_fanout.orchestrator.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 60.0


class RateDecision(NamedTuple):
    proceed: bool
    wait_seconds: float


class RollingWindowRateLimiter:
    """Admit at most ``max_requests`` starts in any trailing window.

    Start timestamps are kept individually and pruned once they leave the
    window, so there is no bucket edge where two full allowances could be
    granted back to back. ``max_requests=0`` disables limiting.
    """

    def __init__(
        self,
        max_requests: int,
        *,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[object]] | None = None,
    ) -> None:
        if max_requests < 0:
            raise ConfigurationError("Rate limiter max_requests must be >= 0.")
        if window_seconds <= 0:
            raise ConfigurationError("Rate limiter window_seconds must be > 0.")
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._sleep = sleep or asyncio.sleep
        self._starts: deque[float] = deque()
        self._lock = threading.Lock()

    @classmethod
    def per_minute(cls, requests_per_minute: int, **kwargs) -> RollingWindowRateLimiter:
        return cls(requests_per_minute, window_seconds=DEFAULT_WINDOW_SECONDS, **kwargs)

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def admit(self) -> RateDecision:
        """Count one start if the window has room, else report how long to wait."""

        if not self.enabled:
            return RateDecision(proceed=True, wait_seconds=0.0)

        with self._lock:
            now = self._clock()
            self._prune(now)
            if len(self._starts) < self.max_requests:
                self._starts.append(now)
                return RateDecision(proceed=True, wait_seconds=0.0)
            wait_seconds = self._starts[0] + self.window_seconds - now
            return RateDecision(proceed=False, wait_seconds=max(wait_seconds, 0.0))

    async def acquire(self, interrupt: asyncio.Event | None = None) -> bool:
        """Wait without blocking the event loop until a start is admitted.

        Returns False, without counting a start, as soon as ``interrupt`` is
        set; the pending wait is abandoned rather than slept out.
        """

        while True:
            if interrupt is not None and interrupt.is_set():
                return False
            decision = self.admit()
            if decision.proceed:
                return True
            logger.debug("Rate limit reached; waiting %.3fs.", decision.wait_seconds)
            if interrupt is None:
                await self._sleep(decision.wait_seconds)
                continue
            sleeper = asyncio.ensure_future(self._sleep(decision.wait_seconds))
            waiter = asyncio.ensure_future(interrupt.wait())
            try:
                await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                sleeper.cancel()
                waiter.cancel()

    def in_window(self) -> int:
        """Starts currently counted inside the trailing window."""

        with self._lock:
            self._prune(self._clock())
            return len(self._starts)

    def _prune(self, now: float) -> None:
        horizon = now - self.window_seconds
        while self._starts and self._starts[0] <= horizon:
            self._starts.popleft()
