"""Shared test fixtures."""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Sequence

import pytest

from prompt_fanout.config import EngineSettings
from prompt_fanout.orchestrator.backend import BackendInvocation

ECHO_AGENT_COMMAND_TEMPLATE = (
    f"{sys.executable} -m prompt_fanout.orchestrator.backend.echo_agent "
    "--prompt-file {prompt_file}"
)

Outcome = BackendInvocation | BaseException | float


def ok(stdout: str = "done") -> BackendInvocation:
    return BackendInvocation(stdout=stdout, exit_status=0, duration_ms=1)


def failed(stderr: str = "boom", *, exit_status: int = 1) -> BackendInvocation:
    return BackendInvocation(stdout="", stderr=stderr, exit_status=exit_status, duration_ms=1)


class ScriptedBackend:
    """In-process backend replaying scripted outcomes per prompt.

    Each call pops the next outcome scripted for its prompt: a
    ``BackendInvocation`` is returned, an exception is raised, and a float
    means "sleep that long, then succeed". Unscripted calls sleep ``delay``
    and echo the prompt.
    """

    def __init__(
        self,
        *,
        delay: float = 0.0,
        outcomes: dict[str, Sequence[Outcome]] | None = None,
    ) -> None:
        self.delay = delay
        self._outcomes = {prompt: list(items) for prompt, items in (outcomes or {}).items()}
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def invoke(
        self,
        prompt: str,
        timeout_seconds: float,  # noqa: ARG002
    ) -> BackendInvocation:
        self.calls.append(prompt)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            script = self._outcomes.get(prompt)
            outcome = script.pop(0) if script else None
            if isinstance(outcome, float):
                await asyncio.sleep(outcome)
                return ok(f"out:{prompt}")
            await asyncio.sleep(self.delay)
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, BackendInvocation):
                return outcome
            return ok(f"out:{prompt}")
        finally:
            self.in_flight -= 1


@pytest.fixture()
def fast_settings() -> EngineSettings:
    """Settings with near-zero backoff so retry paths finish quickly."""

    return EngineSettings(
        max_concurrency=3,
        max_retries=3,
        base_delay_seconds=0.001,
        max_delay_seconds=0.01,
        jitter_seconds=0.0,
        job_timeout_seconds=5.0,
    )


class FakeClock:
    """Manually advanced monotonic clock with an awaitable sleep."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.now += seconds
        await asyncio.sleep(0)


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()
