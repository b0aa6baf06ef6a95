"""Backend interface for job execution."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True, frozen=True)
class BackendInvocation:
    """Result envelope of one backend call."""

    stdout: str
    exit_status: int
    duration_ms: int
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class PromptBackend(Protocol):
    """Protocol implemented by backend invokers.

    Implementations raise ``TimeoutError`` when the call exceeds
    ``timeout_seconds``; a nonzero ``exit_status`` marks any other failure.
    """

    async def invoke(self, prompt: str, timeout_seconds: float) -> BackendInvocation:
        """Run one generation call for ``prompt``."""
