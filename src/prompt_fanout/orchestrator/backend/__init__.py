"""Backend invokers for the scheduler."""

from prompt_fanout.orchestrator.backend.base import BackendInvocation, PromptBackend
from prompt_fanout.orchestrator.backend.cli_backend import BackendRunError, CliAgentBackend

__all__ = [
    "BackendInvocation",
    "BackendRunError",
    "CliAgentBackend",
    "PromptBackend",
]
