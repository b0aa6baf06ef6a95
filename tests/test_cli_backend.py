from __future__ import annotations

import shlex
import sys
from pathlib import Path

import allure
import pytest

from conftest import ECHO_AGENT_COMMAND_TEMPLATE
from prompt_fanout.config import EngineSettings
from prompt_fanout.orchestrator.backend.cli_backend import (
    BackendRunError,
    CliAgentBackend,
    _build_run_args,
)
from prompt_fanout.orchestrator.models import FailureClass, Job, JobResult
from prompt_fanout.orchestrator.scheduler import JobScheduler
from prompt_fanout.orchestrator.work_queue import DynamicWorkQueue

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Agent Command Rendering"),
]


def test_build_run_args_quotes_prompt_as_single_argument() -> None:
    run_args = _build_run_args(
        command_template='claude -p {prompt} --output-format "text"',
        prompt='hello "world"; rm -rf /',
        prompt_file=Path("input/prompt.txt"),
    )

    assert run_args == ["claude", "-p", 'hello "world"; rm -rf /', "--output-format", "text"]


def test_build_run_args_substitutes_prompt_file_path() -> None:
    run_args = _build_run_args(
        command_template="runner --in {prompt_file}",
        prompt="ignored",
        prompt_file=Path("dir with space/prompt.txt"),
    )

    assert run_args == ["runner", "--in", "dir with space/prompt.txt"]


def test_build_run_args_rejects_unknown_placeholder() -> None:
    with pytest.raises(BackendRunError, match="Unsupported command template placeholder") as raised:
        _build_run_args(
            command_template="runner {model} {prompt}",
            prompt="x",
            prompt_file=Path("p.txt"),
        )

    assert not raised.value.transient


@pytest.mark.parametrize("template", ["", "   ", "runner --fixed-args"])
def test_backend_rejects_template_without_prompt_placeholder(template: str) -> None:
    with pytest.raises(BackendRunError):
        CliAgentBackend(template)


@pytest.mark.asyncio
async def test_echo_agent_round_trip_through_prompt_file() -> None:
    backend = CliAgentBackend(ECHO_AGENT_COMMAND_TEMPLATE)

    invocation = await backend.invoke("  summarize this  \n", timeout_seconds=30.0)

    assert invocation.ok
    assert invocation.stdout.strip() == "summarize this"
    assert invocation.duration_ms >= 0


@pytest.mark.asyncio
async def test_echo_agent_non_retryable_case_reports_exit_status() -> None:
    backend = CliAgentBackend(f"{ECHO_AGENT_COMMAND_TEMPLATE} --case non_retryable")

    invocation = await backend.invoke("x", timeout_seconds=30.0)

    assert invocation.exit_status == 2
    assert "permission denied" in invocation.stderr


@pytest.mark.asyncio
async def test_slow_agent_is_terminated_on_timeout() -> None:
    backend = CliAgentBackend(
        f"{ECHO_AGENT_COMMAND_TEMPLATE} --case timeout --sleep-seconds 30",
        terminate_grace_seconds=1.0,
    )

    with pytest.raises(TimeoutError, match="timed out after 0.5s"):
        await backend.invoke("x", timeout_seconds=0.5)


@pytest.mark.asyncio
async def test_missing_command_is_non_transient() -> None:
    backend = CliAgentBackend("definitely-not-a-real-agent-binary {prompt}")

    with pytest.raises(BackendRunError, match="command not found") as raised:
        await backend.invoke("x", timeout_seconds=5.0)

    assert not raised.value.transient


@pytest.mark.asyncio
async def test_scheduler_retries_transient_agent_failure(tmp_path: Path) -> None:
    state_file = tmp_path / "state.json"
    backend = CliAgentBackend(
        f"{sys.executable} -m prompt_fanout.orchestrator.backend.echo_agent "
        f"--prompt {{prompt}} --case transient_once --state-file {shlex.quote(str(state_file))}",
    )
    settings = EngineSettings(base_delay_seconds=0.01, max_delay_seconds=0.1, jitter_seconds=0.0)
    completed: list[JobResult] = []

    report = await JobScheduler(backend, settings).run(
        DynamicWorkQueue([Job(job_id="j1", prompt="hello agent")]),
        completed.append,
    )

    [retry_event] = report.retry_events
    assert retry_event.failure_class is FailureClass.BACKEND_TRANSIENT
    assert completed[0].success
    assert completed[0].output.strip() == "hello agent"
    assert completed[0].attempts == 2
