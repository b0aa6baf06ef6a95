"""Subprocess-based backend invoker for CLI generation agents."""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import time
from collections.abc import Mapping
from pathlib import Path
from tempfile import TemporaryDirectory

from prompt_fanout.orchestrator.backend.base import BackendInvocation

logger = logging.getLogger(__name__)


class BackendRunError(RuntimeError):
    """Backend execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Run a command template such as ``claude -p {prompt}`` once per job.

    ``{prompt}`` is substituted shell-quoted; ``{prompt_file}`` points to a
    temporary file holding the prompt, for agents that read long prompts from
    disk. The process is terminated when the timeout elapses.
    """

    def __init__(
        self,
        command_template: str,
        *,
        env: Mapping[str, str] | None = None,
        terminate_grace_seconds: float = 2.0,
    ) -> None:
        _validate_template(command_template)
        self.command_template = command_template.strip()
        self.env = dict(env) if env is not None else None
        self.terminate_grace_seconds = terminate_grace_seconds

    async def invoke(self, prompt: str, timeout_seconds: float) -> BackendInvocation:
        with TemporaryDirectory(prefix="prompt-fanout-") as tmp_dir:
            prompt_file = Path(tmp_dir) / "prompt.txt"
            prompt_file.write_text(prompt, "utf-8")
            run_args = _build_run_args(
                command_template=self.command_template,
                prompt=prompt,
                prompt_file=prompt_file,
            )
            return await self._run(run_args, timeout_seconds=timeout_seconds)

    async def _run(self, run_args: list[str], *, timeout_seconds: float) -> BackendInvocation:
        env = os.environ.copy()
        if self.env:
            env.update(self.env)

        started = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *run_args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
            )
        except FileNotFoundError as error:
            raise BackendRunError(
                f"CLI backend command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise BackendRunError(
                f"CLI backend failed to start: {error}",
                transient=True,
            ) from error

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout_seconds)
        except TimeoutError:
            await _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
            raise TimeoutError(
                f"CLI backend {run_args[0]} timed out after {timeout_seconds:g}s",
            ) from None
        except asyncio.CancelledError:
            await _terminate_process(process, grace_seconds=self.terminate_grace_seconds)
            raise

        duration_ms = int((time.monotonic() - started) * 1000)
        exit_status = process.returncode if process.returncode is not None else -1
        logger.debug("CLI backend %s exited with %d in %dms", run_args[0], exit_status, duration_ms)
        return BackendInvocation(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            exit_status=exit_status,
            duration_ms=duration_ms,
        )


def _validate_template(command_template: str) -> None:
    stripped = command_template.strip()
    if not stripped:
        raise BackendRunError("CLI backend command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise BackendRunError(
            "CLI backend command template must include {prompt} or {prompt_file}.",
            transient=False,
        )


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
) -> list[str]:
    try:
        rendered = command_template.strip().format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
        )
    except (KeyError, IndexError, ValueError) as error:
        raise BackendRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise BackendRunError(
            "CLI backend command template rendered empty command.",
            transient=False,
        )
    return argv


async def _terminate_process(process: asyncio.subprocess.Process, *, grace_seconds: float) -> None:
    if process.returncode is not None:
        return
    try:
        process.terminate()
    except ProcessLookupError:
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=grace_seconds)
    except TimeoutError:
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()
