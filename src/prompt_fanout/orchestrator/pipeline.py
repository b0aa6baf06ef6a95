"""Ordered multi-stage pipelines built on the job scheduler."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType

from prompt_fanout.orchestrator.errors import ConfigurationError
from prompt_fanout.orchestrator.models import Job, JobResult, RunReport
from prompt_fanout.orchestrator.scheduler import JobScheduler, OnComplete
from prompt_fanout.orchestrator.work_queue import DynamicWorkQueue

logger = logging.getLogger(__name__)

StageOutputs = Mapping[str, tuple[JobResult, ...]]
JobBuilder = Callable[[StageOutputs], Iterable[Job]]
StageCallback = Callable[[JobResult, DynamicWorkQueue], Awaitable[None] | None]


class StageFailurePolicy(str, Enum):
    """What a dead letter inside a stage does to the rest of the pipeline."""

    ABORT = "abort"
    CONTINUE = "continue"


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    ABORTED = "aborted"


class PipelineStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_FAILED = "partially_failed"
    ABORTED = "aborted"


@dataclass(slots=True)
class PipelineStage:
    """One stage: fixed jobs, or a builder reading earlier stage outputs.

    ``on_complete`` receives each terminal result together with the stage's
    queue, so it may push follow-up jobs that run inside the same stage.
    """

    name: str
    jobs: Sequence[Job] = ()
    build_jobs: JobBuilder | None = None
    on_complete: StageCallback | None = None
    concurrency: int | None = None


@dataclass(slots=True)
class StageOutcome:
    name: str
    status: StageStatus = StageStatus.PENDING
    report: RunReport | None = None

    @property
    def outputs(self) -> tuple[JobResult, ...]:
        """Successful results of this stage, in completion order."""

        if self.report is None:
            return ()
        return tuple(result for result in self.report.results if result.success)


@dataclass(slots=True)
class PipelineReport:
    status: PipelineStatus = PipelineStatus.PENDING
    stages: list[StageOutcome] = field(default_factory=list)

    @property
    def final_outputs(self) -> tuple[JobResult, ...]:
        """Successful results of the last stage that actually ran."""

        executed = [stage for stage in self.stages if stage.status is not StageStatus.PENDING]
        if not executed:
            return ()
        return executed[-1].outputs

    def stage(self, name: str) -> StageOutcome:
        for outcome in self.stages:
            if outcome.name == name:
                return outcome
        raise KeyError(name)


class PipelineExecutor:
    """Runs stages strictly in order; a stage starts once the previous one drained."""

    def __init__(
        self,
        scheduler: JobScheduler,
        *,
        failure_policy: StageFailurePolicy = StageFailurePolicy.ABORT,
    ) -> None:
        self.scheduler = scheduler
        self.failure_policy = failure_policy

    async def run_stages(self, stages: Sequence[PipelineStage]) -> PipelineReport:
        names = [stage.name for stage in stages]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate pipeline stage names: {', '.join(duplicates)}")

        report = PipelineReport(
            status=PipelineStatus.RUNNING,
            stages=[StageOutcome(name=stage.name) for stage in stages],
        )
        outputs: dict[str, tuple[JobResult, ...]] = {}

        for stage, outcome in zip(stages, report.stages, strict=True):
            outcome.status = StageStatus.RUNNING
            jobs = list(stage.jobs)
            if stage.build_jobs is not None:
                jobs.extend(stage.build_jobs(MappingProxyType(dict(outputs))))
            queue = DynamicWorkQueue(jobs)
            logger.info("Stage %s started: jobs=%d", stage.name, len(queue))

            outcome.report = await self.scheduler.run(
                queue,
                _stage_callback(stage, queue),
                concurrency=stage.concurrency,
            )
            outputs[stage.name] = outcome.outputs
            outcome.status = self._stage_status(outcome.report)
            logger.info(
                "Stage %s %s: succeeded=%d dead_lettered=%d",
                stage.name,
                outcome.status.value,
                outcome.report.succeeded,
                len(outcome.report.dead_lettered),
            )
            if outcome.status is StageStatus.ABORTED:
                logger.warning("Pipeline aborted at stage %s", stage.name)
                break

        report.status = _pipeline_status(report.stages)
        return report

    def _stage_status(self, run_report: RunReport) -> StageStatus:
        if run_report.cancelled:
            return StageStatus.ABORTED
        if not run_report.dead_lettered:
            return StageStatus.COMPLETED
        if self.failure_policy is StageFailurePolicy.ABORT:
            return StageStatus.ABORTED
        return StageStatus.PARTIALLY_FAILED


def _stage_callback(stage: PipelineStage, queue: DynamicWorkQueue) -> OnComplete | None:
    if stage.on_complete is None:
        return None
    callback = stage.on_complete

    async def _on_complete(result: JobResult) -> None:
        outcome = callback(result, queue)
        if inspect.isawaitable(outcome):
            await outcome

    return _on_complete


def _pipeline_status(stages: list[StageOutcome]) -> PipelineStatus:
    statuses = {outcome.status for outcome in stages}
    if StageStatus.ABORTED in statuses:
        return PipelineStatus.ABORTED
    if statuses <= {StageStatus.COMPLETED}:
        return PipelineStatus.COMPLETED
    return PipelineStatus.PARTIALLY_FAILED
