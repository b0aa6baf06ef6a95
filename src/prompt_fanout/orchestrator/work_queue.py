"""FIFO work queue that may grow while the scheduler drains it."""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Callable, Iterable, Iterator

from prompt_fanout.orchestrator.models import Job, JobId, JobStatus

logger = logging.getLogger(__name__)


class DynamicWorkQueue:
    """Pending jobs, appended at the tail and consumed from the head.

    A job id is held at most once at any time; pushing an id that is already
    queued is rejected. Listeners registered with ``add_push_listener`` are
    called after every accepted push so a waiting scheduler can wake up.
    """

    def __init__(self, jobs: Iterable[Job] = ()) -> None:
        self._items: deque[Job] = deque()
        self._queued_ids: set[JobId] = set()
        self._push_listeners: list[Callable[[], None]] = []
        self.total_pushed = 0
        self.total_popped = 0
        self.extend(jobs)

    def push(self, job: Job) -> bool:
        """Append ``job`` at the tail; return False if its id is already queued."""

        if job.job_id in self._queued_ids:
            logger.debug("Job %s is already queued; push ignored.", job.job_id)
            return False
        job.status = JobStatus.PENDING
        self._items.append(job)
        self._queued_ids.add(job.job_id)
        self.total_pushed += 1
        for listener in tuple(self._push_listeners):
            listener()
        return True

    def extend(self, jobs: Iterable[Job]) -> int:
        """Push several jobs in order; return how many were accepted."""

        return sum(1 for job in jobs if self.push(job))

    def pop(self) -> Job | None:
        """Remove and return the head job, or None when empty."""

        if not self._items:
            return None
        job = self._items.popleft()
        self._queued_ids.discard(job.job_id)
        self.total_popped += 1
        return job

    def drain(self) -> list[Job]:
        """Remove and return every queued job."""

        drained: list[Job] = []
        while (job := self.pop()) is not None:
            drained.append(job)
        return drained

    def add_push_listener(self, listener: Callable[[], None]) -> None:
        self._push_listeners.append(listener)

    def remove_push_listener(self, listener: Callable[[], None]) -> None:
        if listener in self._push_listeners:
            self._push_listeners.remove(listener)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._queued_ids

    def __iter__(self) -> Iterator[Job]:
        return iter(tuple(self._items))

    def __len__(self) -> int:
        return len(self._items)

    @property
    def is_empty(self) -> bool:
        return not self._items
