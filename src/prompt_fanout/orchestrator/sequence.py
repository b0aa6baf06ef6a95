"""Gapless sequential numbering for jobs that complete in arbitrary order.

A number is claimed by exclusively locking its slot, held while the caller
writes the artifact for it, then committed, at which point the slot is
permanently occupied. Two stores are provided: an in-memory one and a
directory one that uses atomic ``mkdir`` as the exclusive-create primitive
so that several processes sharing an output directory agree on numbering.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from enum import Enum
from pathlib import Path
from typing import Protocol

from prompt_fanout.orchestrator.errors import AllocationExhaustedError, ConfigurationError

logger = logging.getLogger(__name__)


class SlotState(str, Enum):
    """Outcome of one exclusive lock attempt on a slot."""

    ACQUIRED = "acquired"
    OCCUPIED = "occupied"
    LOCKED = "locked"


class SlotStore(Protocol):
    """Exclusive-create primitive the allocator probes slots with."""

    def try_lock(self, slot: int) -> SlotState:
        """Atomically lock ``slot`` unless it is occupied or already locked."""

    def commit(self, slot: int) -> None:
        """Mark a locked slot permanently occupied and release the lock."""

    def abandon(self, slot: int) -> None:
        """Release a locked slot without occupying it."""


class InMemorySlotStore:
    """Set-based slot store; every method is a single step with no awaits."""

    def __init__(self) -> None:
        self._locked: set[int] = set()
        self._occupied: set[int] = set()

    def try_lock(self, slot: int) -> SlotState:
        if slot in self._occupied:
            return SlotState.OCCUPIED
        if slot in self._locked:
            return SlotState.LOCKED
        self._locked.add(slot)
        return SlotState.ACQUIRED

    def commit(self, slot: int) -> None:
        if slot not in self._locked:
            raise RuntimeError(f"Slot {slot} is not locked; cannot commit.")
        self._locked.discard(slot)
        self._occupied.add(slot)

    def abandon(self, slot: int) -> None:
        self._locked.discard(slot)

    @property
    def occupied(self) -> frozenset[int]:
        return frozenset(self._occupied)


class DirectorySlotStore:
    """Slot store backed by lock directories and artifact files on disk."""

    def __init__(
        self,
        root_dir: Path,
        *,
        artifact_name: Callable[[int], str] | None = None,
    ) -> None:
        self.root_dir = root_dir
        self.root_dir.mkdir(parents=True, exist_ok=True)
        self._artifact_name = artifact_name or (lambda slot: f"{slot}.out")

    def artifact_path(self, slot: int) -> Path:
        return self.root_dir / self._artifact_name(slot)

    def lock_path(self, slot: int) -> Path:
        return self.root_dir / f".{slot}.lock"

    def try_lock(self, slot: int) -> SlotState:
        if self.artifact_path(slot).exists():
            return SlotState.OCCUPIED
        try:
            self.lock_path(slot).mkdir()
        except FileExistsError:
            return SlotState.LOCKED
        if self.artifact_path(slot).exists():
            # Committed between the existence check and mkdir.
            self.lock_path(slot).rmdir()
            return SlotState.OCCUPIED
        return SlotState.ACQUIRED

    def commit(self, slot: int) -> None:
        artifact = self.artifact_path(slot)
        if not artifact.exists():
            artifact.touch()
        self.lock_path(slot).rmdir()

    def abandon(self, slot: int) -> None:
        try:
            self.lock_path(slot).rmdir()
        except FileNotFoundError:
            return


class SequenceAllocator:
    """Hands out unique, gapless, ascending numbers starting at ``start``."""

    def __init__(
        self,
        store: SlotStore | None = None,
        *,
        start: int = 1,
        max_probes: int = 1_000,
        lock_wait_seconds: float = 0.01,
    ) -> None:
        if max_probes <= 0:
            raise ConfigurationError("max_probes must be > 0.")
        if start < 0:
            raise ConfigurationError("start must be >= 0.")
        self.store: SlotStore = store or InMemorySlotStore()
        self.max_probes = max_probes
        self.lock_wait_seconds = lock_wait_seconds
        self._floor = start
        self._held: set[int] = set()
        self._released: dict[int, asyncio.Event] = {}

    async def claim_next(self) -> int:
        """Lock the lowest free slot, waiting on slots another claim holds."""

        candidate = self._floor
        for _ in range(self.max_probes):
            state = self.store.try_lock(candidate)
            if state is SlotState.ACQUIRED:
                self._held.add(candidate)
                return candidate
            if state is SlotState.OCCUPIED:
                if candidate == self._floor:
                    self._floor += 1
                candidate += 1
                continue
            # Held by an in-progress claim that may still abandon it.
            await self._wait_for_release(candidate)
        logger.error(
            "Sequence allocation exhausted after %d probes at slot %d.",
            self.max_probes,
            candidate,
        )
        raise AllocationExhaustedError(probes=self.max_probes, last_candidate=candidate)

    def commit(self, number: int) -> None:
        """Confirm ``number`` once its artifact is durably written."""

        self._require_held(number)
        self.store.commit(number)
        self._release(number)

    def abandon(self, number: int) -> None:
        """Give ``number`` back so the next claim reuses it."""

        self._require_held(number)
        self.store.abandon(number)
        self._release(number)

    @asynccontextmanager
    async def claim(self) -> AsyncIterator[int]:
        """Claim a number, committing on normal exit and abandoning on error."""

        number = await self.claim_next()
        try:
            yield number
        except BaseException:
            self.abandon(number)
            raise
        self.commit(number)

    @property
    def held(self) -> frozenset[int]:
        return frozenset(self._held)

    async def _wait_for_release(self, slot: int) -> None:
        """Wait until a locked slot is committed or abandoned.

        Slots held by this allocator wake their waiters on release. A lock
        taken by another process sharing the store cannot notify us, so that
        case rechecks after ``lock_wait_seconds``.
        """

        if slot not in self._held:
            await asyncio.sleep(self.lock_wait_seconds)
            return
        released = self._released.setdefault(slot, asyncio.Event())
        await released.wait()

    def _release(self, number: int) -> None:
        self._held.discard(number)
        released = self._released.pop(number, None)
        if released is not None:
            released.set()

    def _require_held(self, number: int) -> None:
        if number not in self._held:
            raise RuntimeError(f"Sequence number {number} is not held by this allocator.")
