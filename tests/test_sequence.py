from __future__ import annotations

import asyncio
import random
from pathlib import Path

import allure
import pytest

from prompt_fanout.orchestrator.errors import AllocationExhaustedError
from prompt_fanout.orchestrator.sequence import (
    DirectorySlotStore,
    InMemorySlotStore,
    SequenceAllocator,
    SlotState,
)

pytestmark = [
    allure.epic("Job Orchestration"),
    allure.feature("Sequential Naming"),
]


def _occupy(store: InMemorySlotStore, *slots: int) -> None:
    for slot in slots:
        assert store.try_lock(slot) is SlotState.ACQUIRED
        store.commit(slot)


@pytest.mark.asyncio
async def test_concurrent_claims_are_gapless_regardless_of_completion_order() -> None:
    allocator = SequenceAllocator(lock_wait_seconds=0.001)
    rng = random.Random(11)

    async def write_artifact() -> int:
        await asyncio.sleep(rng.uniform(0, 0.01))
        async with allocator.claim() as number:
            await asyncio.sleep(rng.uniform(0, 0.005))
            return number

    numbers = await asyncio.gather(*(write_artifact() for _ in range(40)))

    assert sorted(numbers) == list(range(1, 41))
    assert allocator.held == frozenset()


@pytest.mark.asyncio
async def test_claim_skips_occupied_slots() -> None:
    store = InMemorySlotStore()
    _occupy(store, 1, 2, 4)
    allocator = SequenceAllocator(store)

    first = await allocator.claim_next()
    allocator.commit(first)
    second = await allocator.claim_next()

    assert (first, second) == (3, 5)


@pytest.mark.asyncio
async def test_locked_slot_is_waited_on_not_skipped() -> None:
    allocator = SequenceAllocator(lock_wait_seconds=0.001)
    held = await allocator.claim_next()

    waiter = asyncio.create_task(allocator.claim_next())
    await asyncio.sleep(0.02)
    assert not waiter.done()

    allocator.abandon(held)

    assert await asyncio.wait_for(waiter, timeout=1.0) == 1


@pytest.mark.asyncio
async def test_release_wakes_a_waiting_claim_without_polling() -> None:
    allocator = SequenceAllocator(max_probes=10, lock_wait_seconds=60.0)
    held = await allocator.claim_next()

    async def claim_and_commit() -> int:
        async with allocator.claim() as number:
            return number

    waiters = [asyncio.create_task(claim_and_commit()) for _ in range(2)]
    await asyncio.sleep(0.01)
    allocator.commit(held)

    numbers = await asyncio.wait_for(asyncio.gather(*waiters), timeout=1.0)

    assert sorted(numbers) == [2, 3]


@pytest.mark.asyncio
async def test_abandoned_number_is_reused_by_next_claim() -> None:
    allocator = SequenceAllocator()

    with pytest.raises(RuntimeError, match="artifact write failed"):
        async with allocator.claim():
            raise RuntimeError("artifact write failed")

    async with allocator.claim() as number:
        assert number == 1


@pytest.mark.asyncio
async def test_probe_budget_exhaustion_raises() -> None:
    store = InMemorySlotStore()
    _occupy(store, *range(1, 11))
    allocator = SequenceAllocator(store, max_probes=5)

    with pytest.raises(AllocationExhaustedError, match="after 5 probes") as raised:
        await allocator.claim_next()

    assert raised.value.probes == 5


def test_commit_requires_a_held_number() -> None:
    allocator = SequenceAllocator()

    with pytest.raises(RuntimeError, match="not held"):
        allocator.commit(1)


@pytest.mark.asyncio
async def test_directory_store_uses_existing_artifacts_and_lock_dirs(tmp_path: Path) -> None:
    store = DirectorySlotStore(tmp_path, artifact_name=lambda slot: f"result_{slot}.md")
    (tmp_path / "result_1.md").write_text("already there", "utf-8")
    allocator = SequenceAllocator(store)

    number = await allocator.claim_next()
    assert number == 2
    assert store.lock_path(2).is_dir()
    assert store.try_lock(2) is SlotState.LOCKED

    allocator.commit(number)

    assert (tmp_path / "result_2.md").exists()
    assert not store.lock_path(2).exists()
    assert store.try_lock(2) is SlotState.OCCUPIED


def test_directory_store_abandon_releases_lock(tmp_path: Path) -> None:
    store = DirectorySlotStore(tmp_path / "out")

    assert store.try_lock(1) is SlotState.ACQUIRED
    store.abandon(1)
    store.abandon(1)

    assert not store.artifact_path(1).exists()
    assert store.try_lock(1) is SlotState.ACQUIRED
