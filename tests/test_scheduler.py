"""种子调度器测试。"""

import asyncio

import pytest

from crawlqueue.scheduling.scheduler import Scheduler
from crawlqueue.scheduling.tasks import EnqueueResult, Priority


@pytest.mark.asyncio
async def test_seed_once_counts_results_and_skips_invalid(frontier, token):
    scheduler = Scheduler(
        frontier,
        ["https://example.com/a", "https://example.com/a#dup", "not a url", "https://example.com/b"],
    )

    results = await scheduler.seed_once()

    assert results[EnqueueResult.ACCEPTED] == 2
    assert results[EnqueueResult.DROPPED_DUPLICATE] == 1
    task = await frontier.dequeue(token)
    assert task is not None
    assert task.priority is Priority.HIGH
    assert task.depth == 0


@pytest.mark.asyncio
async def test_seed_once_stops_when_draining(frontier):
    frontier.begin_drain()
    scheduler = Scheduler(frontier, ["https://example.com/a", "https://example.com/b"])

    results = await scheduler.seed_once()

    assert results == {EnqueueResult.REJECTED_CLOSED: 1}


@pytest.mark.asyncio
async def test_no_seeds_is_idle(frontier):
    assert await Scheduler(frontier, []).seed_once() == {}


@pytest.mark.asyncio
async def test_periodic_mode_exits_on_drain():
    from crawlqueue.core.dedup import MemoryDeduplicator
    from crawlqueue.scheduling.frontier import Frontier

    frontier = Frontier(MemoryDeduplicator(ttl=0.001))
    scheduler = Scheduler(frontier, ["https://example.com/"])

    runner = asyncio.create_task(scheduler.run(mode="periodic", interval=0.01))
    await asyncio.sleep(0.05)
    frontier.begin_drain()

    await asyncio.wait_for(runner, 1.0)
    assert frontier.qsize() >= 1


@pytest.mark.asyncio
async def test_unknown_mode_rejected(frontier):
    with pytest.raises(ValueError):
        await Scheduler(frontier, []).run(mode="backfill")  # type: ignore[arg-type]
