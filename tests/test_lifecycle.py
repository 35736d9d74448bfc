"""LifecycleController 与 CancelToken 测试。"""

from __future__ import annotations

import asyncio

import pytest

from conftest import HangingFetcher, ScriptedFetcher, make_task, wait_until
from crawlqueue.core.errors import OperationCancelled
from crawlqueue.scheduling.cancel import CancelToken
from crawlqueue.scheduling.lifecycle import LifecycleController, LifecycleState
from crawlqueue.scheduling.tasks import Abandoned, EnqueueResult, EnqueueSource
from crawlqueue.scheduling.worker import WorkerPool

# ==================== CancelToken 测试 ====================


@pytest.mark.asyncio
async def test_guard_returns_result_when_not_cancelled(token):
    async def work():
        return 42

    assert await token.guard(work()) == 42


@pytest.mark.asyncio
async def test_guard_raises_when_token_fires_first(token):
    started = asyncio.Event()

    async def hang():
        started.set()
        await asyncio.Event().wait()

    guarded = asyncio.create_task(token.guard(hang()))
    await started.wait()
    token.cancel("stop")

    with pytest.raises(OperationCancelled):
        await asyncio.wait_for(guarded, 1.0)
    assert token.reason == "stop"


@pytest.mark.asyncio
async def test_guard_on_already_cancelled_token():
    token = CancelToken()
    token.cancel()

    async def work():
        return 1

    with pytest.raises(OperationCancelled):
        await token.guard(work())


# ==================== LifecycleController 测试 ====================


@pytest.mark.asyncio
async def test_graceful_drain_finishes_in_flight_work(frontier, result_sink, dead_letter_sink):
    fetcher = ScriptedFetcher(delay=0.05)
    pool = WorkerPool(frontier, fetcher, worker_count=2, result_sink=result_sink, dead_letter_sink=dead_letter_sink)
    controller = LifecycleController(frontier, pool, grace_period=2.0)
    await frontier.enqueue(make_task("https://example.com/1"))
    await frontier.enqueue(make_task("https://example.com/2"))

    controller.start()
    assert controller.state is LifecycleState.RUNNING
    await wait_until(lambda: pool.in_flight > 0)

    controller.request_stop()
    assert controller.state is LifecycleState.DRAINING
    assert await frontier.enqueue(make_task("https://example.com/late")) is EnqueueResult.REJECTED_CLOSED

    report = await asyncio.wait_for(controller.shutdown(), 5.0)

    assert controller.state is LifecycleState.STOPPED
    assert not report.grace_expired
    assert report.abandoned == []
    assert len(result_sink.results) == 2
    assert pool.running() == 0


@pytest.mark.asyncio
async def test_discoveries_and_retries_accepted_while_draining(frontier):
    frontier.begin_drain()

    result = await frontier.enqueue(make_task("https://example.com/child", depth=1), source=EnqueueSource.DISCOVERY)

    assert result is EnqueueResult.ACCEPTED


@pytest.mark.asyncio
async def test_grace_period_expiry_abandons_in_flight_and_queued(frontier, result_sink, dead_letter_sink):
    fetcher = HangingFetcher()
    pool = WorkerPool(frontier, fetcher, worker_count=1, result_sink=result_sink, dead_letter_sink=dead_letter_sink)
    controller = LifecycleController(frontier, pool, grace_period=0.05)
    await frontier.enqueue(make_task("https://example.com/running"))
    await frontier.enqueue(make_task("https://example.com/queued"))

    controller.start()
    await asyncio.wait_for(fetcher.started.wait(), 1.0)

    report = await asyncio.wait_for(controller.shutdown(), 2.0)

    assert report.grace_expired
    assert {t.url for t in report.abandoned} == {"https://example.com/running", "https://example.com/queued"}
    assert fetcher.cancelled == 1
    assert controller.state is LifecycleState.STOPPED
    assert pool.running() == 0
    assert {(r.task.url, type(r.outcome)) for r in result_sink.results} == {
        ("https://example.com/running", Abandoned),
        ("https://example.com/queued", Abandoned),
    }
    assert dead_letter_sink.records == []


@pytest.mark.asyncio
async def test_shutdown_is_idempotent(frontier, result_sink, dead_letter_sink):
    pool = WorkerPool(frontier, ScriptedFetcher(), worker_count=1, result_sink=result_sink)
    controller = LifecycleController(frontier, pool, grace_period=0.5)
    controller.start()

    first, second = await asyncio.gather(controller.shutdown(), controller.shutdown())

    assert first is second
    await asyncio.wait_for(controller.wait_stopped(), 1.0)


@pytest.mark.asyncio
async def test_run_until_request_stop(frontier, result_sink):
    pool = WorkerPool(frontier, ScriptedFetcher(), worker_count=2, result_sink=result_sink)
    controller = LifecycleController(frontier, pool, grace_period=0.5)

    runner = asyncio.create_task(controller.run(until_idle=False))
    await frontier.enqueue(make_task("https://example.com/1"))
    await wait_until(lambda: len(result_sink.results) == 1)
    assert not runner.done()

    controller.request_stop()
    report = await asyncio.wait_for(runner, 2.0)

    assert report.abandoned == []
    assert controller.state is LifecycleState.STOPPED


@pytest.mark.asyncio
async def test_start_twice_rejected(frontier):
    pool = WorkerPool(frontier, ScriptedFetcher(), worker_count=1)
    controller = LifecycleController(frontier, pool)
    controller.start()

    with pytest.raises(RuntimeError):
        controller.start()

    await controller.shutdown()


def test_negative_grace_period_rejected(frontier):
    with pytest.raises(ValueError):
        LifecycleController(frontier, WorkerPool(frontier, ScriptedFetcher()), grace_period=-1)
