"""Frontier 模块。

实现了带去重、容量限制与延迟重投的分层优先级队列：
- 入队前通过 Deduplicator 对规范化 key 做原子 test-and-set，重复目标直接丢弃
- 同一层级 (priority, depth) 内 FIFO，层级之间严格优先或轮转公平
- 显式重试绕过去重与容量限制，到期后才可出队
- ``dequeue`` 在取消令牌触发时返回 None（Closed）
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
from collections import deque
from typing import TYPE_CHECKING, Literal, TypeAlias

from loguru import logger

from ..core.errors import OperationCancelled
from ..core.metrics import FRONTIER_ENQUEUED, FRONTIER_SIZE, IN_FLIGHT
from .tasks import EnqueueResult, EnqueueSource

if TYPE_CHECKING:
    from ..core.dedup import Deduplicator
    from .cancel import CancelToken
    from .tasks import Task

FullPolicy: TypeAlias = Literal["block", "reject"]
Ordering: TypeAlias = Literal["strict", "round_robin"]


class Frontier:
    """单进程 Frontier。

    内部维护按层级划分的就绪队列和一个按到期时间排序的延迟堆。
    ``_unfinished`` 统计已入队但尚未 complete/release 的任务数，
    为 0 时 ``join`` 返回，语义与 ``asyncio.Queue.join`` 一致。

    Attributes:
        capacity: 就绪与延迟任务的总容量，0 表示不限
        full_policy: 队列满时的策略，"block" 阻塞等待或 "reject" 立即拒绝
        ordering: 层级间顺序，"strict" 或 "round_robin"
    """

    def __init__(
        self,
        deduplicator: Deduplicator,
        *,
        capacity: int = 0,
        full_policy: FullPolicy = "reject",
        ordering: Ordering = "strict",
    ) -> None:
        if capacity < 0:
            raise ValueError("capacity must be >= 0")
        if full_policy not in ("block", "reject"):
            raise ValueError(f"Unknown full policy: {full_policy}")
        if ordering not in ("strict", "round_robin"):
            raise ValueError(f"Unknown ordering: {ordering}")

        self.deduplicator = deduplicator
        self.capacity = capacity
        self.full_policy = full_policy
        self.ordering = ordering
        self.log = logger.bind(name="Frontier")

        self._tiers: dict[tuple[int, int], deque[Task]] = {}
        self._ready = 0
        self._delayed: list[tuple[float, int, Task]] = []
        self._seq = itertools.count()
        self._last_tier: tuple[int, int] | None = None

        self._leased = 0
        self._unfinished = 0
        self._idle = asyncio.Event()
        self._idle.set()
        self._cond = asyncio.Condition()

        self._draining = False
        self._closed = False

    # ---- 状态查询 ----

    def qsize(self) -> int:
        """就绪与延迟任务总数（不含进行中任务）。"""
        return self._ready + len(self._delayed)

    def empty(self) -> bool:
        return self.qsize() == 0

    def full(self) -> bool:
        return self.capacity > 0 and self.qsize() >= self.capacity

    @property
    def in_flight(self) -> int:
        return self._leased

    @property
    def unfinished(self) -> int:
        return self._unfinished

    @property
    def draining(self) -> bool:
        return self._draining

    @property
    def closed(self) -> bool:
        return self._closed

    def _admission_closed(self, source: EnqueueSource) -> bool:
        if self._closed:
            return True
        return self._draining and source is EnqueueSource.SEED

    # ---- 入队 ----

    async def enqueue(self, task: Task, *, source: EnqueueSource = EnqueueSource.SEED) -> EnqueueResult:
        """提交一个新任务。

        Args:
            task: 待提交的任务。
            source: 任务来源，Draining 阶段拒绝 SEED。

        Returns:
            入队结果。被拒绝时会撤销去重标记，使目标之后仍可被重新发现。

        ``full_policy="block"`` 只对 SEED 生效：DISCOVERY 由 Worker 在持有任务时提交，
        在满队列上阻塞会使所有 Worker 互相等待，因此队列满时直接返回 REJECTED_FULL。
        """
        if self._admission_closed(source):
            return self._record(task, source, EnqueueResult.REJECTED_CLOSED)

        if not await self.deduplicator.mark_if_new(task.key):
            return self._record(task, source, EnqueueResult.DROPPED_DUPLICATE)

        async with self._cond:
            blocking = self.full_policy == "block" and source is EnqueueSource.SEED
            while blocking and self.full() and not self._admission_closed(source):
                await self._cond.wait()

            if self._admission_closed(source):
                result = EnqueueResult.REJECTED_CLOSED
            elif self.full():
                result = EnqueueResult.REJECTED_FULL
            else:
                self._push_ready(task)
                self._unfinished += 1
                self._idle.clear()
                self._cond.notify_all()
                result = EnqueueResult.ACCEPTED

        if not result.accepted:
            await self.deduplicator.forget(task.key)
        return self._record(task, source, result)

    async def retry(self, task: Task, delay: float = 0.0) -> EnqueueResult:
        """重投一个进行中的任务，并结束其本次租用。

        重试复用同一任务标识，绕过去重与容量限制；只有 ``close`` 之后才会被拒绝。

        Args:
            task: 尝试次数已递增的任务。
            delay: 多少秒后可以再次出队。
        """
        async with self._cond:
            result = self._schedule_locked(task, delay)
            self._finish_locked()
            self._cond.notify_all()
        return self._record_retry(task, delay, result)

    async def requeue(self, task: Task, delay: float = 0.0) -> EnqueueResult:
        """延迟重投一个不是从本 Frontier 出队的已知任务（绕过去重与容量限制）。"""
        async with self._cond:
            result = self._schedule_locked(task, delay)
            self._cond.notify_all()
        return self._record_retry(task, delay, result)

    def _schedule_locked(self, task: Task, delay: float) -> EnqueueResult:
        if self._closed:
            return EnqueueResult.REJECTED_CLOSED
        if delay > 0:
            ready_at = asyncio.get_running_loop().time() + delay
            heapq.heappush(self._delayed, (ready_at, next(self._seq), task))
        else:
            self._push_ready(task)
        self._unfinished += 1
        self._idle.clear()
        return EnqueueResult.ACCEPTED

    def _record_retry(self, task: Task, delay: float, result: EnqueueResult) -> EnqueueResult:
        self._refresh_gauges()
        FRONTIER_ENQUEUED.labels(source="retry", result=result.value).inc()
        if result.accepted:
            self.log.debug("Retry scheduled for {} (attempt={}, delay={:.2f}s)", task.key, task.attempt, delay)
        return result

    # ---- 出队 ----

    async def dequeue(self, token: CancelToken) -> Task | None:
        """阻塞获取一个就绪任务。

        Args:
            token: 取消令牌。

        Returns:
            任务；令牌触发或 Frontier 已关闭时返回 None。
        """
        try:
            return await token.guard(self._take())
        except OperationCancelled:
            return None

    async def _take(self) -> Task | None:
        loop = asyncio.get_running_loop()
        async with self._cond:
            while True:
                if self._closed:
                    return None

                self._promote_due(loop.time())
                task = self._pop_ready()
                if task is not None:
                    self._leased += 1
                    IN_FLIGHT.set(self._leased)
                    self._refresh_gauges()
                    self._cond.notify_all()
                    return task

                timeout = self._delayed[0][0] - loop.time() if self._delayed else None
                try:
                    async with asyncio.timeout(timeout):
                        await self._cond.wait()
                except TimeoutError:
                    pass

    # ---- 结束租用 ----

    async def complete(self, task: Task) -> None:
        """任务到达终态（成功或死信）。"""
        async with self._cond:
            self._finish_locked()
            self._cond.notify_all()

    async def release(self, task: Task) -> None:
        """放弃任务（关闭时未完成），不做成功确认。"""
        async with self._cond:
            self._finish_locked()
            self._cond.notify_all()

    def _finish_locked(self) -> None:
        if self._leased <= 0 or self._unfinished <= 0:
            raise ValueError("complete/release called more times than tasks were dequeued")
        self._leased -= 1
        self._unfinished -= 1
        IN_FLIGHT.set(self._leased)
        if self._unfinished == 0:
            self._idle.set()

    # ---- 生命周期 ----

    def begin_drain(self) -> None:
        """进入排空阶段：不再接受外部种子任务，发现与重试仍可入队。"""
        if not self._draining:
            self._draining = True
            self.log.info("Frontier draining; external seeds are no longer accepted.")

    async def close(self) -> list[Task]:
        """关闭 Frontier，拒绝一切入队并返回所有排队中的任务。

        Returns:
            尚未出队的就绪与延迟任务，由调用方作为 Abandoned 上报。
        """
        async with self._cond:
            self._closed = True
            self._draining = True
            abandoned: list[Task] = []
            for tier in sorted(self._tiers):
                abandoned.extend(self._tiers[tier])
            abandoned.extend(task for _, _, task in sorted(self._delayed))
            self._tiers.clear()
            self._delayed.clear()
            self._ready = 0
            self._unfinished -= len(abandoned)
            if self._unfinished == 0:
                self._idle.set()
            self._cond.notify_all()

        self._refresh_gauges()
        if abandoned:
            self.log.warning("Frontier closed with {} queued tasks abandoned.", len(abandoned))
        return abandoned

    async def join(self) -> None:
        """等待所有已入队任务都到达终态。"""
        await self._idle.wait()

    async def stats(self) -> dict[str, int]:
        return {"ready": self._ready, "delayed": len(self._delayed), "in_flight": self._leased}

    # ---- 内部 ----

    def _push_ready(self, task: Task) -> None:
        self._tiers.setdefault(task.tier, deque()).append(task)
        self._ready += 1

    def _pop_ready(self) -> Task | None:
        tiers = sorted(t for t, q in self._tiers.items() if q)
        if not tiers:
            return None

        if self.ordering == "strict":
            tier = tiers[0]
        else:
            later = [t for t in tiers if self._last_tier is None or t > self._last_tier]
            tier = later[0] if later else tiers[0]
            self._last_tier = tier

        queue = self._tiers[tier]
        task = queue.popleft()
        if not queue:
            del self._tiers[tier]
        self._ready -= 1
        return task

    def _promote_due(self, now: float) -> None:
        while self._delayed and self._delayed[0][0] <= now:
            _, _, task = heapq.heappop(self._delayed)
            self._push_ready(task)

    def _refresh_gauges(self) -> None:
        FRONTIER_SIZE.labels(state="ready").set(self._ready)
        FRONTIER_SIZE.labels(state="delayed").set(len(self._delayed))

    def _record(self, task: Task, source: EnqueueSource, result: EnqueueResult) -> EnqueueResult:
        FRONTIER_ENQUEUED.labels(source=source.value, result=result.value).inc()
        self._refresh_gauges()
        if result is EnqueueResult.ACCEPTED:
            self.log.debug("Accepted {} (depth={}, source={})", task.key, task.depth, source.value)
        elif result is EnqueueResult.DROPPED_DUPLICATE:
            self.log.debug("Dropped duplicate {}", task.key)
        else:
            self.log.info("Rejected {} ({}, source={})", task.key, result.value, source.value)
        return result
