"""分布式 Frontier 模块。

DistributedFrontier 与 Frontier 拥有相同的接口，底层通过 CoordinationAdapter
共享任务队列、通过共享 Deduplicator 共享去重状态。本节点持有的租约以租约令牌为键
保存在 ``_leases`` 中，出队的任务携带自己的 ``lease_token``，complete / retry / release
只作用于该任务自己的租约，分别映射为 ack / nack(延迟+新内容) / nack。

租约过期后被同一节点再次认领时，旧任务的 complete 只会作为迟到的 ack 被记录并忽略，
不会误确认新租约。

协调存储出错时按 ``on_coordination_error`` 处理：
- raise: 直接上抛 CoordinationError
- pause: 暂停 ``pause_seconds`` 后重试，最多 ``pause_attempts`` 次后上抛；出队时的暂停响应取消令牌
- fallback: 降级为本地 Frontier，后续任务只在本进程内调度
"""

from __future__ import annotations

import asyncio
import dataclasses
from typing import TYPE_CHECKING, Literal, TypeAlias, TypeVar

from loguru import logger

from ..core.dedup import MemoryDeduplicator
from ..core.errors import CoordinationError, OperationCancelled
from ..core.metrics import FRONTIER_ENQUEUED, IN_FLIGHT, STALE_ACKS
from .frontier import Frontier
from .tasks import EnqueueResult, EnqueueSource

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..core.coordination import CoordinationAdapter, Lease
    from ..core.dedup import Deduplicator
    from .cancel import CancelToken
    from .tasks import Task

ErrorPolicy: TypeAlias = Literal["raise", "pause", "fallback"]
T = TypeVar("T")


class _Degraded(Exception):
    """内部信号：已降级为本地调度。"""


class DistributedFrontier:
    """基于共享协调存储的 Frontier。

    Attributes:
        adapter: 协调存储适配器
        deduplicator: 共享去重器
        node_id: 本节点 ID
        lease_duration: 租约时长（秒），应大于单任务抓取超时
        poll_interval: 存储为空时的轮询间隔（秒）
        on_coordination_error: 协调存储出错时的处理策略
    """

    def __init__(
        self,
        adapter: CoordinationAdapter,
        deduplicator: Deduplicator,
        *,
        node_id: str,
        lease_duration: float = 30.0,
        poll_interval: float = 1.0,
        on_coordination_error: ErrorPolicy = "raise",
        pause_seconds: float = 5.0,
        pause_attempts: int = 3,
        fallback_capacity: int = 0,
    ) -> None:
        if lease_duration <= 0:
            raise ValueError("lease_duration must be greater than 0")
        if poll_interval <= 0:
            raise ValueError("poll_interval must be greater than 0")
        if on_coordination_error not in ("raise", "pause", "fallback"):
            raise ValueError(f"Unknown coordination error policy: {on_coordination_error}")

        self.adapter = adapter
        self.deduplicator = deduplicator
        self.node_id = node_id
        self.lease_duration = lease_duration
        self.poll_interval = poll_interval
        self.on_coordination_error = on_coordination_error
        self.pause_seconds = pause_seconds
        self.pause_attempts = pause_attempts
        self.fallback_capacity = fallback_capacity
        self.log = logger.bind(name=f"DistributedFrontier-{node_id}")

        self._leases: dict[str, Lease] = {}
        self._local: Frontier | None = None
        self._wakeup = asyncio.Event()
        self._draining = False
        self._closed = False

    @property
    def degraded(self) -> bool:
        return self._local is not None

    @property
    def in_flight(self) -> int:
        local = self._local.in_flight if self._local is not None else 0
        return len(self._leases) + local

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

    # ---- 协调存储错误策略 ----

    def _degrade(self, error: CoordinationError) -> None:
        if self._local is None:
            self._local = Frontier(MemoryDeduplicator(), capacity=self.fallback_capacity)
            if self._draining:
                self._local.begin_drain()
            self.log.error("Coordination store unavailable ({}); falling back to local-only scheduling.", error)

    async def _with_policy(
        self, operation: str, call: Callable[[], Awaitable[T]], token: CancelToken | None = None
    ) -> T:
        attempts = 0
        while True:
            try:
                return await call()
            except CoordinationError as e:
                if self.on_coordination_error == "raise":
                    raise
                if self.on_coordination_error == "fallback":
                    self._degrade(e)
                    raise _Degraded from e

                attempts += 1
                if attempts > self.pause_attempts:
                    self.log.error(
                        "Coordination store still failing after {} pauses during {}.", attempts - 1, operation
                    )
                    raise
                self.log.warning(
                    "Coordination store failure during {}; pausing intake for {}s ({}/{}): {}",
                    operation,
                    self.pause_seconds,
                    attempts,
                    self.pause_attempts,
                    e,
                )
                if token is None:
                    await asyncio.sleep(self.pause_seconds)
                else:
                    await token.guard(asyncio.sleep(self.pause_seconds))

    # ---- 入队 ----

    async def enqueue(self, task: Task, *, source: EnqueueSource = EnqueueSource.SEED) -> EnqueueResult:
        """提交新任务到共享存储，语义与 ``Frontier.enqueue`` 相同。

        去重标记成功但写入存储失败时会撤销该标记，使同一目标之后仍可被重新提交。
        """
        if self._admission_closed(source):
            return self._record(source, EnqueueResult.REJECTED_CLOSED)
        if self._local is not None:
            return await self._local.enqueue(task, source=source)

        try:
            is_new = await self._with_policy("mark_if_new", lambda: self.deduplicator.mark_if_new(task.key))
            if not is_new:
                return self._record(source, EnqueueResult.DROPPED_DUPLICATE)
            try:
                pushed = await self._with_policy("push", lambda: self.adapter.push(task))
            except (_Degraded, CoordinationError):
                await self._forget(task.key)
                raise
        except _Degraded:
            return await self._local.enqueue(task, source=source)  # type: ignore[union-attr]

        if not pushed:
            # 存储中已有同一任务（去重记录过期或被清理后重新发现）
            return self._record(source, EnqueueResult.DROPPED_DUPLICATE)
        self._wakeup.set()
        return self._record(source, EnqueueResult.ACCEPTED)

    async def _forget(self, key: str) -> None:
        try:
            await self.deduplicator.forget(key)
        except CoordinationError as e:
            self.log.error("Could not release dedup mark for {} after failed push: {}", key, e)

    async def retry(self, task: Task, delay: float = 0.0) -> EnqueueResult:
        """以新内容与延迟释放任务自己的租约，使任务在 ``delay`` 秒后可被任一节点认领。

        Returns:
            租约仍由本节点持有时为 ACCEPTED；租约已失效（任务已被重新投递）时为 REJECTED_CLOSED。
        """
        if task.lease_token is None and self._local is not None:
            return await self._local.retry(task, delay)
        lease = self._take_lease(task, "nack")
        if lease is None:
            return EnqueueResult.REJECTED_CLOSED

        stored = dataclasses.replace(task, lease_token=None)
        try:
            released = await self._with_policy("nack", lambda: self.adapter.nack(lease, delay=delay, task=stored))
        except _Degraded:
            # 存储侧的租约会自然过期，由其他节点重新认领
            return await self._retry_locally(stored, delay)

        result = EnqueueResult.ACCEPTED if released else EnqueueResult.REJECTED_CLOSED
        if not released:
            self.log.warning("Lease on {} was lost before retry; another node owns it now.", task.task_id)
        FRONTIER_ENQUEUED.labels(source="retry", result=result.value).inc()
        return result

    async def _retry_locally(self, task: Task, delay: float) -> EnqueueResult:
        local = self._local
        if local is None:
            raise RuntimeError("Local retry requested before falling back to local-only scheduling")
        return await local.requeue(task, delay)

    # ---- 出队 ----

    async def dequeue(self, token: CancelToken) -> Task | None:
        """从共享存储认领任务；存储为空时按 ``poll_interval`` 在令牌监视下等待。

        返回的任务携带本次认领的 ``lease_token``。令牌取消（包括 pause 策略暂停期间）时返回 None。
        """
        while not token.cancelled and not self._closed:
            if self._local is not None:
                return await self._local.dequeue(token)

            try:
                claimed = await self._with_policy(
                    "lease_pop", lambda: self.adapter.lease_pop(self.node_id, self.lease_duration), token
                )
            except _Degraded:
                continue
            except OperationCancelled:
                return None

            if claimed is not None:
                task, lease = claimed
                self._leases[lease.token] = lease
                self._update_gauge()
                return dataclasses.replace(task, lease_token=lease.token)

            try:
                await token.guard(self._wait_for_work())
            except OperationCancelled:
                return None
        return None

    async def _wait_for_work(self) -> None:
        self._wakeup.clear()
        try:
            async with asyncio.timeout(self.poll_interval):
                await self._wakeup.wait()
        except TimeoutError:
            pass

    # ---- 结束租用 ----

    def _take_lease(self, task: Task, operation: str) -> Lease | None:
        """取出任务自己的租约。

        租约未知（已结束，或过期后被本节点以新租约重新认领）时记录为迟到的确认并返回 None。
        """
        lease = self._leases.pop(task.lease_token, None) if task.lease_token is not None else None
        self._update_gauge()
        if lease is None:
            STALE_ACKS.labels(operation=operation).inc()
            self.log.warning(
                "Stale {} for {} ignored: its lease is no longer held by this node.", operation, task.task_id
            )
        return lease

    async def complete(self, task: Task) -> None:
        """确认任务完成（ack）；迟到的 ack 被记录并忽略。"""
        if task.lease_token is None and self._local is not None:
            await self._local.complete(task)
            return
        lease = self._take_lease(task, "ack")
        if lease is None:
            return

        try:
            acked = await self._with_policy("ack", lambda: self.adapter.ack(lease))
        except _Degraded:
            self.log.warning("Could not ack {}; its lease will expire in the store.", task.task_id)
            return
        if not acked:
            self.log.warning("Late ack for {} ignored: lease expired and task was re-delivered.", task.task_id)

    async def release(self, task: Task) -> None:
        """释放租约但不确认成功，任务立即可被其他节点认领。"""
        if task.lease_token is None and self._local is not None:
            await self._local.release(task)
            return
        lease = self._take_lease(task, "nack")
        if lease is None:
            return

        try:
            await self._with_policy("nack", lambda: self.adapter.nack(lease))
        except _Degraded:
            self.log.warning("Could not release {}; its lease will expire in the store.", task.task_id)

    # ---- 生命周期 ----

    def begin_drain(self) -> None:
        if not self._draining:
            self._draining = True
            if self._local is not None:
                self._local.begin_drain()
            self.log.info("Draining; external seeds are no longer accepted.")

    async def close(self) -> list[Task]:
        """关闭本节点的入队与出队。

        共享存储中的排队任务属于整个集群，不在此处放弃；仅降级后的本地队列会被返回。
        """
        self._closed = True
        self._draining = True
        self._wakeup.set()
        if self._local is not None:
            return await self._local.close()
        return []

    async def join(self) -> None:
        """等待本节点无进行中任务且共享存储为空。"""
        while True:
            if self._local is not None:
                if not self._leases:
                    await self._local.join()
                    return
            elif not self._leases:
                try:
                    stats = await self._with_policy("stats", self.adapter.stats)
                except _Degraded:
                    continue
                if stats["pending"] == 0 and stats["leased"] == 0:
                    return
            await asyncio.sleep(self.poll_interval)

    async def stats(self) -> dict[str, int]:
        if self._local is not None:
            return await self._local.stats()
        stats = await self.adapter.stats()
        return {**stats, "in_flight": self.in_flight}

    def _update_gauge(self) -> None:
        IN_FLIGHT.set(self.in_flight)

    def _record(self, source: EnqueueSource, result: EnqueueResult) -> EnqueueResult:
        FRONTIER_ENQUEUED.labels(source=source.value, result=result.value).inc()
        return result
