"""生命周期控制模块。

状态机：CREATED -> RUNNING -> DRAINING -> STOPPED

- RUNNING: 入队与出队正常进行
- DRAINING: 停止接受外部种子，发现与重试仍可入队；等待 Frontier 清空或宽限期超时
- 超时后关闭 Frontier 并触发取消令牌，排队中与进行中的任务被显式标记为 Abandoned 并写入 ResultSink
- 只有在所有 Worker 都确实退出后才进入 STOPPED
"""

from __future__ import annotations

import asyncio
import dataclasses
from enum import StrEnum
from typing import TYPE_CHECKING

from loguru import logger

from .cancel import CancelToken
from .tasks import Abandoned, Result

if TYPE_CHECKING:
    from .distributed import DistributedFrontier
    from .frontier import Frontier
    from .tasks import Task
    from .worker import WorkerPool


class LifecycleState(StrEnum):
    CREATED = "created"
    RUNNING = "running"
    DRAINING = "draining"
    STOPPED = "stopped"


@dataclasses.dataclass(slots=True)
class ShutdownReport:
    """关闭报告。

    Attributes:
        abandoned: 被放弃的任务（排队中的与进行中的）
        grace_expired: 宽限期是否超时
        errors: Worker 异常退出的原因（例如 CoordinationError）
    """

    abandoned: list[Task] = dataclasses.field(default_factory=list)
    grace_expired: bool = False
    errors: list[BaseException] = dataclasses.field(default_factory=list)


class LifecycleController:
    """协调 WorkerPool 的启动、协作式取消与优雅排空。

    Attributes:
        frontier: 任务队列
        pool: 工作器池
        grace_period: 排空宽限期（秒）
        token: 广播给所有阻塞点的取消令牌
        state: 当前状态
    """

    def __init__(
        self,
        frontier: Frontier | DistributedFrontier,
        pool: WorkerPool,
        *,
        grace_period: float = 30.0,
        token: CancelToken | None = None,
    ):
        if grace_period < 0:
            raise ValueError("grace_period must be >= 0")

        self.frontier = frontier
        self.pool = pool
        self.grace_period = grace_period
        self.token = token or CancelToken()
        self.state = LifecycleState.CREATED
        self.report: ShutdownReport | None = None
        self.log = logger.bind(name="Lifecycle")

        self._stop_requested = asyncio.Event()
        self._stopped = asyncio.Event()
        self._shutdown_lock = asyncio.Lock()

    def start(self) -> None:
        """启动工作器池，进入 RUNNING。"""
        if self.state is not LifecycleState.CREATED:
            raise RuntimeError(f"Cannot start from state {self.state}")
        self.pool.start(self.token)
        self.state = LifecycleState.RUNNING
        self.log.info("Running with {} workers.", self.pool.size)

    def request_stop(self) -> None:
        """请求停止，进入 DRAINING（幂等，可在信号处理器中调用）。"""
        if self.state in (LifecycleState.CREATED, LifecycleState.RUNNING):
            self.state = LifecycleState.DRAINING
            self.frontier.begin_drain()
            self.log.info("Stop requested; draining for up to {}s.", self.grace_period)
        self._stop_requested.set()

    async def _wait_idle_or_failure(self) -> None:
        waiters = {
            asyncio.ensure_future(self.frontier.join()),
            asyncio.ensure_future(self.pool.wait_failure()),
        }
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()

    async def shutdown(self) -> ShutdownReport:
        """排空并停止。

        1. 进入 DRAINING
        2. 在宽限期内等待 Frontier 清空（或有 Worker 异常退出）
        3. 关闭 Frontier；超时情况下触发取消令牌中止进行中的抓取
        4. 等待所有 Worker 退出后进入 STOPPED

        Returns:
            关闭报告；重复调用返回同一份报告。
        """
        async with self._shutdown_lock:
            if self.report is not None:
                return self.report

            self.request_stop()

            grace_expired = False
            if self.pool.started:
                try:
                    async with asyncio.timeout(self.grace_period):
                        await self._wait_idle_or_failure()
                except TimeoutError:
                    grace_expired = True
                    self.log.warning(
                        "Grace period of {}s expired with {} tasks in flight; abandoning.",
                        self.grace_period,
                        self.frontier.in_flight,
                    )

            queued = await self.frontier.close()
            for task in queued:
                await self.pool.report(Result(task=task, outcome=Abandoned("queued at shutdown")))
            self.token.cancel("shutdown")
            errors = await self.pool.wait_exited()

            self.state = LifecycleState.STOPPED
            self.report = ShutdownReport(
                abandoned=[*queued, *self.pool.abandoned],
                grace_expired=grace_expired,
                errors=errors,
            )
            self._stopped.set()

            for task in self.report.abandoned:
                self.log.warning("Abandoned on shutdown: {} (attempt={})", task.key, task.attempt)
            self.log.info(
                "Stopped. abandoned={}, dead_lettered={}, errors={}",
                len(self.report.abandoned),
                self.pool.dead_lettered,
                len(errors),
            )
            return self.report

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def run(self, *, until_idle: bool = True) -> ShutdownReport:
        """启动并运行直到收到停止请求（或 Frontier 清空），然后优雅关闭。

        Args:
            until_idle: 为 True 时 Frontier 清空即开始关闭（一次性抓取）；
                为 False 时常驻运行直到 ``request_stop``。

        Raises:
            CoordinationError: Worker 因协调存储不可用而退出。
        """
        if self.state is LifecycleState.CREATED:
            self.start()

        waiters = {
            asyncio.ensure_future(self._stop_requested.wait()),
            asyncio.ensure_future(self.pool.wait_failure()),
        }
        if until_idle:
            waiters.add(asyncio.ensure_future(self.frontier.join()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for w in waiters:
                w.cancel()

        report = await self.shutdown()
        if report.errors:
            raise report.errors[0]
        return report

    async def run_until_idle(self) -> ShutdownReport:
        return await self.run(until_idle=True)
