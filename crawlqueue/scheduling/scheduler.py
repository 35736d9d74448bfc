"""种子调度模块。

负责把外部种子目标规范化后投递到 Frontier，支持两种模式：
1. 一次性模式(once)：投递一轮种子后退出
2. 周期模式(periodic)：按固定间隔重复投递种子，配合去重 TTL 实现周期性重访
"""

from __future__ import annotations

import asyncio
from collections import Counter
from typing import TYPE_CHECKING, Literal

from loguru import logger

from ..utils.canonical import canonicalize
from .tasks import EnqueueResult, EnqueueSource, Priority, Task

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .distributed import DistributedFrontier
    from .frontier import Frontier


class Scheduler:
    """种子调度器。

    Attributes:
        frontier: 任务队列。
        seeds: 种子 URL 列表。
        priority: 种子任务优先级。
        log: 日志记录器。
    """

    def __init__(
        self,
        frontier: Frontier | DistributedFrontier,
        seeds: Iterable[str],
        *,
        priority: Priority = Priority.HIGH,
    ):
        self.frontier = frontier
        self.seeds = list(seeds)
        self.priority = priority
        self.log = logger.bind(name="Scheduler")

    async def run(self, mode: Literal["once", "periodic"] = "once", *, interval: float = 60.0):
        """根据不同模式投递种子。

        Args:
            mode: 调度模式，支持 "once" 和 "periodic"。
            interval: 周期模式下的投递间隔（秒）。
        """
        if mode == "once":
            await self.seed_once()
        elif mode == "periodic":
            await self._run_periodic(interval)
        else:
            raise ValueError(f"Unknown scheduler mode: {mode}")

    async def seed_once(self) -> Counter[EnqueueResult]:
        """投递一轮种子。

        Returns:
            各入队结果的计数。
        """
        results: Counter[EnqueueResult] = Counter()
        if not self.seeds:
            self.log.warning("No seeds configured. Scheduler will be idle.")
            return results

        for url in self.seeds:
            try:
                key = canonicalize(url)
            except ValueError as e:
                self.log.warning("Skip invalid seed {!r}: {}", url, e)
                continue

            task = Task(key=key, url=url, depth=0, priority=self.priority)
            result = await self.frontier.enqueue(task, source=EnqueueSource.SEED)
            results[result] += 1
            if result is EnqueueResult.REJECTED_CLOSED:
                self.log.info("Frontier is draining; remaining seeds are not scheduled.")
                break

        self.log.info(
            "Seeded {} targets: {}",
            len(self.seeds),
            ", ".join(f"{k.value}={v}" for k, v in sorted(results.items())),
        )
        return results

    async def _run_periodic(self, interval: float):
        """周期性种子投递。"""
        self.log.info("Starting PERIODIC seeding. Interval: {}s", interval)
        tick = 0
        while not self.frontier.draining:
            self.log.debug("Scheduler tick #{}", tick)
            await self.seed_once()
            await asyncio.sleep(interval)
            tick += 1
        self.log.info("Frontier is draining. Scheduler is exiting.")
