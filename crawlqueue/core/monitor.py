"""系统监控模块。

该模块负责定期采集系统级指标，包括：
1. 事件循环延迟 (Event Loop Lag)
2. Frontier 积压状态 (ready / delayed / pending / leased)
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from .errors import CoordinationError
from .metrics import EVENT_LOOP_LAG, FRONTIER_SIZE

if TYPE_CHECKING:
    from ..scheduling.distributed import DistributedFrontier
    from ..scheduling.frontier import Frontier


class SystemMonitor:
    """系统监控器。

    在后台运行，定期采集指标。

    Attributes:
        frontier: 被观测的任务队列。
        interval: 采集间隔（秒）。
    """

    def __init__(self, frontier: Frontier | DistributedFrontier, interval: float = 1.0):
        if interval <= 0:
            raise ValueError("interval must be greater than 0")

        self.frontier = frontier
        self.interval = interval
        self._stats_error_logged = False

    def _log_stats_warning_once(self, error: Exception) -> None:
        if not self._stats_error_logged:
            logger.warning("Failed to collect frontier stats: {}", error)
            self._stats_error_logged = True

    async def _collect_frontier_stats(self) -> None:
        try:
            stats = await self.frontier.stats()
        except CoordinationError as e:
            self._log_stats_warning_once(e)
            return

        self._stats_error_logged = False
        for state, value in stats.items():
            if state == "in_flight":
                continue
            FRONTIER_SIZE.labels(state=state).set(max(0, value))

    async def run(self) -> None:
        """运行监控循环。"""
        logger.info("System Monitor started.")
        loop = asyncio.get_running_loop()
        expected_wake_time = loop.time() + self.interval

        try:
            while True:
                sleep_for = max(0.0, expected_wake_time - loop.time())
                await asyncio.sleep(sleep_for)

                try:
                    real_wake_time = loop.time()
                    EVENT_LOOP_LAG.observe(max(0.0, real_wake_time - expected_wake_time))
                    expected_wake_time = real_wake_time + self.interval

                    await self._collect_frontier_stats()
                except Exception as e:
                    logger.exception("Unexpected error in System Monitor loop: {}", e)

        except asyncio.CancelledError:
            logger.info("System Monitor stopped.")
