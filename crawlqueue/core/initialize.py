"""项目初始化模块。

该模块包含应用程序启动时需要执行的初始化任务：
加载配置、搭建依赖注入容器，并按运行模式组装 Frontier、WorkerPool、
LifecycleController 与种子调度器。
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

from loguru import logger

from ..scheduling.distributed import DistributedFrontier
from ..scheduling.frontier import Frontier
from ..scheduling.lifecycle import LifecycleController
from ..scheduling.retry import RetryPolicy
from ..scheduling.scheduler import Scheduler
from ..scheduling.worker import WorkerPool
from .config import Config
from .container import Container
from .monitor import SystemMonitor

if TYPE_CHECKING:
    from collections.abc import Iterable


@dataclass
class Application:
    """初始化完成的应用组件集合。"""

    container: Container
    frontier: Frontier | DistributedFrontier
    pool: WorkerPool
    controller: LifecycleController
    scheduler: Scheduler
    monitor: SystemMonitor


async def initialize_application(
    mode: Literal["local", "distributed"],
    *,
    seeds: Iterable[str] = (),
    config: Config | None = None,
) -> Application:
    """初始化整个应用程序。

    该函数封装了应用启动所需的所有核心初始化步骤：
    1. 根据运行模式加载配置。
    2. 创建并设置依赖注入容器。
    3. 按模式创建本地或分布式 Frontier。
    4. 创建 WorkerPool 与 LifecycleController。
    5. 创建种子调度器（命令行种子与配置种子合并）。

    Args:
        mode: 应用程序的运行模式 ("local" 或 "distributed")。
        seeds: 额外的种子 URL。
        config: 预先构造的配置，未提供时从 config.toml / 环境变量加载。

    Returns:
        初始化完成的 Application。
    """
    logger.info("Initializing application in '{}' mode...", mode)

    app_config = config or Config(mode=mode)
    app_config.mode = mode

    container = Container(config=app_config)
    await container.setup()

    frontier = build_frontier(container)

    assert container.fetcher is not None
    pool = WorkerPool(
        frontier,
        container.fetcher,
        worker_count=app_config.worker_count,
        retry_policy=RetryPolicy(
            max_attempts=app_config.max_attempts,
            base_backoff=app_config.base_backoff,
            max_backoff=app_config.max_backoff,
            jitter=app_config.jitter,
        ),
        link_extractor=container.link_extractor,
        result_sink=container.result_sink,
        dead_letter_sink=container.dead_letter_sink,
        fetch_timeout=app_config.fetch_timeout,
        max_depth=app_config.max_depth,
    )
    controller = LifecycleController(frontier, pool, grace_period=app_config.grace_period)
    scheduler = Scheduler(frontier, [*app_config.seeds, *seeds])
    monitor = SystemMonitor(frontier, interval=app_config.monitor_interval)

    logger.info("Application initialized successfully.")
    return Application(
        container=container,
        frontier=frontier,
        pool=pool,
        controller=controller,
        scheduler=scheduler,
        monitor=monitor,
    )


def build_frontier(container: Container) -> Frontier | DistributedFrontier:
    """根据运行模式创建 Frontier。

    Args:
        container: 已完成 setup 的依赖注入容器。

    Raises:
        RuntimeError: 容器未正确初始化。
    """
    config = container.config
    if container.deduplicator is None:
        raise RuntimeError("Container is not set up properly.")

    if config.mode == "distributed":
        if container.coordination is None:
            raise RuntimeError("Distributed mode requires a coordination adapter.")
        coordination = config.coordination_config
        logger.info(
            "Using DistributedFrontier (node_id={}, lease={}s, on_error={}).",
            coordination.node_id,
            coordination.lease_duration,
            coordination.on_error,
        )
        return DistributedFrontier(
            container.coordination,
            container.deduplicator,
            node_id=coordination.node_id,
            lease_duration=coordination.lease_duration,
            poll_interval=coordination.poll_interval,
            on_coordination_error=coordination.on_error,
            pause_seconds=coordination.pause_seconds,
            pause_attempts=coordination.pause_attempts,
            fallback_capacity=config.frontier_capacity,
        )

    logger.info(
        "Using local Frontier (capacity={}, full_policy={}, ordering={}).",
        config.frontier_capacity,
        config.full_policy,
        config.ordering,
    )
    return Frontier(
        container.deduplicator,
        capacity=config.frontier_capacity,
        full_policy=config.full_policy,
        ordering=config.ordering,
    )
