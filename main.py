"""crawlqueue 主入口模块。

该模块提供两种运行模式：
1. 本地模式(local): 单进程 Frontier + 固定大小 WorkerPool，队列排空后退出
2. 分布式模式(distributed): 通过 Redis 协调存储与其他进程共享任务队列与去重状态

SIGINT / SIGTERM 触发优雅排空：停止接收新种子，在宽限期内等待进行中的任务结束。
"""

import asyncio
import platform
import signal
from typing import Literal

from loguru import logger
from prometheus_client import start_http_server

from crawlqueue.core.initialize import initialize_application
from crawlqueue.utils import setup_logging

# 统一日志配置（可用环境变量 LOG_LEVEL 覆盖级别）
setup_logging()
log = logger.bind(name="main")


async def main(mode: Literal["local", "distributed"] = "local", seeds: list[str] | None = None) -> int:
    """统一入口，根据模式启动应用。

    - local: 投递种子后运行至队列排空或收到停止信号。
    - distributed: 与 local 相同，但队列与去重状态由所有节点共享。

    Returns:
        进程退出码。
    """
    app = await initialize_application(mode=mode, seeds=seeds or ())
    controller = app.controller

    loop = asyncio.get_running_loop()
    if platform.system() != "Windows":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, controller.request_stop)

    config = app.container.config
    if config.metrics_enabled:
        start_http_server(config.metrics_port)
        log.info("Prometheus metrics exposed on :{}", config.metrics_port)

    monitor_task = asyncio.create_task(app.monitor.run(), name="system-monitor")
    try:
        log.info("Starting application in {} mode.", mode)
        controller.start()
        await app.scheduler.seed_once()
        report = await controller.run(until_idle=True)
        if report.abandoned:
            log.warning("{} tasks abandoned at shutdown.", len(report.abandoned))
        return 0

    except asyncio.CancelledError:
        log.info("Received cancellation in {} mode.", mode)
        raise

    except Exception as e:
        log.exception("Application failed: {}", e)
        return 1

    finally:
        monitor_task.cancel()
        await asyncio.gather(monitor_task, return_exceptions=True)
        if platform.system() != "Windows":
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)

        log.info("Shutting down application...")
        await controller.shutdown()
        await app.container.teardown()


def setup_event_loop():
    if platform.system() != "Windows":
        try:
            import uvloop  # type: ignore

            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())

        except ImportError:
            # 非关键依赖
            log.warning("uvloop not installed; using default asyncio event loop.")

        except Exception as e:
            log.warning("Failed to set up uvloop; using default asyncio event loop. Error: {}", e)

    else:
        log.info("Running on Windows, using the default ProactorEventLoop.")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="crawlqueue crawler task scheduler")
    parser.add_argument(
        "--mode",
        choices=["local", "distributed"],
        default="local",
        help="Running mode: 'local' for a single process, 'distributed' to share the queue through Redis.",
    )
    parser.add_argument(
        "--seed",
        action="append",
        default=[],
        metavar="URL",
        help="Seed URL to schedule (repeatable). Merged with crawler.seeds from config.toml.",
    )
    args = parser.parse_args()

    setup_event_loop()

    try:
        raise SystemExit(asyncio.run(main(args.mode, args.seed)))
    except KeyboardInterrupt:
        log.info("Application stopped by user.")
