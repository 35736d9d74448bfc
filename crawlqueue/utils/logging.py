"""统一日志配置模块。

提供 setup_logging() 以在应用启动时一次性配置 loguru 输出，
并将标准库 logging（aiohttp、redis 等第三方库）的记录转发到 loguru。
可通过环境变量 LOG_LEVEL 设置日志级别（默认 INFO）。
"""

from __future__ import annotations

import logging
import os
import sys

from loguru import logger

LOG_FORMAT = (
    "<green>{time:MM-DD HH:mm:ss}</green> [<level>{level}</level>] "
    "<cyan>{extra[name]}</cyan>:{line} | {message}"
)


class InterceptHandler(logging.Handler):
    """将标准库 logging 记录转发给 loguru。"""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level: str | int = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame is not None and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.bind(name=record.name).opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: int | str | None = None) -> None:
    """配置全局日志输出。

    Args:
        level: 日志级别，int 或名称。若未提供，则读取环境变量 LOG_LEVEL，默认 INFO。
    """
    if level is None:
        resolved_level: int | str = os.getenv("LOG_LEVEL", "INFO").upper()
    elif isinstance(level, str):
        resolved_level = level.upper()
    else:
        resolved_level = level

    logger.remove()
    logger.configure(extra={"name": "crawlqueue"})
    logger.add(sys.stderr, level=resolved_level, format=LOG_FORMAT, backtrace=False, diagnose=False)

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
