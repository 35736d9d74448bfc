"""结果与死信输出模块。

ResultSink 接收每次尝试的结果（成功、暂时或永久失败、放弃），
DeadLetterSink 接收带完整重试历史的死信记录。
从 WorkerPool 的角度看二者都是只追加的，可以被并发写入，不要求跨任务顺序。
提供内存、日志与 Redis Streams 三种实现。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, cast

from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from ..utils.serialization import dumps

if TYPE_CHECKING:
    import redis.asyncio as redis

    from ..scheduling.tasks import DeadLetterRecord, Result


class ResultSink(Protocol):
    async def persist(self, result: Result) -> None: ...


class DeadLetterSink(Protocol):
    async def record(self, dead_letter: DeadLetterRecord) -> None: ...


class MemoryResultSink:
    """将结果保存在内存列表中（测试与一次性抓取）。"""

    def __init__(self) -> None:
        self.results: list[Result] = []

    async def persist(self, result: Result) -> None:
        self.results.append(result)


class MemoryDeadLetterSink:
    def __init__(self) -> None:
        self.records: list[DeadLetterRecord] = []

    async def record(self, dead_letter: DeadLetterRecord) -> None:
        self.records.append(dead_letter)


class LoggingResultSink:
    async def persist(self, result: Result) -> None:
        task = result.task
        kind = type(result.outcome).__name__
        if kind == "Success":
            logger.info("Fetched {} (depth={}, attempt={})", task.url, task.depth, task.attempt)
            return
        detail = getattr(result.outcome, "cause", None) or getattr(result.outcome, "reason", "")
        logger.info("{} {} (depth={}, attempt={}): {}", kind, task.url, task.depth, task.attempt, detail)


class LoggingDeadLetterSink:
    """以 WARNING 级别输出死信及其完整重试历史。"""

    async def record(self, dead_letter: DeadLetterRecord) -> None:
        history = "; ".join(
            f"#{h.attempt} {h.error_class.value} at {h.at:.3f}: {h.cause}" for h in dead_letter.history
        )
        logger.warning(
            "Dead-lettered {} reason={} attempts={} cause={} history=[{}]",
            dead_letter.task.url,
            dead_letter.reason.value,
            dead_letter.task.attempt,
            dead_letter.cause,
            history,
        )


class RedisStreamsSink:
    """基于 Redis Streams 的结果 / 死信输出。

    任务结果写入 ``<prefix>:results``，死信写入 ``<prefix>:dead_letters``，
    单条写入失败按固定间隔重试 ``max_retries`` 次。
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        *,
        prefix: str = "crawlqueue",
        maxlen: int = 10000,
        max_retries: int = 3,
        retry_backoff_ms: int = 200,
    ) -> None:
        self.redis = redis_client
        self.results_stream = f"{prefix}:results"
        self.dead_letter_stream = f"{prefix}:dead_letters"
        self.maxlen = maxlen
        self.max_retries = max_retries
        self.retry_backoff_ms = retry_backoff_ms

    async def _xadd(self, stream: str, data: bytes) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                wait=wait_fixed(max(self.retry_backoff_ms, 0) / 1000.0),
                retry=retry_if_exception_type(Exception),
                reraise=True,
            ):
                with attempt:
                    await self.redis.xadd(stream, cast("Any", {"data": data}), maxlen=self.maxlen)
        except Exception as e:
            logger.exception("Failed to publish to stream={} after {} retries: {}", stream, self.max_retries, e)
            raise

    async def persist(self, result: Result) -> None:
        await self._xadd(self.results_stream, dumps(result))

    async def record(self, dead_letter: DeadLetterRecord) -> None:
        await self._xadd(self.dead_letter_stream, dumps(dead_letter))
