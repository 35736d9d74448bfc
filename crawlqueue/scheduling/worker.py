"""工作器模块。

WorkerPool 固定持有 N 个并发执行单元，每个 Worker 循环执行：
1. 在取消令牌监视下从 Frontier 出队
2. 在单任务超时与取消令牌双重约束下调用外部 Fetcher
3. 成功时提取后续链接（经去重后入队）并写入 ResultSink
4. 失败时把本次失败写入 ResultSink，再交给 RetryPolicy，重投 Frontier 或写入死信
5. 被取消或无法重投的任务以 Abandoned 写入 ResultSink

任务级错误全部在这里消化；CoordinationError 向上抛出。
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from time import perf_counter
from typing import TYPE_CHECKING

from loguru import logger

from ..core.errors import CoordinationError, ErrorClass, OperationCancelled
from ..core.fetcher import NullLinkExtractor
from ..core.metrics import (
    ACTIVE_WORKERS,
    COLLABORATOR_ERRORS,
    DEAD_LETTERS,
    FETCH_DURATION,
    RETRY_DELAY,
    TASK_OUTCOMES,
)
from ..core.sinks import LoggingDeadLetterSink, LoggingResultSink
from ..utils.canonical import canonicalize
from .retry import RetryAfter, RetryPolicy, classify_error
from .tasks import (
    Abandoned,
    AttemptRecord,
    DeadLetterRecord,
    EnqueueResult,
    EnqueueSource,
    PermanentFailure,
    Result,
    Success,
    Task,
    TransientFailure,
)

if TYPE_CHECKING:
    from ..core.fetcher import Fetcher, FetchResponse, LinkExtractor
    from ..core.sinks import DeadLetterSink, ResultSink
    from .cancel import CancelToken
    from .distributed import DistributedFrontier
    from .frontier import Frontier


class Worker:
    """工作器，WorkerPool 中的一个执行单元。

    Attributes:
        worker_id: 工作器的唯一标识ID。
        pool: 所属的 WorkerPool，提供 Frontier 与各外部协作者。
        log: 日志记录器。
    """

    def __init__(self, worker_id: int, pool: WorkerPool):
        self.worker_id = worker_id
        self.pool = pool
        self.log = logger.bind(name=f"Worker-{worker_id}")

    async def run(self, token: CancelToken):
        """工作器主循环，直到取消令牌触发或 Frontier 关闭。

        Raises:
            CoordinationError: 协调存储不可用且 DistributedFrontier 选择上抛。
        """
        self.log.info("Starting...")
        ACTIVE_WORKERS.inc()
        try:
            while not token.cancelled:
                task = await self.pool.frontier.dequeue(token)
                if task is None:
                    break
                self.log.debug("Got task: {} (depth={}, attempt={})", task.key, task.depth, task.attempt)
                await self._process(task, token)
        except CoordinationError as e:
            self.log.error("Coordination store failure, worker exiting: {}", e)
            raise
        finally:
            ACTIVE_WORKERS.dec()
            self.log.info("Exiting.")

    async def _process(self, task: Task, token: CancelToken):
        """处理单个任务，保证每个出队的任务都以 complete / retry / release 之一结束。"""
        pool = self.pool
        pool._enter()
        try:
            started = perf_counter()
            try:
                async with asyncio.timeout(pool.fetch_timeout):
                    response = await token.guard(pool.fetcher.fetch(task, pool.fetch_timeout))
            except OperationCancelled:
                FETCH_DURATION.labels(status="cancelled").observe(perf_counter() - started)
                await self._abandon(task, "fetch cancelled by shutdown")
                return
            except TimeoutError:
                FETCH_DURATION.labels(status=ErrorClass.TRANSIENT.value).observe(perf_counter() - started)
                await self._fail(task, ErrorClass.TRANSIENT, f"fetch timed out after {pool.fetch_timeout}s")
                return
            except Exception as e:
                error_class = classify_error(e)
                FETCH_DURATION.labels(status=error_class.value).observe(perf_counter() - started)
                await self._fail(task, error_class, f"{type(e).__name__}: {e}")
                return

            FETCH_DURATION.labels(status="success").observe(perf_counter() - started)
            await self._succeed(task, response)
        finally:
            pool._leave()

    async def _succeed(self, task: Task, response: FetchResponse):
        pool = self.pool
        if pool.max_depth is None or task.depth < pool.max_depth:
            try:
                links = list(pool.link_extractor.extract(response))
            except Exception as e:
                COLLABORATOR_ERRORS.labels(component="link_extractor").inc()
                await self._fail(task, ErrorClass.PERMANENT, f"link extraction failed: {type(e).__name__}: {e}")
                return
            await self._enqueue_discoveries(task, links)

        await pool.report(Result(task=task, outcome=Success(response)))
        await pool.frontier.complete(task)
        TASK_OUTCOMES.labels(outcome="success").inc()

    async def _enqueue_discoveries(self, parent: Task, links: list[str]):
        admitted = 0
        for url in links:
            try:
                key = canonicalize(url)
            except ValueError:
                self.log.debug("Skip non-canonicalizable link {!r} from {}", url, parent.key)
                continue

            child = Task(key=key, url=url, depth=parent.depth + 1, priority=parent.priority)
            result = await self.pool.frontier.enqueue(child, source=EnqueueSource.DISCOVERY)
            if result.accepted:
                admitted += 1
            elif result is not EnqueueResult.DROPPED_DUPLICATE:
                self.log.warning("Discovered link {} not admitted: {}", key, result.value)

        if links:
            self.log.debug("{}: {} links extracted, {} admitted.", parent.key, len(links), admitted)

    async def _fail(self, task: Task, error_class: ErrorClass, cause: str):
        pool = self.pool
        record = AttemptRecord(attempt=task.attempt, error_class=error_class, cause=cause, at=time.time())
        failure = PermanentFailure(cause) if error_class is ErrorClass.PERMANENT else TransientFailure(cause)
        await pool.report(Result(task=task, outcome=failure))
        decision = pool.retry_policy.decide(task.attempt, error_class)

        if isinstance(decision, RetryAfter):
            retried = task.retried(record)
            result = await pool.frontier.retry(retried, decision.delay)
            if result.accepted:
                TASK_OUTCOMES.labels(outcome="retry").inc()
                RETRY_DELAY.observe(decision.delay)
                self.log.info(
                    "{} failed ({}), retry #{} in {:.2f}s: {}",
                    task.key,
                    error_class.value,
                    retried.attempt,
                    decision.delay,
                    cause,
                )
            else:
                pool.abandoned.append(retried)
                await pool.report(Result(task=retried, outcome=Abandoned(f"retry not accepted: {result.value}")))
                TASK_OUTCOMES.labels(outcome="abandoned").inc()
                self.log.warning("{} retry not accepted ({}); task abandoned.", task.key, result.value)
            return

        final = dataclasses.replace(task, history=(*task.history, record))
        dead_letter = DeadLetterRecord(task=final, reason=decision.reason, cause=cause)
        try:
            await pool.dead_letter_sink.record(dead_letter)
        except Exception as e:
            COLLABORATOR_ERRORS.labels(component="dead_letter_sink").inc()
            self.log.exception("Failed to record dead letter for {}: {}", task.key, e)

        await pool.frontier.complete(task)
        pool.dead_lettered += 1
        DEAD_LETTERS.labels(reason=decision.reason.value).inc()
        TASK_OUTCOMES.labels(outcome="dead_letter").inc()
        self.log.warning(
            "{} dead-lettered ({}) after {} attempts: {}",
            task.key,
            decision.reason.value,
            len(final.history),
            cause,
        )

    async def _abandon(self, task: Task, reason: str):
        await self.pool.frontier.release(task)
        self.pool.abandoned.append(task)
        await self.pool.report(Result(task=task, outcome=Abandoned(reason)))
        TASK_OUTCOMES.labels(outcome="abandoned").inc()
        self.log.warning("{} abandoned: {}", task.key, reason)


class WorkerPool:
    """固定大小的工作器池。

    池大小在生命周期内固定；Worker 以 ID 为键保存，便于日后支持动态伸缩。
    同一时刻进行中的任务数不会超过 ``size``。

    Attributes:
        frontier: 任务来源（Frontier 或 DistributedFrontier）
        fetcher: 外部抓取器
        retry_policy: 重试策略
        link_extractor: 链接提取器
        result_sink: 任务结果输出（成功、失败与放弃）
        dead_letter_sink: 死信输出
        fetch_timeout: 单任务抓取超时（秒）
        max_depth: 最大抓取深度，None 表示不限
        abandoned: 关闭时被放弃的任务
        peak_in_flight: 观测到的最大并发任务数
    """

    def __init__(
        self,
        frontier: Frontier | DistributedFrontier,
        fetcher: Fetcher,
        *,
        worker_count: int = 8,
        retry_policy: RetryPolicy | None = None,
        link_extractor: LinkExtractor | None = None,
        result_sink: ResultSink | None = None,
        dead_letter_sink: DeadLetterSink | None = None,
        fetch_timeout: float = 30.0,
        max_depth: int | None = None,
    ):
        if worker_count < 1:
            raise ValueError("worker_count must be >= 1")
        if fetch_timeout <= 0:
            raise ValueError("fetch_timeout must be greater than 0")

        self.frontier = frontier
        self.fetcher = fetcher
        self.retry_policy = retry_policy or RetryPolicy()
        self.link_extractor = link_extractor or NullLinkExtractor()
        self.result_sink = result_sink or LoggingResultSink()
        self.dead_letter_sink = dead_letter_sink or LoggingDeadLetterSink()
        self.fetch_timeout = fetch_timeout
        self.max_depth = max_depth

        self._size = worker_count
        self._workers: dict[int, Worker] = {}
        self._tasks: dict[int, asyncio.Task] = {}
        self._in_flight = 0
        self.peak_in_flight = 0
        self.dead_lettered = 0
        self.abandoned: list[Task] = []

    @property
    def size(self) -> int:
        return self._size

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def started(self) -> bool:
        return bool(self._tasks)

    def running(self) -> int:
        return sum(1 for t in self._tasks.values() if not t.done())

    def _enter(self) -> None:
        self._in_flight += 1
        if self._in_flight > self._size:
            raise RuntimeError(f"in-flight tasks ({self._in_flight}) exceed pool size ({self._size})")
        self.peak_in_flight = max(self.peak_in_flight, self._in_flight)

    def _leave(self) -> None:
        self._in_flight -= 1

    def start(self, token: CancelToken) -> None:
        """启动全部 Worker。"""
        if self._tasks:
            raise RuntimeError("WorkerPool already started")
        for i in range(self._size):
            worker = Worker(i, self)
            self._workers[i] = worker
            self._tasks[i] = asyncio.create_task(worker.run(token), name=f"worker-{i}")
        logger.info("WorkerPool started with {} workers.", self._size)

    async def report(self, result: Result) -> None:
        """把一个任务结果写入 ResultSink；写入失败只记录日志，不影响任务的结束。"""
        try:
            await self.result_sink.persist(result)
        except Exception as e:
            COLLABORATOR_ERRORS.labels(component="result_sink").inc()
            logger.exception(
                "Failed to persist {} result for {}: {}", type(result.outcome).__name__, result.task.key, e
            )

    async def wait_failure(self) -> None:
        """等待任一 Worker 异常退出（或全部退出）。"""
        if self._tasks:
            await asyncio.wait(self._tasks.values(), return_when=asyncio.FIRST_EXCEPTION)

    async def wait_exited(self) -> list[BaseException]:
        """等待所有 Worker 退出，返回异常退出的原因。"""
        if not self._tasks:
            return []
        results = await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        return [r for r in results if isinstance(r, BaseException) and not isinstance(r, asyncio.CancelledError)]
