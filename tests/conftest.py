"""Pytest 配置和共享 fixtures。"""
# ruff: noqa: E402

import sys
from pathlib import Path

# Add the project root to sys.path so `from crawlqueue...` works without installing
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


import asyncio
from collections import defaultdict
from collections.abc import Callable

import pytest

from crawlqueue.core.dedup import MemoryDeduplicator
from crawlqueue.core.fetcher import FetchResponse
from crawlqueue.core.sinks import MemoryDeadLetterSink, MemoryResultSink
from crawlqueue.scheduling.cancel import CancelToken
from crawlqueue.scheduling.frontier import Frontier
from crawlqueue.scheduling.tasks import Priority, Task
from crawlqueue.utils.canonical import canonicalize

# ==================== 工厂函数 ====================


def make_task(url: str = "https://example.com/", *, depth: int = 0, priority: Priority = Priority.NORMAL) -> Task:
    """创建测试用的 Task"""
    return Task(key=canonicalize(url), url=url, depth=depth, priority=priority)


def ok_response(url: str, body: str = "") -> FetchResponse:
    """创建测试用的成功响应"""
    return FetchResponse(url=url, status=200, body=body)


# ==================== Dummy 协作者 ====================


class ScriptedFetcher:
    """按 URL 预设结果的 Fetcher。

    每个 URL 对应一个结果列表，依次返回；元素为异常时抛出。
    列表用尽后重复最后一个结果；未预设的 URL 返回空白 200 响应。
    """

    def __init__(self, script: dict[str, list] | None = None, *, delay: float = 0.0):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.calls: dict[str, list[float]] = defaultdict(list)
        self.concurrent = 0
        self.peak_concurrent = 0

    @property
    def total_calls(self) -> int:
        return sum(len(v) for v in self.calls.values())

    async def fetch(self, task: Task, timeout: float) -> FetchResponse:
        loop = asyncio.get_running_loop()
        self.calls[task.url].append(loop.time())
        self.concurrent += 1
        self.peak_concurrent = max(self.peak_concurrent, self.concurrent)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            outcomes = self.script.get(task.url)
            if not outcomes:
                return ok_response(task.url)
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
            if isinstance(outcome, BaseException):
                raise outcome
            if isinstance(outcome, type) and issubclass(outcome, BaseException):
                raise outcome()
            return outcome
        finally:
            self.concurrent -= 1


class HangingFetcher:
    """永不返回的 Fetcher，用于测试超时与关闭。"""

    def __init__(self):
        self.started = asyncio.Event()
        self.cancelled = 0

    async def fetch(self, task: Task, timeout: float) -> FetchResponse:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled += 1
            raise
        raise AssertionError("unreachable")


class FakeClock:
    """可手动推进的时钟。"""

    def __init__(self, start: float = 0.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """轮询等待条件成立。"""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)


# ==================== Fixtures ====================


@pytest.fixture
def dedup():
    """返回一个内存去重器"""
    return MemoryDeduplicator()


@pytest.fixture
def frontier(dedup):
    """返回一个不限容量的本地 Frontier"""
    return Frontier(dedup)


@pytest.fixture
def token():
    """返回一个新的取消令牌"""
    return CancelToken()


@pytest.fixture
def result_sink():
    return MemoryResultSink()


@pytest.fixture
def dead_letter_sink():
    return MemoryDeadLetterSink()
