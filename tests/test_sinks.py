"""结果与死信输出测试。"""

from __future__ import annotations

from typing import Any, cast

import orjson
import pytest

from conftest import make_task, ok_response
from crawlqueue.core.errors import ErrorClass
from crawlqueue.core.sinks import LoggingDeadLetterSink, RedisStreamsSink
from crawlqueue.scheduling.tasks import AttemptRecord, DeadLetterReason, DeadLetterRecord, Result, Success, Task


class DummyRedis:
    def __init__(self):
        self.calls: list[tuple[str, dict, int | None]] = []
        self._fail_times = 0

    def set_fail_times(self, n: int):
        self._fail_times = n

    async def xadd(self, stream, entry, maxlen=None, approximate=True):
        self.calls.append((stream, entry, maxlen))
        if self._fail_times > 0:
            self._fail_times -= 1
            raise RuntimeError("transient")
        return "0-1"


def make_dead_letter() -> DeadLetterRecord:
    task = make_task("https://example.com/dead")
    history = tuple(
        AttemptRecord(attempt=i, error_class=ErrorClass.TRANSIENT, cause="timeout", at=float(i)) for i in range(2)
    )
    task = Task(key=task.key, url=task.url, attempt=1, history=history)
    return DeadLetterRecord(task=task, reason=DeadLetterReason.EXHAUSTED, cause="timeout")


@pytest.mark.asyncio
async def test_result_published_with_retry():
    redis = DummyRedis()
    redis.set_fail_times(2)
    sink = RedisStreamsSink(cast("Any", redis), prefix="cq", maxlen=100, max_retries=3, retry_backoff_ms=0)
    task = make_task("https://example.com/ok")

    await sink.persist(Result(task=task, outcome=Success(ok_response(task.url, "<html/>"))))

    assert len(redis.calls) == 3
    stream, entry, maxlen = redis.calls[-1]
    assert stream == "cq:results"
    assert maxlen == 100
    data = orjson.loads(entry["data"])
    assert data["task"]["url"] == "https://example.com/ok"
    assert data["outcome"]["kind"] == "Success"
    assert data["outcome"]["payload"]["body"] == "<html/>"


@pytest.mark.asyncio
async def test_publish_gives_up_after_max_retries():
    redis = DummyRedis()
    redis.set_fail_times(10)
    sink = RedisStreamsSink(cast("Any", redis), max_retries=2, retry_backoff_ms=0)

    with pytest.raises(RuntimeError):
        await sink.record(make_dead_letter())

    assert len(redis.calls) == 2


@pytest.mark.asyncio
async def test_dead_letter_published_with_history():
    redis = DummyRedis()
    sink = RedisStreamsSink(cast("Any", redis), prefix="cq", retry_backoff_ms=0)

    await sink.record(make_dead_letter())

    stream, entry, _ = redis.calls[0]
    assert stream == "cq:dead_letters"
    data = orjson.loads(entry["data"])
    assert data["reason"] == "exhausted"
    assert [h["attempt"] for h in data["task"]["history"]] == [0, 1]


@pytest.mark.asyncio
async def test_logging_dead_letter_sink_reports_history(monkeypatch):
    messages: list[str] = []

    class _Logger:
        @staticmethod
        def warning(msg, *args):
            messages.append(msg.format(*args))

    sinks_module = __import__("crawlqueue.core.sinks", fromlist=["logger"])
    monkeypatch.setattr(sinks_module, "logger", _Logger())

    await LoggingDeadLetterSink().record(make_dead_letter())

    assert len(messages) == 1
    assert "reason=exhausted" in messages[0]
    assert "#0 transient" in messages[0] and "#1 transient" in messages[0]
