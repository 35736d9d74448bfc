"""Deduplicator 单元测试。"""

from __future__ import annotations

import asyncio
from typing import Any, cast

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from conftest import FakeClock
from crawlqueue.core.dedup import MemoryDeduplicator, RedisDeduplicator
from crawlqueue.core.errors import CoordinationError

# ==================== MemoryDeduplicator 测试 ====================


@pytest.mark.asyncio
async def test_memory_mark_if_new_first_wins():
    d = MemoryDeduplicator()

    assert await d.mark_if_new("k")
    assert not await d.mark_if_new("k")
    assert "k" in d
    assert d.first_seen("k") is not None


@pytest.mark.asyncio
async def test_memory_concurrent_mark_exactly_one_true():
    """并发标记同一个 key，应只有一个调用返回 True"""
    d = MemoryDeduplicator()

    results = await asyncio.gather(*(d.mark_if_new("same") for _ in range(50)))

    assert results.count(True) == 1
    assert len(d) == 1


@pytest.mark.asyncio
async def test_memory_forget_allows_rediscovery():
    d = MemoryDeduplicator()
    await d.mark_if_new("k")

    await d.forget("k")
    await d.forget("missing")

    assert await d.mark_if_new("k")


@pytest.mark.asyncio
async def test_memory_ttl_expiry():
    """TTL 过期后允许重新发现"""
    d = MemoryDeduplicator(ttl=0.01)
    assert await d.mark_if_new("k")

    await asyncio.sleep(0.02)

    assert await d.mark_if_new("k")


@pytest.mark.asyncio
async def test_memory_ttl_purges_expired_records_from_heap_head():
    """过期记录在下一次标记时被清理，未过期的记录保留"""
    clock = FakeClock(start=100.0)
    d = MemoryDeduplicator(ttl=10.0, clock=clock)
    for key in ("a", "b"):
        assert await d.mark_if_new(key)
    clock.advance(5.0)
    assert await d.mark_if_new("c")

    clock.advance(5.0)
    assert await d.mark_if_new("d")

    assert "a" not in d
    assert "b" not in d
    assert "c" in d
    assert len(d) == 2


@pytest.mark.asyncio
async def test_memory_ttl_forget_then_remark_survives_old_expiry():
    """forget 后重新标记的 key 不会被旧的过期项提前清除"""
    clock = FakeClock(start=0.0)
    d = MemoryDeduplicator(ttl=10.0, clock=clock)
    assert await d.mark_if_new("k")

    clock.advance(6.0)
    await d.forget("k")
    assert await d.mark_if_new("k")

    clock.advance(5.0)
    assert not await d.mark_if_new("k")
    assert d.first_seen("k") == 6.0

    clock.advance(5.0)
    assert await d.mark_if_new("k")


# ==================== RedisDeduplicator 测试 ====================


class DummyRedis:
    def __init__(self, fail: bool = False):
        self.store: dict[str, str] = {}
        self.set_calls: list[dict] = []
        self.fail = fail

    async def set(self, key, value, ex=None, nx=False):
        self.set_calls.append({"key": key, "ex": ex, "nx": nx})
        if self.fail:
            raise RedisConnectionError("down")
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        if self.fail:
            raise RedisConnectionError("down")
        return 1 if self.store.pop(key, None) is not None else 0


@pytest.mark.asyncio
async def test_redis_mark_if_new_uses_set_nx_with_ttl():
    redis = DummyRedis()
    d = RedisDeduplicator(cast("Any", redis), prefix="p", ttl=60, consistency_window=1.5)

    assert await d.mark_if_new("https://example.com/")
    assert not await d.mark_if_new("https://example.com/")

    assert redis.set_calls[0] == {"key": "p:https://example.com/", "ex": 60, "nx": True}
    assert d.consistency_window == 1.5

    await d.forget("https://example.com/")
    assert await d.mark_if_new("https://example.com/")


@pytest.mark.asyncio
async def test_redis_errors_wrapped_as_coordination_error():
    d = RedisDeduplicator(cast("Any", DummyRedis(fail=True)))

    with pytest.raises(CoordinationError) as exc_info:
        await d.mark_if_new("k")
    assert exc_info.value.operation == "mark_if_new"

    with pytest.raises(CoordinationError):
        await d.forget("k")
