"""去重器模块。

提供 Redis 和内存两种实现，通过统一的协议接口供 Frontier 使用。
``mark_if_new`` 是原子的 test-and-set：对同一个规范化 key，
无论并发调用方有多少，只有一个调用返回 True。
"""

from __future__ import annotations

import asyncio
import heapq
import time
from typing import TYPE_CHECKING, Protocol

from redis.exceptions import RedisError

from .errors import CoordinationError

if TYPE_CHECKING:
    from collections.abc import Callable


class Deduplicator(Protocol):
    """去重器协议。

    Attributes:
        consistency_window: 底层存储的最终一致性窗口（秒）。0 表示强一致。
    """

    consistency_window: float

    async def mark_if_new(self, key: str) -> bool:
        """原子地标记 key 为已见。

        Args:
            key: 规范化后的目标 key。

        Returns:
            本次调用是否是第一个见到该 key 的调用。
        """
        ...

    async def forget(self, key: str) -> None:
        """删除 key 的去重记录（幂等）。

        Args:
            key: 规范化后的目标 key。
        """
        ...


class MemoryDeduplicator:
    """基于内存字典的去重器（单进程）。

    记录 key 到首次出现时间的映射，可选 TTL 过期后允许重新发现。
    设置 TTL 时另维护一个按过期时间排序的堆，每次标记前只从堆顶清理已过期的记录。
    """

    consistency_window = 0.0

    def __init__(self, ttl: float | None = None, *, clock: Callable[[], float] = time.time) -> None:
        self._seen: dict[str, float] = {}
        self._expiry: list[tuple[float, str, float]] = []
        self._ttl = ttl
        self._clock = clock
        self._guard = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._seen)

    def __contains__(self, key: object) -> bool:
        return key in self._seen

    def first_seen(self, key: str) -> float | None:
        return self._seen.get(key)

    async def mark_if_new(self, key: str) -> bool:
        async with self._guard:
            now = self._clock()
            if self._ttl is not None:
                self._purge_expired(now)

            if key in self._seen:
                return False

            self._seen[key] = now
            if self._ttl is not None:
                heapq.heappush(self._expiry, (now + self._ttl, key, now))
            return True

    def _purge_expired(self, now: float) -> None:
        while self._expiry and self._expiry[0][0] <= now:
            _, key, marked_at = heapq.heappop(self._expiry)
            # forget 之后重新标记的 key 对应新的堆项，旧堆项不能删除它
            if self._seen.get(key) == marked_at:
                del self._seen[key]

    async def forget(self, key: str) -> None:
        async with self._guard:
            self._seen.pop(key, None)


class RedisDeduplicator:
    """基于 Redis ``SET NX`` 的共享去重器。

    单个 Redis 主节点上 ``SET NX`` 是原子的；但发生主从切换时，
    最近写入的标记可能丢失，``consistency_window`` 记录运维方接受的容忍窗口，
    在此窗口内同一目标可能被两个节点各入队一次。
    """

    def __init__(
        self,
        redis_client,
        *,
        prefix: str = "crawlqueue:seen",
        ttl: int | None = None,
        consistency_window: float = 0.0,
    ) -> None:
        self._redis = redis_client
        self._prefix = prefix
        self._ttl = ttl
        self.consistency_window = consistency_window

    def _key(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    async def mark_if_new(self, key: str) -> bool:
        try:
            return bool(await self._redis.set(self._key(key), str(time.time()), ex=self._ttl, nx=True))
        except RedisError as e:
            raise CoordinationError("mark_if_new", str(e)) from e

    async def forget(self, key: str) -> None:
        try:
            await self._redis.delete(self._key(key))
        except RedisError as e:
            raise CoordinationError("forget", str(e)) from e
