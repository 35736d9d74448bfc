"""协调适配器模块（分布式模式）。

让多个独立的爬虫进程通过共享存储共用同一个任务队列。投递基于租约：
- ``lease_pop`` 原子地认领一个任务，同一时刻每个任务最多只有一个有效租约
- 租约到期而未 ``ack`` 时，任务重新变为可认领，可能被其他节点拿走（节点崩溃恢复）
- 持有者在租约失效后迟到的 ``ack`` / ``nack`` 是空操作，避免重复完成信号
- 存储不可用时抛出 ``CoordinationError``，由调用方决定暂停还是降级

提供 Redis 和内存两种实现，通过统一的协议接口供 DistributedFrontier 使用。
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import time
import uuid
from typing import TYPE_CHECKING, Protocol

from loguru import logger
from redis.exceptions import RedisError

from ..scheduling.tasks import Priority, Task
from ..utils.serialization import dumps_str, loads
from .errors import CoordinationError
from .metrics import COORDINATION_ERRORS, LEASES_RECLAIMED, STALE_ACKS

if TYPE_CHECKING:
    from collections.abc import Callable


@dataclasses.dataclass(slots=True, frozen=True)
class Lease:
    """任务租约。

    Attributes:
        task_id: 被认领的任务 ID
        node_id: 持有节点 ID
        token: 本次认领的唯一令牌，用于识别迟到的确认
        expires_at: 到期时间（存储侧时钟，秒）
    """

    task_id: str
    node_id: str
    token: str
    expires_at: float


def new_lease_token(node_id: str) -> str:
    return f"{node_id}:{uuid.uuid4().hex}"


class CoordinationAdapter(Protocol):
    """协调存储协议。"""

    async def push(self, task: Task) -> bool:
        """提交任务；同一任务 ID 已存在时返回 False。"""
        ...

    async def lease_pop(self, node_id: str, lease_duration: float) -> tuple[Task, Lease] | None:
        """原子地认领一个就绪任务；没有可认领任务时返回 None。"""
        ...

    async def ack(self, lease: Lease) -> bool:
        """确认完成并删除任务；租约已失效时为空操作并返回 False。"""
        ...

    async def nack(self, lease: Lease, *, delay: float = 0.0, task: Task | None = None) -> bool:
        """释放租约并在 ``delay`` 秒后重新投递，可同时替换任务内容（如递增的尝试次数）。

        租约已失效时为空操作并返回 False。
        """
        ...

    async def stats(self) -> dict[str, int]:
        """返回 pending / leased 数量。"""
        ...


class MemoryCoordinationAdapter:
    """基于内存的协调存储（单进程，多节点共享同一实例）。

    时钟可注入，便于在测试中模拟租约到期。
    """

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._tasks: dict[str, Task] = {}
        self._pending: list[tuple[int, float, int, str]] = []
        self._leases: dict[str, Lease] = {}
        self._seq = itertools.count()
        self._guard = asyncio.Lock()

    async def push(self, task: Task) -> bool:
        async with self._guard:
            if task.task_id in self._tasks:
                return False
            self._tasks[task.task_id] = task
            self._schedule(task, self._clock())
            return True

    async def lease_pop(self, node_id: str, lease_duration: float) -> tuple[Task, Lease] | None:
        async with self._guard:
            now = self._clock()
            self._reclaim_expired(now)

            ready = [entry for entry in self._pending if entry[1] <= now]
            if not ready:
                return None

            entry = min(ready)
            self._pending.remove(entry)
            task_id = entry[3]
            lease = Lease(
                task_id=task_id,
                node_id=node_id,
                token=new_lease_token(node_id),
                expires_at=now + lease_duration,
            )
            self._leases[task_id] = lease
            return self._tasks[task_id], lease

    async def ack(self, lease: Lease) -> bool:
        async with self._guard:
            if not self._owns(lease):
                STALE_ACKS.labels(operation="ack").inc()
                return False
            del self._leases[lease.task_id]
            self._tasks.pop(lease.task_id, None)
            return True

    async def nack(self, lease: Lease, *, delay: float = 0.0, task: Task | None = None) -> bool:
        async with self._guard:
            if not self._owns(lease):
                STALE_ACKS.labels(operation="nack").inc()
                return False
            del self._leases[lease.task_id]
            if task is not None:
                self._tasks[lease.task_id] = task
            self._schedule(self._tasks[lease.task_id], self._clock() + max(delay, 0.0))
            return True

    async def stats(self) -> dict[str, int]:
        async with self._guard:
            return {"pending": len(self._pending), "leased": len(self._leases)}

    def _owns(self, lease: Lease) -> bool:
        current = self._leases.get(lease.task_id)
        return current is not None and current.token == lease.token

    def _schedule(self, task: Task, ready_at: float) -> None:
        self._pending.append((int(task.priority), ready_at, next(self._seq), task.task_id))

    def _reclaim_expired(self, now: float) -> None:
        expired = [lease for lease in self._leases.values() if lease.expires_at <= now]
        for lease in expired:
            del self._leases[lease.task_id]
            self._schedule(self._tasks[lease.task_id], now)
            LEASES_RECLAIMED.inc()
            logger.warning(
                "Lease on {} held by node {} expired; task is eligible for re-delivery.", lease.task_id, lease.node_id
            )


# 所有时间均取 Redis 服务端 TIME（毫秒），避免节点间时钟漂移
_NOW_MS = """
local t = redis.call('TIME')
local now = tonumber(t[1]) * 1000 + math.floor(tonumber(t[2]) / 1000)
"""

# KEYS: tasks, routes, pending; ARGV: task_id, payload
PUSH_SCRIPT = (
    _NOW_MS
    + """
if redis.call('HSETNX', KEYS[1], ARGV[1], ARGV[2]) == 0 then
  return 0
end
redis.call('HSET', KEYS[2], ARGV[1], KEYS[3])
redis.call('ZADD', KEYS[3], now, ARGV[1])
return 1
"""
)

# KEYS: leases, owners, tasks, routes, pending...; ARGV: lease_ms, token
LEASE_POP_SCRIPT = (
    _NOW_MS
    + """
local expired = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', now)
for _, id in ipairs(expired) do
  redis.call('ZREM', KEYS[1], id)
  redis.call('HDEL', KEYS[2], id)
  local route = redis.call('HGET', KEYS[4], id)
  if route then
    redis.call('ZADD', route, now, id)
  end
end
for i = 5, #KEYS do
  local ids = redis.call('ZRANGEBYSCORE', KEYS[i], '-inf', now, 'LIMIT', 0, 1)
  if #ids > 0 then
    local id = ids[1]
    redis.call('ZREM', KEYS[i], id)
    local payload = redis.call('HGET', KEYS[3], id)
    if payload then
      local expires = now + tonumber(ARGV[1])
      redis.call('ZADD', KEYS[1], expires, id)
      redis.call('HSET', KEYS[2], id, ARGV[2])
      return {id, payload, tostring(expires), #expired}
    end
  end
end
return {'', '', '0', #expired}
"""
)

# KEYS: leases, owners, tasks, routes; ARGV: task_id, token
ACK_SCRIPT = """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
redis.call('HDEL', KEYS[3], ARGV[1])
redis.call('HDEL', KEYS[4], ARGV[1])
return 1
"""

# KEYS: leases, owners, tasks, routes; ARGV: task_id, token, delay_ms, payload
NACK_SCRIPT = (
    _NOW_MS
    + """
if redis.call('HGET', KEYS[2], ARGV[1]) ~= ARGV[2] then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
redis.call('HDEL', KEYS[2], ARGV[1])
if ARGV[4] ~= '' then
  redis.call('HSET', KEYS[3], ARGV[1], ARGV[4])
end
local route = redis.call('HGET', KEYS[4], ARGV[1])
if route then
  redis.call('ZADD', route, now + tonumber(ARGV[3]), ARGV[1])
end
return 1
"""
)


def _text(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


class RedisCoordinationAdapter:
    """基于 Redis Lua 脚本的协调存储。

    键布局（均带 ``prefix``）：
    - ``tasks``: HASH task_id -> 任务 JSON
    - ``routes``: HASH task_id -> 所属 pending 键
    - ``pending:<priority>``: ZSET task_id -> 可认领时间（毫秒）
    - ``leases``: ZSET task_id -> 租约到期时间（毫秒）
    - ``owners``: HASH task_id -> 当前租约令牌

    Attributes:
        prefix: Redis 键前缀。
    """

    def __init__(self, redis_client, *, prefix: str = "crawlqueue") -> None:
        self._redis = redis_client
        self.prefix = prefix
        self._tasks_key = f"{prefix}:tasks"
        self._routes_key = f"{prefix}:routes"
        self._leases_key = f"{prefix}:leases"
        self._owners_key = f"{prefix}:owners"
        self._pending_keys = [f"{prefix}:pending:{p.value}" for p in sorted(Priority)]

        self._push = redis_client.register_script(PUSH_SCRIPT)
        self._lease_pop = redis_client.register_script(LEASE_POP_SCRIPT)
        self._ack = redis_client.register_script(ACK_SCRIPT)
        self._nack = redis_client.register_script(NACK_SCRIPT)

    def _pending_key(self, priority: Priority) -> str:
        return f"{self.prefix}:pending:{priority.value}"

    async def _call(self, operation: str, script, keys: list[str], args: list) -> object:
        try:
            return await script(keys=keys, args=args)
        except RedisError as e:
            COORDINATION_ERRORS.labels(operation=operation).inc()
            raise CoordinationError(operation, str(e)) from e

    async def push(self, task: Task) -> bool:
        result = await self._call(
            "push",
            self._push,
            [self._tasks_key, self._routes_key, self._pending_key(task.priority)],
            [task.task_id, dumps_str(task.to_dict())],
        )
        return int(result) == 1  # type: ignore[arg-type]

    async def lease_pop(self, node_id: str, lease_duration: float) -> tuple[Task, Lease] | None:
        token = new_lease_token(node_id)
        reply = await self._call(
            "lease_pop",
            self._lease_pop,
            [self._leases_key, self._owners_key, self._tasks_key, self._routes_key, *self._pending_keys],
            [int(lease_duration * 1000), token],
        )
        task_id, payload, expires_ms, reclaimed = reply  # type: ignore[misc]
        if int(reclaimed):
            LEASES_RECLAIMED.inc(int(reclaimed))
            logger.warning("{} expired leases made eligible for re-delivery.", int(reclaimed))

        task_id = _text(task_id)
        if not task_id:
            return None

        try:
            task = Task.from_dict(loads(payload))
        except (ValueError, KeyError) as e:
            COORDINATION_ERRORS.labels(operation="lease_pop").inc()
            raise CoordinationError("lease_pop", f"corrupt payload for {task_id}: {e}") from e

        lease = Lease(task_id=task_id, node_id=node_id, token=token, expires_at=int(_text(expires_ms)) / 1000)
        return task, lease

    async def ack(self, lease: Lease) -> bool:
        result = await self._call(
            "ack",
            self._ack,
            [self._leases_key, self._owners_key, self._tasks_key, self._routes_key],
            [lease.task_id, lease.token],
        )
        if int(result) != 1:  # type: ignore[arg-type]
            STALE_ACKS.labels(operation="ack").inc()
            return False
        return True

    async def nack(self, lease: Lease, *, delay: float = 0.0, task: Task | None = None) -> bool:
        payload = dumps_str(task.to_dict()) if task is not None else ""
        result = await self._call(
            "nack",
            self._nack,
            [self._leases_key, self._owners_key, self._tasks_key, self._routes_key],
            [lease.task_id, lease.token, int(max(delay, 0.0) * 1000), payload],
        )
        if int(result) != 1:  # type: ignore[arg-type]
            STALE_ACKS.labels(operation="nack").inc()
            return False
        return True

    async def stats(self) -> dict[str, int]:
        try:
            pipe = self._redis.pipeline()
            for key in self._pending_keys:
                pipe.zcard(key)
            pipe.zcard(self._leases_key)
            counts = await pipe.execute()
        except RedisError as e:
            COORDINATION_ERRORS.labels(operation="stats").inc()
            raise CoordinationError("stats", str(e)) from e
        return {"pending": sum(int(c) for c in counts[:-1]), "leased": int(counts[-1])}
