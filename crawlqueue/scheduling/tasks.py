"""任务定义模块。

该模块定义了调度核心中流转的数据结构：任务、优先级、执行结果与死信记录。
任务本身不可变，重试时通过 ``Task.retried`` 生成尝试次数加一的副本，
任务标识（规范化 key）保持不变。
"""

from __future__ import annotations

import dataclasses
import time
from enum import IntEnum, StrEnum
from typing import Any, TypeAlias

from ..core.errors import ErrorClass


class Priority(IntEnum):
    """任务优先级，数值越小，优先级越高。"""

    HIGH = 1
    NORMAL = 2
    LOW = 3


class EnqueueSource(StrEnum):
    """任务入队来源。Draining 阶段只拒绝 SEED。"""

    SEED = "seed"
    DISCOVERY = "discovery"


class EnqueueResult(StrEnum):
    """入队结果。"""

    ACCEPTED = "accepted"
    REJECTED_FULL = "rejected_full"
    REJECTED_CLOSED = "rejected_closed"
    DROPPED_DUPLICATE = "dropped_duplicate"

    @property
    def accepted(self) -> bool:
        return self is EnqueueResult.ACCEPTED


class DeadLetterReason(StrEnum):
    """死信原因。

    - PERMANENT: 遇到不可重试的错误
    - EXHAUSTED: 尝试次数达到 max_attempts（毒任务）
    """

    PERMANENT = "permanent"
    EXHAUSTED = "exhausted"


@dataclasses.dataclass(slots=True, frozen=True)
class AttemptRecord:
    """单次失败尝试的记录。

    Attributes:
        attempt: 失败时的尝试次数
        error_class: 错误分类
        cause: 错误描述
        at: 失败时间戳（epoch 秒）
    """

    attempt: int
    error_class: ErrorClass
    cause: str
    at: float


@dataclasses.dataclass(slots=True, frozen=True)
class Task:
    """抓取任务。

    Attributes:
        key: 规范化后的目标标识，同时作为任务 ID
        url: 原始目标地址
        depth: 抓取深度，种子为 0
        attempt: 已重试次数
        priority: 任务优先级
        enqueued_at: 首次入队时间戳（epoch 秒）
        history: 历次失败记录
        lease_token: 分布式模式下本次认领的租约令牌，只在本节点内有效，不参与序列化与比较
    """

    key: str
    url: str
    depth: int = 0
    attempt: int = 0
    priority: Priority = Priority.NORMAL
    enqueued_at: float = dataclasses.field(default_factory=time.time)
    history: tuple[AttemptRecord, ...] = ()
    lease_token: str | None = dataclasses.field(default=None, compare=False, repr=False)

    @property
    def task_id(self) -> str:
        return self.key

    @property
    def tier(self) -> tuple[int, int]:
        """调度层级：同层 FIFO，层间按 (priority, depth) 排序。"""
        return (int(self.priority), self.depth)

    def retried(self, record: AttemptRecord) -> Task:
        """返回尝试次数加一、追加失败记录后的同一任务。"""
        return dataclasses.replace(self, attempt=self.attempt + 1, history=(*self.history, record))

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "url": self.url,
            "depth": self.depth,
            "attempt": self.attempt,
            "priority": int(self.priority),
            "enqueued_at": self.enqueued_at,
            "history": [
                {"attempt": h.attempt, "error_class": h.error_class.value, "cause": h.cause, "at": h.at}
                for h in self.history
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        return cls(
            key=data["key"],
            url=data["url"],
            depth=int(data.get("depth", 0)),
            attempt=int(data.get("attempt", 0)),
            priority=Priority(int(data.get("priority", Priority.NORMAL))),
            enqueued_at=float(data.get("enqueued_at", time.time())),
            history=tuple(
                AttemptRecord(
                    attempt=int(h["attempt"]),
                    error_class=ErrorClass(h["error_class"]),
                    cause=str(h["cause"]),
                    at=float(h["at"]),
                )
                for h in data.get("history", [])
            ),
        )


@dataclasses.dataclass(slots=True, frozen=True)
class Success:
    payload: Any


@dataclasses.dataclass(slots=True, frozen=True)
class TransientFailure:
    cause: str


@dataclasses.dataclass(slots=True, frozen=True)
class PermanentFailure:
    cause: str


@dataclasses.dataclass(slots=True, frozen=True)
class Abandoned:
    """关闭时被强制放弃的任务。"""

    reason: str


Outcome: TypeAlias = Success | TransientFailure | PermanentFailure | Abandoned


@dataclasses.dataclass(slots=True, frozen=True)
class Result:
    """单次任务执行的结果。"""

    task: Task
    outcome: Outcome


@dataclasses.dataclass(slots=True, frozen=True)
class DeadLetterRecord:
    """死信记录，携带完整的重试历史。

    Attributes:
        task: 最终状态的任务（attempt 为终止时的尝试次数）
        reason: 死信原因
        cause: 最后一次失败的错误描述
        at: 进入死信的时间戳
    """

    task: Task
    reason: DeadLetterReason
    cause: str
    at: float = dataclasses.field(default_factory=time.time)

    @property
    def history(self) -> tuple[AttemptRecord, ...]:
        return self.task.history
