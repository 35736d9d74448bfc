"""重试策略模块。

``RetryPolicy.decide`` 是 (attempt, error_class, 策略配置) 的纯函数：
- PERMANENT 错误无论尝试次数都直接进入死信
- attempt 达到 max_attempts 时即使是 TRANSIENT 错误也进入死信
- 其余情况返回 ``min(base * 2**attempt, max_backoff)`` 的退避延迟，可选 ±jitter 抖动
"""

from __future__ import annotations

import asyncio
import dataclasses
import random
from typing import TypeAlias

from ..core.errors import ErrorClass, FetchError
from .tasks import DeadLetterReason


@dataclasses.dataclass(slots=True, frozen=True)
class RetryAfter:
    delay: float


@dataclasses.dataclass(slots=True, frozen=True)
class DeadLetter:
    reason: DeadLetterReason


Decision: TypeAlias = RetryAfter | DeadLetter


@dataclasses.dataclass(slots=True, frozen=True)
class RetryPolicy:
    """指数退避重试策略。

    Attributes:
        max_attempts: 最大重试次数
        base_backoff: 基础退避时间（秒）
        max_backoff: 退避时间上限（秒）
        jitter: 抖动比例，取值 [0, 0.5]，0 表示不抖动
    """

    max_attempts: int = 3
    base_backoff: float = 1.0
    max_backoff: float = 60.0
    jitter: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 0:
            raise ValueError("max_attempts must be >= 0")
        if self.base_backoff < 0 or self.max_backoff < 0:
            raise ValueError("backoff must be >= 0")
        if not 0.0 <= self.jitter <= 0.5:
            raise ValueError("jitter must be within [0, 0.5]")

    def backoff(self, attempt: int) -> float:
        """第 ``attempt`` 次重试的基础延迟（未抖动）。"""
        if self.base_backoff == 0:
            return 0.0
        # 避免大 attempt 时 2**attempt 溢出为 inf
        exponent = min(attempt, 62)
        return min(self.base_backoff * (2**exponent), self.max_backoff)

    def decide(self, attempt: int, error_class: ErrorClass, *, rand: float | None = None) -> Decision:
        """决定重试还是进入死信。

        Args:
            attempt: 任务当前的尝试次数（已重试次数）。
            error_class: 本次失败的错误分类。
            rand: [0, 1) 区间的随机数，用于抖动；不提供时使用 ``random.random()``。

        Returns:
            ``RetryAfter(delay)`` 或 ``DeadLetter(reason)``。
        """
        if error_class is ErrorClass.PERMANENT:
            return DeadLetter(DeadLetterReason.PERMANENT)
        if attempt >= self.max_attempts:
            return DeadLetter(DeadLetterReason.EXHAUSTED)

        delay = self.backoff(attempt)
        if self.jitter:
            r = random.random() if rand is None else rand
            delay *= 1.0 + self.jitter * (2.0 * r - 1.0)
            delay = min(max(delay, 0.0), self.max_backoff)
        return RetryAfter(delay)


def classify_error(exc: BaseException) -> ErrorClass:
    """将 Fetcher 抛出的不透明异常归类。

    - FetchError 子类自带分类（HttpStatusError 按状态码）
    - 超时与连接错误为 TRANSIENT
    - 解码失败 / ValueError 视为响应格式错误，为 PERMANENT
    - 其余未知错误按 TRANSIENT 处理，由 max_attempts 兜底
    """
    if isinstance(exc, FetchError):
        return exc.error_class
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError, OSError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, (UnicodeDecodeError, ValueError)):
        return ErrorClass.PERMANENT
    return ErrorClass.TRANSIENT
