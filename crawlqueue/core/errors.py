"""异常体系模块。

任务级错误（抓取失败）在 RetryPolicy / WorkerPool 内部消化，
协调存储错误（CoordinationError）则需要向调用方暴露。
"""

from __future__ import annotations

from enum import StrEnum


class ErrorClass(StrEnum):
    """抓取错误分类。

    - TRANSIENT: 可重试（超时、连接重置、5xx、429）
    - PERMANENT: 不可重试（其余 4xx、响应格式错误）
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class CrawlError(Exception):
    """所有 crawlqueue 异常的基类。"""


class ConfigError(CrawlError):
    """配置加载或校验失败，仅在启动阶段抛出。"""


class FetchError(CrawlError):
    """Fetcher 抛出的抓取错误基类。"""

    error_class: ErrorClass = ErrorClass.TRANSIENT


class TransientFetchError(FetchError):
    error_class = ErrorClass.TRANSIENT


class PermanentFetchError(FetchError):
    error_class = ErrorClass.PERMANENT


class MalformedResponseError(PermanentFetchError):
    """响应内容无法解析或类型不受支持。"""


class HttpStatusError(FetchError):
    """非 2xx 响应。

    429 与 5xx 视为可重试，其余 4xx 视为永久失败。
    """

    def __init__(self, status: int, url: str = "") -> None:
        super().__init__(f"HTTP {status} for {url}" if url else f"HTTP {status}")
        self.status = status
        self.url = url

    @property
    def error_class(self) -> ErrorClass:  # type: ignore[override]
        if self.status == 429 or self.status >= 500:
            return ErrorClass.TRANSIENT
        if 400 <= self.status < 500:
            return ErrorClass.PERMANENT
        return ErrorClass.TRANSIENT


class CoordinationError(CrawlError):
    """共享协调存储不可达或状态不一致。

    这不是任务级错误，由 CoordinationAdapter 的调用方决定暂停或降级为单机调度。
    """

    def __init__(self, operation: str, message: str = "") -> None:
        super().__init__(f"Coordination store failure during {operation}: {message}" if message else operation)
        self.operation = operation


class OperationCancelled(CrawlError):
    """阻塞操作因取消令牌触发而中止。"""
