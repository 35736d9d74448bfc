"""协作式取消令牌模块。

一个 ``CancelToken`` 由 LifecycleController 持有并广播，所有阻塞点
（Frontier.dequeue、Fetcher 调用、排空等待）通过 ``guard`` 观察同一信号，
信号触发时立即解除阻塞，而不是轮询共享标志。
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, TypeVar

from ..core.errors import OperationCancelled

if TYPE_CHECKING:
    from collections.abc import Awaitable

T = TypeVar("T")


class CancelToken:
    """广播式取消令牌。"""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """触发取消（幂等）。"""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, aw: Awaitable[T]) -> T:
        """在令牌的监视下等待 ``aw``。

        若 ``aw`` 先完成则返回其结果；若令牌先触发，则取消 ``aw`` 并抛出
        ``OperationCancelled``。``aw`` 与取消同时完成时以其结果为准，
        避免已经出队的任务在竞态中丢失。

        Raises:
            OperationCancelled: 令牌在 ``aw`` 完成之前触发。
        """
        if self.cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise OperationCancelled(self.reason or "cancelled")

        inner: asyncio.Future[Any] = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({inner, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            inner.cancel()
            raise
        finally:
            waiter.cancel()

        if inner.done():
            return inner.result()

        inner.cancel()
        await asyncio.wait({inner})
        if inner.cancelled():
            raise OperationCancelled(self.reason or "cancelled")
        # 取消请求送达前 inner 已经完成
        return inner.result()
