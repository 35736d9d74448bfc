"""外部抓取协作者模块。

定义调度核心依赖的 Fetcher 与 LinkExtractor 能力接口，并提供基于 aiohttp 的
参考 Fetcher 和基于 href 正则的参考 LinkExtractor。传输、请求头、Cookie 等
细节不属于调度核心，核心只把 Fetcher 的异常当作不透明错误来分类。
"""

from __future__ import annotations

import dataclasses
import re
from typing import TYPE_CHECKING, Protocol
from urllib.parse import urlsplit

import aiohttp
from aiolimiter import AsyncLimiter
from loguru import logger

from ..utils.canonical import resolve
from .errors import HttpStatusError, MalformedResponseError, TransientFetchError

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from ..scheduling.tasks import Task


@dataclasses.dataclass(slots=True, frozen=True)
class FetchResponse:
    """抓取响应。

    Attributes:
        url: 最终 URL（跟随重定向后）
        status: HTTP 状态码
        body: 响应文本
        headers: 响应头
    """

    url: str
    status: int
    body: str
    headers: Mapping[str, str] = dataclasses.field(default_factory=dict)


class Fetcher(Protocol):
    """抓取器协议。"""

    async def fetch(self, task: Task, timeout: float) -> FetchResponse:
        """抓取任务目标。

        Args:
            task: 待抓取任务。
            timeout: 本次抓取的超时时间（秒），由 WorkerPool 强制执行。

        Raises:
            Exception: 任意抓取错误，由调度核心分类。
        """
        ...


class LinkExtractor(Protocol):
    """链接提取器协议。"""

    def extract(self, response: FetchResponse) -> Iterable[str]:
        """从成功的响应中提取后续目标的绝对 URL。"""
        ...


class AiohttpFetcher:
    """基于 aiohttp 的参考 Fetcher。

    使用共享 ClientSession，可选 AsyncLimiter 限制全局请求速率。
    非 2xx 响应抛出 HttpStatusError，连接类错误包装为 TransientFetchError。
    """

    def __init__(
        self,
        *,
        limiter: AsyncLimiter | None = None,
        headers: Mapping[str, str] | None = None,
        max_body_bytes: int = 5 * 1024 * 1024,
    ) -> None:
        self.limiter = limiter
        self.headers = dict(headers or {})
        self.max_body_bytes = max_body_bytes
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> AiohttpFetcher:
        if self._session is None:
            self._session = aiohttp.ClientSession(headers=self.headers)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def fetch(self, task: Task, timeout: float) -> FetchResponse:
        if self._session is None:
            raise RuntimeError("AiohttpFetcher used before __aenter__")

        if self.limiter is not None:
            await self.limiter.acquire()

        try:
            async with self._session.get(task.url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
                if not 200 <= resp.status < 300:
                    raise HttpStatusError(resp.status, task.url)
                raw = await resp.content.read(self.max_body_bytes)
                charset = resp.charset or "utf-8"
                try:
                    body = raw.decode(charset)
                except (UnicodeDecodeError, LookupError) as e:
                    raise MalformedResponseError(f"Cannot decode body of {task.url} as {charset}") from e
                return FetchResponse(url=str(resp.url), status=resp.status, body=body, headers=dict(resp.headers))
        except aiohttp.ClientError as e:
            raise TransientFetchError(f"{type(e).__name__}: {e}") from e


_HREF_RE = re.compile(r"""href\s*=\s*["']([^"'#][^"']*)["']""", re.IGNORECASE)


class HrefLinkExtractor:
    """基于 href 正则的参考 LinkExtractor。

    只保留 http(s) 链接；``same_host`` 为 True 时只保留与响应同域的链接。
    """

    def __init__(self, *, same_host: bool = True) -> None:
        self.same_host = same_host

    def extract(self, response: FetchResponse) -> list[str]:
        links: list[str] = []
        base_host = urlsplit(response.url).hostname if self.same_host else None
        for href in _HREF_RE.findall(response.body):
            absolute = resolve(response.url, href)
            if absolute is None:
                continue
            if base_host is not None and urlsplit(absolute).hostname != base_host:
                continue
            links.append(absolute)
        logger.trace("Extracted {} links from {}", len(links), response.url)
        return links


class NullLinkExtractor:
    """不提取任何链接（只抓取种子）。"""

    def extract(self, response: FetchResponse) -> list[str]:
        return []
