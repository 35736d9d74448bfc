"""参考 Fetcher 与 LinkExtractor 测试。"""

from __future__ import annotations

import pytest
import pytest_asyncio
from aiohttp import test_utils, web
from aiolimiter import AsyncLimiter

from conftest import make_task, ok_response
from crawlqueue.core.errors import ErrorClass, HttpStatusError, TransientFetchError
from crawlqueue.core.fetcher import AiohttpFetcher, HrefLinkExtractor, NullLinkExtractor


@pytest_asyncio.fixture
async def server():
    async def page(request: web.Request) -> web.Response:
        return web.Response(text='<a href="/next">next</a>', content_type="text/html")

    async def missing(request: web.Request) -> web.Response:
        return web.Response(status=404)

    async def busy(request: web.Request) -> web.Response:
        return web.Response(status=503)

    async def echo_agent(request: web.Request) -> web.Response:
        return web.Response(text=request.headers.get("User-Agent", ""))

    app = web.Application()
    app.router.add_get("/page", page)
    app.router.add_get("/missing", missing)
    app.router.add_get("/busy", busy)
    app.router.add_get("/agent", echo_agent)

    srv = test_utils.TestServer(app)
    await srv.start_server()
    yield srv
    await srv.close()


@pytest.mark.asyncio
async def test_fetch_success(server):
    url = str(server.make_url("/page"))
    async with AiohttpFetcher(limiter=AsyncLimiter(100, 1)) as fetcher:
        response = await fetcher.fetch(make_task(url), timeout=5.0)

    assert response.status == 200
    assert "next" in response.body
    assert response.url == url


@pytest.mark.asyncio
async def test_fetch_sends_configured_headers(server):
    async with AiohttpFetcher(headers={"User-Agent": "crawlqueue-test"}) as fetcher:
        response = await fetcher.fetch(make_task(str(server.make_url("/agent"))), timeout=5.0)

    assert response.body == "crawlqueue-test"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("path", "status", "error_class"), [("/missing", 404, "permanent"), ("/busy", 503, "transient")]
)
async def test_fetch_non_2xx_raises_http_status_error(server, path, status, error_class):
    async with AiohttpFetcher() as fetcher:
        with pytest.raises(HttpStatusError) as exc_info:
            await fetcher.fetch(make_task(str(server.make_url(path))), timeout=5.0)

    assert exc_info.value.status == status
    assert exc_info.value.error_class is ErrorClass(error_class)


@pytest.mark.asyncio
async def test_connection_error_is_transient(unused_tcp_port):
    async with AiohttpFetcher() as fetcher:
        with pytest.raises(TransientFetchError):
            await fetcher.fetch(make_task(f"http://127.0.0.1:{unused_tcp_port}/"), timeout=2.0)


@pytest.mark.asyncio
async def test_fetch_before_enter_raises():
    with pytest.raises(RuntimeError):
        await AiohttpFetcher().fetch(make_task(), timeout=1.0)


def test_href_extractor_resolves_and_filters():
    body = """
    <a href="/a">a</a>
    <a HREF='b?x=1'>b</a>
    <a href="#top">top</a>
    <a href="mailto:me@example.com">mail</a>
    <a href="https://other.com/c">c</a>
    """
    response = ok_response("https://example.com/dir/page", body)

    assert HrefLinkExtractor(same_host=True).extract(response) == [
        "https://example.com/a",
        "https://example.com/dir/b?x=1",
    ]
    assert "https://other.com/c" in HrefLinkExtractor(same_host=False).extract(response)
    assert NullLinkExtractor().extract(response) == []
