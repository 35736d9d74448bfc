"""URL 规范化工具。

去重使用的规范化 key 在所有节点上的计算方式完全一致：
- scheme 与 host 转为小写
- 去除默认端口（http:80、https:443）
- 去除片段（fragment）
- 查询参数按 (key, value) 排序，保留空值
- 空路径规范为 ``/``
"""

from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urljoin, urlsplit, urlunsplit

DEFAULT_PORTS = {"http": 80, "https": 443}


def canonicalize(url: str) -> str:
    """计算 URL 的规范化 key。

    Args:
        url: 原始 URL。

    Returns:
        规范化后的 URL 字符串。

    Raises:
        ValueError: URL 缺少 scheme 或 host。
    """
    parts = urlsplit(url.strip())
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    if not scheme or not host:
        raise ValueError(f"Cannot canonicalize URL without scheme and host: {url!r}")

    port = parts.port
    netloc = host
    if ":" in host:
        netloc = f"[{host}]"
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parts.path or "/"
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))

    return urlunsplit((scheme, netloc, path, query, ""))


def resolve(base: str, href: str) -> str | None:
    """将页面中的相对链接解析为绝对 URL，非 http(s) 链接返回 None。"""
    absolute = urljoin(base, href.strip())
    if urlsplit(absolute).scheme.lower() not in DEFAULT_PORTS:
        return None
    return absolute
