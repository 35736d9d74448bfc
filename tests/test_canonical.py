"""URL 规范化单元测试。"""

import pytest

from crawlqueue.utils.canonical import canonicalize, resolve


def test_fragment_is_dropped():
    assert canonicalize("https://example.com/page#a") == canonicalize("https://example.com/page#b")
    assert canonicalize("https://example.com/page#a") == "https://example.com/page"


def test_scheme_and_host_lowercased_default_port_removed():
    assert canonicalize("HTTPS://Example.COM:443/Path") == "https://example.com/Path"
    assert canonicalize("http://example.com:80/") == "http://example.com/"


def test_non_default_port_kept():
    assert canonicalize("http://example.com:8080/a") == "http://example.com:8080/a"


def test_query_parameters_sorted_and_blank_values_kept():
    assert canonicalize("https://example.com/s?b=2&a=1&c=") == "https://example.com/s?a=1&b=2&c="
    assert canonicalize("https://example.com/s?b=2&a=1") == canonicalize("https://example.com/s?a=1&b=2")


def test_empty_path_normalized():
    assert canonicalize("https://example.com") == "https://example.com/"


def test_ipv6_host_and_userinfo():
    assert canonicalize("http://[::1]:8080/x") == "http://[::1]:8080/x"
    assert canonicalize("https://user:pw@Example.com/") == "https://user:pw@example.com/"


@pytest.mark.parametrize("url", ["", "example.com/page", "/relative/path", "mailto:"])
def test_invalid_urls_raise(url):
    with pytest.raises(ValueError):
        canonicalize(url)


def test_resolve_relative_and_filters_non_http():
    assert resolve("https://example.com/a/b", "../c") == "https://example.com/c"
    assert resolve("https://example.com/", "mailto:someone@example.com") is None
    assert resolve("https://example.com/", "javascript:void(0)") is None
