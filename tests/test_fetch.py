"""Tests for fetch.py: fetch_url tool."""

import http.client
import socket
import urllib.error
from io import BytesIO
from unittest.mock import MagicMock, patch

import pytest

from metaagent.fetch import (
    MAX_OUTPUT_BYTES,
    MAX_RESPONSE_SIZE,
    _RedirectError,
    check_url_safety,
    fetch_url,
    html_to_text,
)

PUBLIC = [(2, 1, 0, "", ("93.184.216.34", 0))]


def _make_response(body: bytes, content_type: str = "text/html; charset=utf-8"):
    """Create a mock HTTP response."""
    resp = MagicMock()
    resp.read.return_value = body
    resp.headers = http.client.HTTPMessage()
    resp.headers["Content-Type"] = content_type
    return resp


def _serve(mock_opener_factory, mock_dns, resp=None, side_effect=None):
    mock_dns.return_value = PUBLIC
    opener = MagicMock()
    if side_effect is not None:
        opener.open.side_effect = side_effect
    else:
        opener.open.return_value = resp
    mock_opener_factory.return_value = opener
    return opener


# =========================================================================
# html_to_text
# =========================================================================


class TestHtmlToText:
    def test_basic_text_extraction(self):
        assert "Hello world" in html_to_text("<html><body><p>Hello world</p></body></html>")

    def test_strips_script_style_and_nav(self):
        html = (
            "<html><head><style>body { color: red; }</style></head>"
            "<body><nav>Home | About</nav><script>alert('x')</script>"
            "<p>visible</p></body></html>"
        )
        text = html_to_text(html)
        assert "visible" in text
        assert "alert" not in text
        assert "color: red" not in text
        assert "Home | About" not in text

    def test_title_prefixed(self):
        text = html_to_text("<html><head><title>My Page</title></head><body><p>body</p></body></html>")
        assert text.startswith("My Page\n\n")
        assert text.count("My Page") == 1

    def test_html_entities_decoded(self):
        assert "5 > 3 & 2 < 4" in html_to_text("<p>5 &gt; 3 &amp; 2 &lt; 4</p>")

    def test_collapses_whitespace(self):
        assert html_to_text("<p>  lots   of   spaces  </p>") == "lots of spaces"

    def test_block_elements_separate_lines(self):
        assert html_to_text("<div>first</div><div>second</div>").split("\n\n") == [
            "first",
            "second",
        ]


# =========================================================================
# check_url_safety
# =========================================================================


class TestUrlSafety:
    @pytest.mark.parametrize(
        "url", ["ftp://example.com/file", "file:///etc/passwd", "javascript:alert(1)"]
    )
    def test_rejects_scheme(self, url):
        assert "not allowed" in check_url_safety(url)

    def test_rejects_empty_hostname(self):
        assert "could not parse hostname" in check_url_safety("http://")

    @pytest.mark.parametrize(
        "addr", ["127.0.0.1", "10.0.0.1", "192.168.1.1", "172.16.0.1", "169.254.169.254"]
    )
    @patch("metaagent.fetch.socket.getaddrinfo")
    def test_blocks_private(self, mock_dns, addr):
        mock_dns.return_value = [(2, 1, 0, "", (addr, 0))]
        result = check_url_safety("http://somewhere.example")
        assert "private/internal" in result
        assert addr in result

    @patch("metaagent.fetch.socket.getaddrinfo")
    def test_blocks_ipv6_loopback(self, mock_dns):
        mock_dns.return_value = [(10, 1, 0, "", ("::1", 0, 0, 0))]
        assert "private/internal" in check_url_safety("http://localhost6")

    @patch("metaagent.fetch.socket.getaddrinfo")
    def test_allows_public_address(self, mock_dns):
        mock_dns.return_value = PUBLIC
        assert check_url_safety("http://example.com") is None

    @patch("metaagent.fetch.socket.getaddrinfo")
    def test_dns_resolution_failure(self, mock_dns):
        mock_dns.side_effect = socket.gaierror("Name or service not known")
        assert "could not resolve" in check_url_safety("http://nonexistent.invalid")


# =========================================================================
# fetch_url: formats and validation
# =========================================================================


@patch("metaagent.fetch.socket.getaddrinfo")
@patch("metaagent.fetch.urllib.request.build_opener")
class TestFetchUrlFormats:
    def test_raw_html(self, mock_opener_factory, mock_dns):
        _serve(mock_opener_factory, mock_dns, _make_response(b"<h1>Hello</h1>"))
        assert "<h1>Hello</h1>" in fetch_url("http://example.com", format="html")

    def test_text_format(self, mock_opener_factory, mock_dns):
        body = b"<html><body><p>Hello</p><script>evil()</script></body></html>"
        _serve(mock_opener_factory, mock_dns, _make_response(body))
        result = fetch_url("http://example.com", format="text")
        assert "Hello" in result
        assert "evil()" not in result

    def test_markdown_format(self, mock_opener_factory, mock_dns):
        body = b"<html><body><h1>Title</h1><p>Paragraph</p></body></html>"
        _serve(mock_opener_factory, mock_dns, _make_response(body))
        result = fetch_url("http://example.com", format="markdown")
        assert "Title" in result
        assert "Paragraph" in result

    def test_plain_text_returned_as_is(self, mock_opener_factory, mock_dns):
        _serve(mock_opener_factory, mock_dns, _make_response(b"<not html>", "text/plain"))
        assert fetch_url("http://example.com") == "<not html>"

    def test_response_closed(self, mock_opener_factory, mock_dns):
        resp = _make_response(b"<p>hello</p>")
        _serve(mock_opener_factory, mock_dns, resp)
        fetch_url("http://example.com")
        resp.close.assert_called_once()


class TestFetchUrlValidation:
    def test_invalid_format(self):
        assert "invalid format" in fetch_url("http://example.com", format="pdf")

    def test_empty_url(self):
        assert fetch_url("").startswith("error:")

    def test_no_scheme(self):
        assert fetch_url("example.com").startswith("error:")

    def test_timeout_string_returns_error(self):
        assert "timeout must be a number" in fetch_url("http://example.com", timeout="30")


# =========================================================================
# fetch_url: limits and failures
# =========================================================================


@patch("metaagent.fetch.socket.getaddrinfo")
@patch("metaagent.fetch.urllib.request.build_opener")
class TestFetchUrlFailures:
    def test_timeout_clamped(self, mock_opener_factory, mock_dns):
        opener = _serve(mock_opener_factory, mock_dns, _make_response(b"ok", "text/plain"))
        fetch_url("http://example.com", timeout=999)
        assert opener.open.call_args.kwargs["timeout"] == 120

    def test_response_too_large(self, mock_opener_factory, mock_dns):
        resp = _make_response(b"x" * (MAX_RESPONSE_SIZE + 1), "text/plain")
        _serve(mock_opener_factory, mock_dns, resp)
        assert "too large" in fetch_url("http://example.com")
        resp.close.assert_called_once()

    def test_output_truncated(self, mock_opener_factory, mock_dns):
        resp = _make_response(b"a" * (MAX_OUTPUT_BYTES + 1000), "text/plain")
        _serve(mock_opener_factory, mock_dns, resp)
        result = fetch_url("http://example.com")
        assert "content truncated" in result
        assert len(result.encode()) < MAX_OUTPUT_BYTES + 200

    def test_binary_content_type(self, mock_opener_factory, mock_dns):
        _serve(mock_opener_factory, mock_dns, _make_response(b"\x89PNG\r\n", "image/png"))
        result = fetch_url("http://example.com/image.png")
        assert "binary content" in result
        assert "image/png" in result

    def test_binary_null_bytes(self, mock_opener_factory, mock_dns):
        _serve(mock_opener_factory, mock_dns, _make_response(b"text\x00binary", "text/html"))
        assert "binary content" in fetch_url("http://example.com/weird")

    def test_http_error(self, mock_opener_factory, mock_dns):
        err = urllib.error.HTTPError("http://example.com/x", 404, "Not Found", {}, BytesIO(b""))
        _serve(mock_opener_factory, mock_dns, side_effect=err)
        assert fetch_url("http://example.com/x") == "error: HTTP 404 Not Found"

    def test_timeout_error(self, mock_opener_factory, mock_dns):
        _serve(mock_opener_factory, mock_dns, side_effect=TimeoutError())
        assert "timed out" in fetch_url("http://example.com/slow", timeout=5)

    def test_latin1_charset(self, mock_opener_factory, mock_dns):
        resp = _make_response("café".encode("latin-1"), "text/html; charset=iso-8859-1")
        _serve(mock_opener_factory, mock_dns, resp)
        assert "café" in fetch_url("http://example.com", format="html")


# =========================================================================
# fetch_url: redirects
# =========================================================================


class TestRedirects:
    @patch("metaagent.fetch.socket.getaddrinfo")
    @patch("metaagent.fetch.urllib.request.build_opener")
    def test_redirect_to_private_blocked(self, mock_opener_factory, mock_dns):
        def dns(hostname, *args, **kwargs):
            if hostname == "127.0.0.1":
                return [(2, 1, 0, "", ("127.0.0.1", 0))]
            return PUBLIC

        opener = _serve(
            mock_opener_factory, mock_dns, side_effect=_RedirectError("http://127.0.0.1/secret", 302)
        )
        mock_dns.side_effect = dns
        result = fetch_url("http://public.com")
        assert "private/internal" in result
        assert opener.open.call_count == 1

    @patch("metaagent.fetch.socket.getaddrinfo")
    @patch("metaagent.fetch.urllib.request.build_opener")
    def test_relative_redirect_followed(self, mock_opener_factory, mock_dns):
        calls = []

        def open_side_effect(req, **kwargs):
            calls.append(req.full_url)
            if len(calls) == 1:
                raise _RedirectError("/login", 302)
            return _make_response(b"<p>Login page</p>")

        _serve(mock_opener_factory, mock_dns, side_effect=open_side_effect)
        result = fetch_url("http://example.com/dashboard")
        assert "Login page" in result
        assert calls == ["http://example.com/dashboard", "http://example.com/login"]

    @patch("metaagent.fetch.socket.getaddrinfo")
    @patch("metaagent.fetch.urllib.request.build_opener")
    def test_too_many_redirects(self, mock_opener_factory, mock_dns):
        _serve(
            mock_opener_factory, mock_dns, side_effect=_RedirectError("http://example.com/next", 302)
        )
        assert "too many redirects" in fetch_url("http://example.com/start")
