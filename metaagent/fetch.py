"""fetch_url tool: retrieve a web page as plain text, markdown, or raw HTML."""

import html
import html.parser
import ipaddress
import re
import socket
import urllib.error
import urllib.parse
import urllib.request

MAX_RESPONSE_SIZE = 5 * 1024 * 1024  # raw download cap
MAX_OUTPUT_BYTES = 8 * 1024  # results are fed back into a small prompt
MAX_REDIRECTS = 10
FORMATS = ("text", "markdown", "html")

HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept": "text/html,text/plain,text/markdown,application/json,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.9",
}

_TEXTUAL_MIMES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/xhtml+xml",
        "application/rss+xml",
        "application/atom+xml",
    }
)

_BLOCK_TAGS = frozenset(
    {
        "p",
        "div",
        "br",
        "h1",
        "h2",
        "h3",
        "h4",
        "h5",
        "h6",
        "li",
        "tr",
        "blockquote",
        "pre",
        "hr",
        "section",
        "article",
        "header",
        "footer",
        "main",
        "table",
    }
)

_SKIP_TAGS = frozenset({"script", "style", "noscript", "svg", "nav"})


class _RedirectError(Exception):
    def __init__(self, url: str, code: int):
        self.url = url
        self.code = code


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _RedirectError(newurl, code)


class _PageText(html.parser.HTMLParser):
    """Collect readable page text, dropping scripts, styles and navigation."""

    def __init__(self):
        super().__init__(convert_charrefs=True)
        self._parts: list[str] = []
        self._skip_depth = 0
        self.title = ""
        self._in_title = False

    def handle_starttag(self, tag, attrs):
        if tag in _SKIP_TAGS:
            self._skip_depth += 1
        elif tag == "title":
            self._in_title = True
        elif tag in _BLOCK_TAGS and not self._skip_depth:
            self._parts.append("\n")

    def handle_endtag(self, tag):
        if tag in _SKIP_TAGS:
            self._skip_depth = max(0, self._skip_depth - 1)
        elif tag == "title":
            self._in_title = False
        elif tag in _BLOCK_TAGS and not self._skip_depth:
            self._parts.append("\n")

    def handle_data(self, data):
        if self._in_title:
            self.title += data
        elif not self._skip_depth:
            self._parts.append(data)

    def text(self) -> str:
        text = "".join(self._parts)
        text = re.sub(r"[^\S\n]+", " ", text)
        text = re.sub(r"\n\s*\n\s*", "\n\n", text)
        return text.strip()


def html_to_text(body: str) -> str:
    parser = _PageText()
    parser.feed(body)
    parser.close()
    text = parser.text()
    title = html.unescape(parser.title.strip())
    if title and not text.startswith(title):
        return f"{title}\n\n{text}"
    return text


def check_url_safety(url: str) -> str | None:
    """Return an error string for non-http(s) or private-network URLs, else None."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return f"error: url scheme {parsed.scheme!r} is not allowed, must be http or https"
    hostname = parsed.hostname
    if not hostname:
        return "error: could not parse hostname from url"
    try:
        infos = socket.getaddrinfo(hostname, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        return f"error: could not resolve hostname {hostname!r}: {e}"
    for _family, _, _, _, sockaddr in infos:
        addr = ipaddress.ip_address(sockaddr[0])
        if addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved:
            return f"error: url resolves to private/internal address ({addr}), blocked"
    return None


def _charset(content_type: str | None) -> str | None:
    if not content_type:
        return None
    for part in content_type.split(";"):
        part = part.strip()
        if part.lower().startswith("charset="):
            return part.split("=", 1)[1].strip().strip("\"'")
    return None


def _decode(data: bytes, content_type: str | None) -> str:
    for encoding in (_charset(content_type), "utf-8"):
        if encoding is None:
            continue
        try:
            return data.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue
    return data.decode("latin-1")


def _truncate(output: str) -> str:
    encoded = output.encode("utf-8")
    if len(encoded) <= MAX_OUTPUT_BYTES:
        return output
    head = encoded[:MAX_OUTPUT_BYTES].decode("utf-8", errors="ignore")
    return head + f"\n[content truncated at {MAX_OUTPUT_BYTES} bytes, total was {len(encoded)} bytes]"


def _open(url: str, timeout: int):
    """Open url following redirects by hand so every hop gets a safety check."""
    opener = urllib.request.build_opener(_NoRedirectHandler)
    current = url
    for _ in range(MAX_REDIRECTS + 1):
        err = check_url_safety(current)
        if err:
            return None, err
        req = urllib.request.Request(current, headers=HEADERS)
        try:
            return opener.open(req, timeout=timeout), None
        except _RedirectError as r:
            current = urllib.parse.urljoin(current, r.url)
        except urllib.error.HTTPError as e:
            return None, f"error: HTTP {e.code} {e.reason}"
        except urllib.error.URLError as e:
            host = urllib.parse.urlparse(current).hostname
            return None, f"error: could not connect to {host}: {e.reason}"
        except TimeoutError:
            return None, f"error: request timed out after {timeout} seconds"
        except OSError as e:
            host = urllib.parse.urlparse(current).hostname
            return None, f"error: could not connect to {host}: {e}"
    return None, f"error: too many redirects (limit is {MAX_REDIRECTS})"


def fetch_url(url: str, format: str = "text", timeout: int = 30) -> str:
    """Fetch url and return its content in the requested format.

    Returns the content on success and an "error: ..." string on failure.
    """
    if format not in FORMATS:
        return f"error: invalid format {format!r}, must be one of {', '.join(FORMATS)}"
    if not url or not isinstance(url, str):
        return "error: url must be a non-empty string"
    if not isinstance(timeout, (int, float)):
        return f"error: timeout must be a number, got {type(timeout).__name__}"
    timeout = max(1, min(int(timeout), 120))

    resp, err = _open(url.strip(), timeout)
    if err:
        return err

    try:
        content_type = resp.headers.get("Content-Type", "")
        mime = content_type.split(";")[0].strip().lower()
        if mime and not mime.startswith("text/") and mime not in _TEXTUAL_MIMES:
            return f"error: binary content (content-type: {mime}), cannot display as text"
        try:
            data = resp.read(MAX_RESPONSE_SIZE + 1)
        except TimeoutError:
            return f"error: request timed out after {timeout} seconds"
        except OSError as e:
            return f"error: failed to read response: {e}"
        if len(data) > MAX_RESPONSE_SIZE:
            return f"error: response too large (limit is {MAX_RESPONSE_SIZE} bytes)"
        if b"\x00" in data[:8192]:
            return "error: binary content detected, cannot display as text"
        body = _decode(data, content_type)
    finally:
        resp.close()

    is_html = mime in ("text/html", "application/xhtml+xml") or (
        not mime and "<html" in body[:1024].lower()
    )
    if format == "html" or not is_html:
        output = body
    elif format == "text":
        output = html_to_text(body)
    else:
        try:
            from html_to_markdown import convert

            output = convert(body)
        except Exception as e:
            return f"error: failed to convert HTML to markdown: {e}"

    return _truncate(output)
