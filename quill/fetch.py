"""Web collaborators for the webFetch and webSearch tools."""

import html
import ipaddress
import re
import socket
import urllib.error
import urllib.parse
import urllib.request

from duckduckgo_search import DDGS
from html_to_markdown import convert

from .errors import ToolFailure

MAX_RESPONSE_SIZE = 5 * 1024 * 1024
MAX_MARKDOWN_CHARS = 20_000
MAX_REDIRECTS = 10
TRUNCATION_MARKER = "\n\n[content truncated]"

SEARCH_DEFAULT_LIMIT = 5
SEARCH_MAX_LIMIT = 10

HEADERS = {
    "User-Agent": "Mozilla/5.0 (compatible; quill-agent/0.1; +https://pypi.org/project/quill/)",
    "Accept": "text/html,application/xhtml+xml,text/markdown;q=0.9,text/plain;q=0.8,*/*;q=0.5",
}

# Non-"text/*" types that are still readable as text
_TEXT_MIMES = frozenset(
    {
        "application/json",
        "application/xml",
        "application/xhtml+xml",
        "application/javascript",
        "application/rss+xml",
        "application/atom+xml",
    }
)

_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)
_SKIP_RE = re.compile(
    r"<(script|style|noscript|svg)\b[^>]*>.*?</\1\s*>", re.IGNORECASE | re.DOTALL
)


class _RedirectError(Exception):
    """Raised by the opener instead of following a 3xx, so each hop is vetted."""

    def __init__(self, url: str, code: int):
        super().__init__(url, code)
        self.url = url
        self.code = code


class _NoRedirectHandler(urllib.request.HTTPRedirectHandler):
    def redirect_request(self, req, fp, code, msg, headers, newurl):
        raise _RedirectError(newurl, code)


def _is_internal(addr: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return addr.is_private or addr.is_loopback or addr.is_link_local or addr.is_reserved


def check_url_safety(url: str) -> None:
    """Raise ToolFailure for a non-http(s) URL or one resolving to a private address."""
    parts = urllib.parse.urlsplit(url)
    if parts.scheme not in ("http", "https"):
        raise ToolFailure(f"url scheme {parts.scheme!r} is not allowed, must be http or https")
    host = parts.hostname
    if not host:
        raise ToolFailure("could not parse hostname from url")

    try:
        resolved = socket.getaddrinfo(host, None, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except socket.gaierror as e:
        raise ToolFailure(f"could not resolve hostname {host!r}: {e}") from e
    internal = [
        a for a in (ipaddress.ip_address(info[4][0]) for info in resolved) if _is_internal(a)
    ]
    if internal:
        raise ToolFailure(
            f"url resolves to private/internal address ({internal[0]}), blocked for security"
        )


def _decode(data: bytes, charset: str | None) -> str:
    try:
        return data.decode(charset or "utf-8")
    except (UnicodeDecodeError, LookupError):
        pass
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return data.decode("latin-1")


def extract_title(body: str) -> str:
    match = _TITLE_RE.search(body)
    if not match:
        return ""
    return " ".join(html.unescape(match.group(1)).split())


def cap_markdown(markdown: str) -> tuple[str, bool]:
    if len(markdown) <= MAX_MARKDOWN_CHARS:
        return markdown, False
    return markdown[:MAX_MARKDOWN_CHARS] + TRUNCATION_MARKER, True


def extract_content(body: str, mime: str = "text/html") -> dict:
    """Convert a fetched document into {title, markdown, truncated}."""
    if mime == "text/markdown" or not mime.endswith(("html", "xml")):
        markdown, truncated = cap_markdown(body.strip())
        return {"title": "", "markdown": markdown, "truncated": truncated}

    title = extract_title(body)
    cleaned = _SKIP_RE.sub("", body)
    try:
        markdown = convert(cleaned)
    except Exception as e:
        raise ToolFailure(f"failed to convert HTML to markdown: {e}") from e
    markdown = re.sub(r"\n{3,}", "\n\n", markdown).strip()
    markdown, truncated = cap_markdown(markdown)
    return {"title": title, "markdown": markdown, "truncated": truncated}


def _transport_failure(exc: Exception, url: str, timeout: int) -> ToolFailure:
    if isinstance(exc, urllib.error.HTTPError):
        return ToolFailure(f"HTTP {exc.code}: {exc.reason}")
    reason = exc.reason if isinstance(exc, urllib.error.URLError) else exc
    if isinstance(reason, TimeoutError) or "timed out" in str(reason).lower():
        return ToolFailure(f"request timed out after {timeout} seconds")
    return ToolFailure(f"could not connect to {urllib.parse.urlsplit(url).hostname}: {reason}")


def _open(url: str, timeout: int):
    """Open url, following up to MAX_REDIRECTS redirects and vetting every hop."""
    opener = urllib.request.build_opener(_NoRedirectHandler)
    hops = 0
    while True:
        check_url_safety(url)
        try:
            return url, opener.open(urllib.request.Request(url, headers=HEADERS), timeout=timeout)
        except _RedirectError as redirect:
            hops += 1
            if hops > MAX_REDIRECTS:
                raise ToolFailure(f"too many redirects (limit is {MAX_REDIRECTS})")
            url = urllib.parse.urljoin(url, redirect.url)
        except OSError as e:
            raise _transport_failure(e, url, timeout) from e


def fetch_page(url: str, timeout: int = 30) -> dict:
    """Fetch a URL and return {url, title, markdown, truncated}.

    Raises ToolFailure for unsafe targets, transport errors, binary or
    oversized responses.
    """
    if not url or not isinstance(url, str):
        raise ToolFailure("url must be a non-empty string")
    timeout = max(1, min(int(timeout), 120))

    final_url, resp = _open(url, timeout)
    with resp:
        headers = resp.headers
        mime = headers.get_content_type() if headers.get("Content-Type") else "text/html"
        if not mime.startswith("text/") and mime not in _TEXT_MIMES:
            raise ToolFailure(f"binary content (content-type: {mime}), cannot display as text")
        try:
            data = resp.read(MAX_RESPONSE_SIZE + 1)
        except OSError as e:
            raise _transport_failure(e, final_url, timeout) from e

    if len(data) > MAX_RESPONSE_SIZE:
        raise ToolFailure(f"response too large ({len(data)} bytes, limit is 5MB)")
    if b"\x00" in data[:8192]:
        raise ToolFailure("binary content detected (null bytes found), cannot display as text")

    page = extract_content(_decode(data, headers.get_content_charset()), mime)
    return {"url": final_url, **page}


def search_web(query: str, limit: int = SEARCH_DEFAULT_LIMIT) -> dict:
    """Search DuckDuckGo and return {query, results:[{title, url, description}]}."""
    limit = max(1, min(int(limit), SEARCH_MAX_LIMIT))
    try:
        with DDGS() as ddgs:
            raw = list(ddgs.text(query, max_results=limit))
    except Exception as e:
        raise ToolFailure(f"web search failed: {e}") from e

    results = []
    for r in raw[:limit]:
        results.append(
            {
                "title": (r.get("title") or "").strip(),
                "url": (r.get("href") or r.get("link") or "").strip(),
                "description": (r.get("body") or "").strip(),
            }
        )
    return {"query": query, "results": results}
