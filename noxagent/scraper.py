"""
Nox Agent Scraper — fetch pages for paid scrape/research jobs.

Every URL, including each redirect hop, goes through the URL guard before a
connection is made. Bodies are capped at max_bytes and decoded leniently.
"""

import html.parser
import logging
import re
import urllib.error
import urllib.request
from dataclasses import dataclass, field, asdict
from typing import Optional
from urllib.parse import urljoin

from noxagent.url_guard import TargetValidator


logger = logging.getLogger(__name__)

USER_AGENT = "Nox-Agent/1.0 (+https://nox-agent.masumi.network)"
DEFAULT_TIMEOUT = 15.0
DEFAULT_MAX_BYTES = 1024 * 1024
MAX_TEXT_CHARS = 5000
MAX_LINKS = 50
MAX_URLS_PER_REQUEST = 5
EXCERPT_RADIUS = 80

_WS = re.compile(r"\s+")


class UnsafeTargetError(ValueError):
    """URL rejected by the guard. str() is the coarse reason only."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class FetchError(Exception):
    """Upstream fetch failed (network error, HTTP error, non-HTML body)."""


# ── Extraction ──────────────────────────────────────────────────────────────

class _PageParser(html.parser.HTMLParser):
    SKIP = {"script", "style", "noscript", "template", "svg"}

    def __init__(self, base_url: str = ""):
        super().__init__(convert_charrefs=True)
        self.base_url = base_url
        self.title_parts: list[str] = []
        self.chunks: list[str] = []
        self.links: list[str] = []
        self._skip_depth = 0
        self._in_title = False

    def handle_starttag(self, tag, attrs):
        if tag in self.SKIP:
            self._skip_depth += 1
        elif tag == "title":
            self._in_title = True
        elif tag == "a":
            href = dict(attrs).get("href")
            if href and not href.startswith(("#", "javascript:", "mailto:")):
                self.links.append(urljoin(self.base_url, href))

    def handle_endtag(self, tag):
        if tag in self.SKIP and self._skip_depth:
            self._skip_depth -= 1
        elif tag == "title":
            self._in_title = False

    def handle_data(self, data):
        if self._skip_depth:
            return
        if self._in_title:
            self.title_parts.append(data)
            return
        text = data.strip()
        if text:
            self.chunks.append(text)


@dataclass
class Page:
    url: str
    status: int
    content_type: str
    title: str = ""
    text: str = ""
    links: list = field(default_factory=list)
    excerpt: Optional[str] = None
    truncated: bool = False

    def to_dict(self) -> dict:
        d = asdict(self)
        if d["excerpt"] is None:
            del d["excerpt"]
        return d


def extract(markup: str, base_url: str = "") -> dict:
    """Title, visible text and absolute links from an HTML document."""
    parser = _PageParser(base_url)
    parser.feed(markup)
    parser.close()
    seen = set()
    links = []
    for link in parser.links:
        if link not in seen:
            seen.add(link)
            links.append(link)
    return {
        "title": _WS.sub(" ", "".join(parser.title_parts)).strip(),
        "text": _WS.sub(" ", " ".join(parser.chunks)).strip(),
        "links": links[:MAX_LINKS],
    }


def find_excerpt(text: str, selector: str) -> str:
    idx = text.lower().find(selector.lower())
    if idx < 0:
        return ""
    return text[max(0, idx - EXCERPT_RADIUS): idx + len(selector) + EXCERPT_RADIUS]


# ── Fetching ────────────────────────────────────────────────────────────────

class _GuardedRedirectHandler(urllib.request.HTTPRedirectHandler):
    def __init__(self, validator: TargetValidator):
        super().__init__()
        self.validator = validator

    def redirect_request(self, req, fp, code, msg, headers, newurl):
        outcome = self.validator.check_safe(newurl)
        if not outcome.safe:
            logger.warning("Blocked redirect during fetch (%s)", outcome.reason)
            raise UnsafeTargetError(outcome.reason)
        return super().redirect_request(req, fp, code, msg, headers, newurl)


class Fetcher:
    """Guarded HTTP GET. One instance can be shared by all handler threads."""

    def __init__(
        self,
        validator: Optional[TargetValidator] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_bytes: int = DEFAULT_MAX_BYTES,
    ):
        self.validator = validator or TargetValidator()
        self.timeout = timeout
        self.max_bytes = max_bytes
        self._opener = urllib.request.build_opener(_GuardedRedirectHandler(self.validator))

    def fetch(self, url: str) -> Page:
        outcome = self.validator.check_safe(url)
        if not outcome.safe:
            raise UnsafeTargetError(outcome.reason)

        req = urllib.request.Request(url, headers={
            "User-Agent": USER_AGENT,
            "Accept": "text/html,application/xhtml+xml,text/plain;q=0.9,*/*;q=0.5",
        })
        try:
            with self._opener.open(req, timeout=self.timeout) as resp:
                raw = resp.read(self.max_bytes + 1)
                status = resp.status
                final_url = resp.geturl()
                content_type = resp.headers.get("Content-Type", "")
                charset = resp.headers.get_content_charset() or "utf-8"
        except urllib.error.HTTPError as e:
            raise FetchError(f"HTTP {e.code} from upstream") from e
        except urllib.error.URLError as e:
            raise FetchError(f"Network error: {e.reason}") from e
        except (OSError, ValueError) as e:
            if isinstance(e, UnsafeTargetError):
                raise
            raise FetchError(f"Fetch failed: {e}") from e

        truncated = len(raw) > self.max_bytes
        body = raw[:self.max_bytes].decode(charset, errors="replace")
        page = Page(url=final_url, status=status, content_type=content_type, truncated=truncated)
        if "html" in content_type or not content_type:
            parts = extract(body, final_url)
            page.title = parts["title"]
            page.text = parts["text"]
            page.links = parts["links"]
        elif content_type.startswith("text/") or "json" in content_type:
            page.text = _WS.sub(" ", body).strip()
        else:
            raise FetchError(f"Unsupported content type: {content_type.split(';')[0]}")
        return page


def scrape(fetcher: Fetcher, urls: list, selector: Optional[str] = None) -> dict:
    """
    Scrape one or more URLs. Per-URL failures are reported inline; an unsafe
    URL rejects the whole request before anything is fetched.
    """
    if not urls:
        raise ValueError("url is required")
    if len(urls) > MAX_URLS_PER_REQUEST:
        raise ValueError(f"At most {MAX_URLS_PER_REQUEST} URLs per request")
    for u in urls:
        if not isinstance(u, str):
            raise ValueError("urls must be strings")
        outcome = fetcher.validator.check_safe(u)
        if not outcome.safe:
            raise UnsafeTargetError(outcome.reason)

    pages = []
    for u in urls:
        try:
            page = fetcher.fetch(u)
        except FetchError as e:
            pages.append({"url": u, "error": str(e)})
            continue
        if selector:
            page.excerpt = find_excerpt(page.text, selector)
        page.text = page.text[:MAX_TEXT_CHARS]
        pages.append(page.to_dict())

    return {
        "tier": scrape_tier(urls),
        "pages": pages,
        "count": len(pages),
    }


def scrape_tier(urls: list) -> str:
    return "single" if len(urls) <= 1 else "multi"
