"""
Nox Agent Research — web research backed by the Brave Search API.

quick: top 5 search results
deep:  top 10 results, the first 3 enriched with page excerpts fetched through
       the guarded scraper
"""

import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from noxagent.scraper import FetchError, Fetcher, UnsafeTargetError


logger = logging.getLogger(__name__)

BRAVE_SEARCH_URL = "https://api.search.brave.com/res/v1/web/search"

DEPTHS = {
    "quick": {"results": 5, "enrich": 0},
    "deep": {"results": 10, "enrich": 3},
}
EXCERPT_CHARS = 1000
MAX_QUERY_CHARS = 400


class SearchError(Exception):
    """Search provider unavailable or failing. status is the HTTP code to report."""

    def __init__(self, detail: str, status: int = 502):
        self.status = status
        self.detail = detail
        super().__init__(detail)


@dataclass
class SearchResult:
    title: str
    url: str
    snippet: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class SearchClient:
    """Minimal Brave web search client."""

    def __init__(self, api_key: Optional[str], endpoint: str = BRAVE_SEARCH_URL,
                 timeout: float = 10.0):
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout

    def search(self, query: str, count: int = 5) -> list[SearchResult]:
        if not self.api_key:
            raise SearchError("Search provider not configured", status=503)
        qs = urllib.parse.urlencode({"q": query, "count": count})
        req = urllib.request.Request(f"{self.endpoint}?{qs}", headers={
            "Accept": "application/json",
            "X-Subscription-Token": self.api_key,
        })
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                data = json.loads(resp.read())
        except urllib.error.HTTPError as e:
            raise SearchError(f"Search provider returned HTTP {e.code}") from e
        except (urllib.error.URLError, OSError) as e:
            raise SearchError(f"Search provider unreachable: {e}") from e
        except json.JSONDecodeError as e:
            raise SearchError("Search provider returned invalid JSON") from e

        results = []
        for item in (data.get("web") or {}).get("results", [])[:count]:
            results.append(SearchResult(
                title=item.get("title", ""),
                url=item.get("url", ""),
                snippet=item.get("description", ""),
            ))
        return results


def research(
    query: str,
    depth: str = "quick",
    search: Optional[Callable[[str, int], list]] = None,
    fetcher: Optional[Fetcher] = None,
) -> dict:
    """Run a research job. search(query, count) must return SearchResult items."""
    if not isinstance(query, str) or not query.strip():
        raise ValueError("query is required")
    if len(query) > MAX_QUERY_CHARS:
        raise ValueError(f"query too long (max {MAX_QUERY_CHARS} chars)")
    if depth not in DEPTHS:
        raise ValueError(f"depth must be one of {sorted(DEPTHS)}")
    if search is None:
        raise SearchError("Search provider not configured", status=503)

    plan = DEPTHS[depth]
    results = [r.to_dict() for r in search(query.strip(), plan["results"])]

    if plan["enrich"] and fetcher is not None:
        for r in results[:plan["enrich"]]:
            try:
                page = fetcher.fetch(r["url"])
            except UnsafeTargetError as e:
                r["error"] = f"skipped: {e.reason}"
                continue
            except FetchError as e:
                r["error"] = str(e)
                continue
            r["excerpt"] = page.text[:EXCERPT_CHARS]
            if page.title and not r["title"]:
                r["title"] = page.title

    return {
        "query": query.strip(),
        "depth": depth,
        "results": results,
        "count": len(results),
    }
