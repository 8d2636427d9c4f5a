"""Web search and page fetching for the agent's web tools.

Supports Serper, Brave and Tavily search APIs over ``httpx``; page text is
extracted with BeautifulSoup and truncated to a rough token budget.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup
import httpx
from pydantic import BaseModel

from .config import AppConfig, get_config

logger = logging.getLogger(__name__)

CHARS_PER_TOKEN = 4
USER_AGENT = "Mozilla/5.0 (compatible; VaultAgent/1.0)"
NON_CONTENT_TAGS = ("script", "style", "noscript", "nav", "header", "footer", "aside", "form", "svg")


class WebSearchError(Exception):
    """Raised when a search provider or page fetch fails."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class SearchResult(BaseModel):
    title: str = ""
    url: str = ""
    snippet: str = ""


class FetchedPage(BaseModel):
    url: str
    title: str = "Untitled"
    content: str = ""
    truncated: bool = False


def extract_readable_text(html: str) -> tuple[str, str]:
    """Return ``(title, text)`` from an HTML document."""
    soup = BeautifulSoup(html, "html.parser")
    title = soup.title.get_text(strip=True) if soup.title else ""
    for tag in soup.find_all(list(NON_CONTENT_TAGS)):
        tag.decompose()
    root = soup.find("article") or soup.find("main") or soup.body or soup
    text = root.get_text("\n")
    lines = [re.sub(r"[ \t]+", " ", line).strip() for line in text.splitlines()]
    collapsed = "\n".join(line for line in lines if line)
    return title or "Untitled", collapsed


class WebSearchClient:
    """Thin async client over the configured search provider."""

    SERPER_URL = "https://google.serper.dev/search"
    BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
    TAVILY_URL = "https://api.tavily.com/search"

    def __init__(
        self,
        provider: str = "serper",
        api_key: Optional[str] = None,
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.provider = provider
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    @classmethod
    def from_config(cls, config: AppConfig | None = None) -> "WebSearchClient":
        config = config or get_config()
        return cls(config.search_api, config.search_api_key, timeout=config.request_timeout)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport, follow_redirects=True)

    async def search(self, query: str, limit: int = 8) -> List[SearchResult]:
        """Run a web search, returning at most ``limit`` results."""
        if not self.api_key:
            raise WebSearchError(f"No API key provided for {self.provider} search")

        try:
            async with self._client() as client:
                if self.provider == "serper":
                    response = await client.post(
                        self.SERPER_URL,
                        headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
                        json={"q": query, "num": limit},
                    )
                    response.raise_for_status()
                    items = response.json().get("organic") or []
                    results = [
                        SearchResult(title=item.get("title", ""), url=item.get("link", ""), snippet=item.get("snippet", ""))
                        for item in items
                    ]
                elif self.provider == "brave":
                    response = await client.get(
                        self.BRAVE_URL,
                        params={"q": query, "count": limit},
                        headers={"Accept": "application/json", "X-Subscription-Token": self.api_key},
                    )
                    response.raise_for_status()
                    items = (response.json().get("web") or {}).get("results") or []
                    results = [
                        SearchResult(title=item.get("title", ""), url=item.get("url", ""), snippet=item.get("description", ""))
                        for item in items
                    ]
                elif self.provider == "tavily":
                    response = await client.post(
                        self.TAVILY_URL,
                        json={
                            "api_key": self.api_key,
                            "query": query,
                            "max_results": limit,
                            "include_answer": False,
                            "search_depth": "basic",
                        },
                    )
                    response.raise_for_status()
                    items = response.json().get("results") or []
                    results = [
                        SearchResult(title=item.get("title", ""), url=item.get("url", ""), snippet=item.get("content", ""))
                        for item in items
                    ]
                else:
                    raise WebSearchError(f"Unknown search API: {self.provider}")
        except httpx.HTTPStatusError as e:
            logger.error(f"{self.provider} search error: {e.response.status_code}")
            raise WebSearchError(
                f"Search API error: {e.response.status_code}",
                {"provider": self.provider, "status": e.response.status_code},
            ) from e
        except httpx.HTTPError as e:
            logger.error(f"{self.provider} search request failed: {e}")
            raise WebSearchError(f"Search request failed: {e}", {"provider": self.provider}) from e

        return results[:limit]

    async def fetch_page(self, url: str, max_tokens: int = 4000) -> FetchedPage:
        """Fetch ``url`` and return its readable text within ``max_tokens``."""
        if not url.startswith(("http://", "https://")):
            raise WebSearchError(f"Only http(s) URLs can be fetched: {url}")
        try:
            async with self._client() as client:
                response = await client.get(
                    url,
                    headers={
                        "User-Agent": USER_AGENT,
                        "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                    },
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise WebSearchError(f"HTTP {e.response.status_code} fetching {url}", {"url": url}) from e
        except httpx.HTTPError as e:
            raise WebSearchError(f"Could not fetch {url}: {e}", {"url": url}) from e

        title, text = extract_readable_text(response.text)
        max_chars = max_tokens * CHARS_PER_TOKEN
        truncated = len(text) > max_chars
        if truncated:
            text = text[:max_chars] + "\n\n[... content truncated ...]"
        return FetchedPage(url=url, title=title, content=text, truncated=truncated)


__all__ = [
    "FetchedPage",
    "SearchResult",
    "WebSearchClient",
    "WebSearchError",
    "extract_readable_text",
]
