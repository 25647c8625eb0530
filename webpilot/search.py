import logging
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import httpx
from bs4 import BeautifulSoup

from .errors import SearchError
from .schemas import SearchResult


logger = logging.getLogger("uvicorn.error")

DUCKDUCKGO_URL = "https://html.duckduckgo.com/html/"
BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
PROVIDERS = ("duckduckgo", "brave")


def _unwrap_redirect(href: str) -> str:
    # DuckDuckGo result links go through /l/?uddg=<target>.
    parsed = urlparse(href)
    if parsed.netloc.endswith("duckduckgo.com") and parsed.path.startswith("/l/"):
        target = parse_qs(parsed.query).get("uddg")
        if target:
            return target[0]
    if href.startswith("//"):
        return "https:" + href
    return href


def parse_duckduckgo(html: str, limit: int = 6) -> List[SearchResult]:
    soup = BeautifulSoup(html or "", "html.parser")
    results: List[SearchResult] = []
    for link in soup.select("a.result__a"):
        title = link.get_text(" ", strip=True)
        url = _unwrap_redirect(str(link.get("href") or ""))
        if not title or not url.startswith(("http://", "https://")):
            continue
        snippet = None
        container = link.find_parent(class_="result")
        if container is not None:
            node = container.select_one(".result__snippet")
            if node is not None:
                snippet = node.get_text(" ", strip=True) or None
        results.append(SearchResult(title=title, url=url, snippet=snippet))
        if len(results) >= limit:
            break
    return results


class SearchClient:
    """Web search for the planner. Brave when it has a key, DuckDuckGo's HTML page otherwise."""

    def __init__(
        self,
        provider: str = "duckduckgo",
        api_key: Optional[str] = None,
        max_results: int = 6,
        timeout_s: float = 10.0,
        user_agent: str = "webpilot",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = (provider or "duckduckgo").strip().lower()
        self.api_key = api_key
        self.max_results = max_results
        self.client = client or httpx.AsyncClient(
            timeout=timeout_s,
            follow_redirects=True,
            headers={"User-Agent": user_agent},
        )

    async def search(self, query: str) -> List[SearchResult]:
        query = (query or "").strip()
        if not query:
            return []
        if self.provider == "brave":
            if self.api_key:
                try:
                    return await self._brave(query)
                except SearchError as exc:
                    logger.warning("Brave search failed, falling back to DuckDuckGo: %s", exc)
            else:
                logger.warning("Brave search needs an API key; using DuckDuckGo")
        elif self.provider not in PROVIDERS:
            logger.warning("Unknown search provider %s; using DuckDuckGo", self.provider)
        return await self._duckduckgo(query)

    async def _get(self, url: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self.client.get(url, **kwargs)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise SearchError(f"Search failed ({exc.response.status_code})") from exc
        except httpx.RequestError as exc:
            raise SearchError(f"Search request failed: {exc}") from exc
        return resp

    async def _brave(self, query: str) -> List[SearchResult]:
        resp = await self._get(
            BRAVE_URL,
            params={"q": query, "count": self.max_results},
            headers={"Accept": "application/json", "X-Subscription-Token": self.api_key},
        )
        try:
            data: Dict[str, Any] = resp.json()
        except ValueError as exc:
            raise SearchError("Brave returned invalid JSON") from exc
        web = data.get("web") if isinstance(data, dict) else None
        results: List[SearchResult] = []
        for item in (web or {}).get("results") or []:
            url = item.get("url")
            if not url:
                continue
            description = item.get("description")
            snippet = BeautifulSoup(description, "html.parser").get_text() if description else None
            results.append(SearchResult(title=item.get("title") or "Untitled", url=url, snippet=snippet))
        return results[: self.max_results]

    async def _duckduckgo(self, query: str) -> List[SearchResult]:
        resp = await self._get(DUCKDUCKGO_URL, params={"q": query})
        return parse_duckduckgo(resp.text, self.max_results)

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
