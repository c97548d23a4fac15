"""HTTP clients for the external tools that workflow steps call.

Covers web search (SerpAPI), GitHub repository search, Pexels image
search, page fetching for summaries, and OpenAI image generation. Transport
failures, timeouts, HTTP 429 and 5xx responses are reported as retryable
``ExecutionError``; other failures are not.
"""

import html
import re
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

import httpx

from app.core.config import settings
from app.core.logging import logger
from app.core.workflow.errors import ExecutionError
from app.core.workflow.schema import (
    SearchOutput,
    SearchParams,
    SearchSource,
)

SERPAPI_URL = "https://serpapi.com/search"
GITHUB_SEARCH_URL = "https://api.github.com/search/repositories"
PEXELS_SEARCH_URL = "https://api.pexels.com/v1/search"
OPENAI_API_BASE = "https://api.openai.com/v1"

MAX_PAGE_CHARS = 6000

_SCRIPT_RE = re.compile(r"<(script|style|noscript)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_SPACE_RE = re.compile(r"\s+")
_TITLE_RE = re.compile(r"<title[^>]*>(.*?)</title>", re.IGNORECASE | re.DOTALL)


def html_to_text(markup: str) -> str:
    """Reduce an HTML document to its visible text."""
    text = _SCRIPT_RE.sub(" ", markup)
    text = _TAG_RE.sub(" ", text)
    return _SPACE_RE.sub(" ", html.unescape(text)).strip()


def to_execution_error(error: Exception, what: str) -> ExecutionError:
    """Classify an HTTP client error as retryable or not."""
    if isinstance(error, ExecutionError):
        return error
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        return ExecutionError(f"{what} failed with HTTP {status}", retryable=status == 429 or status >= 500)
    if isinstance(error, httpx.TransportError):
        return ExecutionError(f"{what} failed: {type(error).__name__}: {error}", retryable=True)
    return ExecutionError(f"{what} failed: {error}", retryable=False)


class ResearchClient:
    """Async HTTP client for search providers, page fetches, and image generation."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the client; the connection pool is opened on first use.

        Args:
            timeout: Request timeout in seconds. Defaults to ``settings.HTTP_TIMEOUT_SECONDS``.
            transport: Optional httpx transport, e.g. a mock transport.
        """
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
                headers={"User-Agent": f"{settings.PROJECT_NAME}/{settings.VERSION}"},
            )
        return self._client

    async def close(self) -> None:
        """Close the underlying connection pool."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, what: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._get_client().request(method, url, **kwargs)
            response.raise_for_status()
            return response
        except Exception as e:
            error = to_execution_error(e, what)
            logger.warning("research_request_failed", what=what, error=error.message, retryable=error.retryable)
            raise error from e

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    async def search(self, params: SearchParams) -> SearchOutput:
        """Run a search against the provider named by ``params.source``.

        Returns:
            SearchOutput: Results normalized across providers.
        """
        if params.source in (SearchSource.GOOGLE, SearchSource.WEB):
            results = await self._search_web(params.query, params.num)
        elif params.source == SearchSource.GITHUB:
            results = await self._search_github(params.query, params.num, params.sort, params.language)
        elif params.source == SearchSource.PEXELS:
            results = await self._search_pexels(params.query, params.num)
        else:
            raise ExecutionError(f"Unknown search source: {params.source}")

        logger.info("search_completed", source=params.source.value, query=params.query, result_count=len(results))
        return SearchOutput(
            source=params.source.value,
            query=params.query,
            results=results,
            total_results=len(results),
        )

    async def _search_web(self, query: str, num: int) -> List[Dict[str, Any]]:
        if not settings.SERPAPI_API_KEY:
            raise ExecutionError("SERPAPI_API_KEY is not configured")

        response = await self._request(
            "GET",
            SERPAPI_URL,
            "Web search",
            params={"engine": "google", "q": query, "api_key": settings.SERPAPI_API_KEY, "num": num},
        )
        data = response.json()
        return [
            {
                "id": str(item.get("position", i + 1)),
                "title": item.get("title", ""),
                "url": item.get("link", ""),
                "snippet": item.get("snippet", ""),
                "thumbnail": item.get("thumbnail"),
                "source": item.get("source") or item.get("displayed_link", ""),
            }
            for i, item in enumerate(data.get("organic_results", [])[:num])
        ]

    async def _search_github(
        self,
        query: str,
        num: int,
        sort: Optional[str] = None,
        language: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        q = f"{query} language:{language}" if language else query
        headers = {"Accept": "application/vnd.github+json"}
        if settings.GITHUB_TOKEN:
            headers["Authorization"] = f"Bearer {settings.GITHUB_TOKEN}"

        response = await self._request(
            "GET",
            GITHUB_SEARCH_URL,
            "GitHub search",
            params={"q": q, "sort": sort or "stars", "order": "desc", "per_page": num},
            headers=headers,
        )
        data = response.json()
        return [
            {
                "id": str(repo.get("id", "")),
                "name": repo.get("name", ""),
                "full_name": repo.get("full_name", ""),
                "url": repo.get("html_url", ""),
                "description": repo.get("description") or "",
                "stars": repo.get("stargazers_count", 0),
                "forks": repo.get("forks_count", 0),
                "language": repo.get("language"),
                "topics": repo.get("topics", []),
                "updated_at": repo.get("updated_at"),
                "owner": (repo.get("owner") or {}).get("login", ""),
            }
            for repo in data.get("items", [])[:num]
        ]

    async def _search_pexels(self, query: str, num: int) -> List[Dict[str, Any]]:
        if not settings.PEXELS_API_KEY:
            raise ExecutionError("PEXELS_API_KEY is not configured")

        response = await self._request(
            "GET",
            PEXELS_SEARCH_URL,
            "Pexels search",
            params={"query": query, "per_page": num},
            headers={"Authorization": settings.PEXELS_API_KEY},
        )
        data = response.json()
        return [
            {
                "id": str(photo.get("id", "")),
                "url": photo.get("url", ""),
                "image_url": (photo.get("src") or {}).get("large", ""),
                "thumbnail": (photo.get("src") or {}).get("medium", ""),
                "photographer": photo.get("photographer", ""),
                "title": photo.get("alt") or f"Photo by {photo.get('photographer', 'unknown')}",
                "width": photo.get("width"),
                "height": photo.get("height"),
            }
            for photo in data.get("photos", [])[:num]
        ]

    # ------------------------------------------------------------------
    # Pages and images
    # ------------------------------------------------------------------

    async def fetch_page(self, url: str) -> Dict[str, str]:
        """Download a page and return its title and visible text."""
        response = await self._request("GET", url, f"Fetching {url}")
        markup = response.text
        title_match = _TITLE_RE.search(markup)
        return {
            "url": url,
            "title": html_to_text(title_match.group(1)) if title_match else "",
            "text": html_to_text(markup)[:MAX_PAGE_CHARS],
        }

    async def generate_images(self, prompt: str, size: str = "1024x1024", n: int = 1) -> List[str]:
        """Generate images and return their URLs (or data URLs)."""
        if not settings.OPENAI_API_KEY:
            raise ExecutionError("OPENAI_API_KEY is not configured")

        base_url = (settings.OPENAI_API_BASE or OPENAI_API_BASE).rstrip("/")
        response = await self._request(
            "POST",
            f"{base_url}/images/generations",
            "Image generation",
            json={"model": settings.IMAGE_MODEL, "prompt": prompt, "size": size, "n": n},
            headers={"Authorization": f"Bearer {settings.OPENAI_API_KEY}"},
        )
        images = []
        for item in response.json().get("data", []):
            if item.get("url"):
                images.append(item["url"])
            elif item.get("b64_json"):
                images.append(f"data:image/png;base64,{item['b64_json']}")
        if not images:
            raise ExecutionError("Image generation returned no images", retryable=True)
        return images
