"""
Google Custom Search API Client

Async HTTP client that performs exactly one ranking lookup per call:
- One (keyword, page) pair per request, 10 results per page
- Responses normalized into ranked ResultEntry objects
- HTTP failures classified as rate-limited, transient or terminal

Retry, pacing and circuit breaking live in limiter.py, not here.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


RESULTS_PER_PAGE = 10

# 403 reasons Google uses for quota exhaustion rather than bad credentials
RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded", "dailyLimitExceeded", "quotaExceeded"}


class SearchAPIError(Exception):
    """Base exception for search API errors."""
    retryable = False

    def __init__(self, message: str, status_code: int = None, response: dict = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class RateLimitedError(SearchAPIError):
    """The provider signalled throttling (HTTP 429 or a quota 403)."""
    retryable = True


class TransientNetworkError(SearchAPIError):
    """Timeout, connection failure or 5xx. Safe to retry."""
    retryable = True


class TerminalRequestError(SearchAPIError):
    """Malformed query, bad credentials or invalid keyword. Never retried."""
    retryable = False


@dataclass
class ResultEntry:
    """One organic result."""
    position: int
    url: str
    title: str = ""
    snippet: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position": self.position,
            "url": self.url,
            "title": self.title,
            "snippet": self.snippet,
        }


@dataclass
class RankingPage:
    """Normalized response for one (keyword, page) lookup."""
    keyword: str
    page: int
    entries: List[ResultEntry] = field(default_factory=list)
    total_results: str = "0"
    search_time: str = "0"

    @property
    def is_last_page(self) -> bool:
        """A short page means the engine has no more results."""
        return len(self.entries) < RESULTS_PER_PAGE


class SearchAPIClient:
    """
    Async client for the Google Custom Search JSON API.

    Usage:
        async with SearchAPIClient(api_key="...", cx="...") as client:
            page = await client.fetch_page("bounce house rental", page=0)
    """

    BASE_URL = "https://www.googleapis.com/customsearch/v1"

    def __init__(
        self,
        api_key: Optional[str],
        cx: Optional[str],
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize search client.

        Args:
            api_key: Google API key
            cx: Programmable Search Engine id
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        if not api_key or not cx:
            raise ValueError("Google API credentials are not configured (GOOGLE_API_KEY, GOOGLE_CX)")

        self.api_key = api_key
        self.cx = cx
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )
        self._closed = False
        self.call_count = 0

    async def fetch_page(self, keyword: str, page: int) -> RankingPage:
        """
        Fetch one page of organic results.

        Args:
            keyword: Search query
            page: Zero-based page index

        Returns:
            RankingPage with absolute 1-based positions

        Raises:
            RateLimitedError, TransientNetworkError, TerminalRequestError
        """
        if self._closed:
            raise TerminalRequestError("Client is closed")
        if not keyword or not keyword.strip():
            raise TerminalRequestError("Keyword must not be empty")

        start_index = page * RESULTS_PER_PAGE + 1
        params = {
            "key": self.api_key,
            "cx": self.cx,
            "q": keyword,
            "num": RESULTS_PER_PAGE,
            "start": start_index,
        }

        logger.debug(f"GET customsearch q={keyword!r} start={start_index}")
        self.call_count += 1

        try:
            response = await self._client.get(self.BASE_URL, params=params)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"Request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"Connection error: {e}") from e

        if response.status_code != 200:
            raise self._classify_error(response)

        try:
            data = response.json()
        except ValueError as e:
            raise TransientNetworkError(f"Malformed response body: {e}", status_code=200) from e
        if not isinstance(data, dict):
            raise TransientNetworkError(
                f"Unexpected response body: expected an object, got {type(data).__name__}",
                status_code=200,
            )

        return self._parse_page(keyword, page, start_index, data)

    def _classify_error(self, response: httpx.Response) -> SearchAPIError:
        """Map a non-200 response onto the error taxonomy."""
        status = response.status_code
        body = None
        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None

        message = f"Search API request failed: {status}"
        if isinstance(body, dict):
            error = body.get("error") or {}
            if isinstance(error, dict) and error.get("message"):
                message = f"Search API request failed: {status} {error['message']}"

        if status == 429 or (status == 403 and self._is_quota_error(body)):
            return RateLimitedError(message, status_code=status, response=body)
        if status >= 500:
            return TransientNetworkError(message, status_code=status, response=body)
        return TerminalRequestError(message, status_code=status, response=body)

    @staticmethod
    def _is_quota_error(body: Optional[dict]) -> bool:
        if not isinstance(body, dict):
            return False
        error = body.get("error")
        if not isinstance(error, dict):
            return False
        for detail in error.get("errors") or []:
            if isinstance(detail, dict) and detail.get("reason") in RATE_LIMIT_REASONS:
                return True
        return False

    @staticmethod
    def _parse_page(keyword: str, page: int, start_index: int, data: Dict[str, Any]) -> RankingPage:
        items = data.get("items") or []
        info = data.get("searchInformation") or {}

        entries = []
        for offset, item in enumerate(items):
            if not isinstance(item, dict) or not item.get("link"):
                continue
            entries.append(ResultEntry(
                position=start_index + offset,
                url=item["link"],
                title=item.get("title", ""),
                snippet=item.get("snippet", ""),
            ))

        return RankingPage(
            keyword=keyword,
            page=page,
            entries=entries,
            total_results=str(info.get("totalResults", "0")),
            search_time=str(info.get("searchTime", "0")),
        )

    async def close(self):
        """Close the HTTP client."""
        if not self._closed:
            await self._client.aclose()
            self._closed = True

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
