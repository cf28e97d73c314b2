"""
Rate Limiting and Circuit Breaking for Search API Calls

Wraps SearchAPIClient.fetch_page with:
- A fixed minimum delay between consecutive external calls
- Exponential backoff with bounded jitter on rate-limit and transient errors
- A per-keyword circuit breaker on consecutive rate-limit responses

All state is owned by the RateLimitedFetcher instance, so every batch run
starts with closed breakers.
"""

import asyncio
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional

from .client import (
    RankingPage,
    RateLimitedError,
    SearchAPIClient,
    SearchAPIError,
    TerminalRequestError,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for pacing and retry behavior."""
    call_delay: float = 4.0          # Minimum gap between external calls
    max_retries: int = 3             # Retries after the first attempt
    base_delay: float = 5.0
    max_delay: float = 60.0
    max_jitter: float = 2.0
    breaker_threshold: int = 3       # Consecutive rate limits that open the breaker

    def backoff_delay(self, attempt: int, jitter: float = 0.0) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return min(self.base_delay * (2 ** attempt) + jitter, self.max_delay)


class FetchStatus(Enum):
    """Result of one rate-limited fetch."""
    OK = "ok"
    FAILED = "failed"
    CIRCUIT_OPEN = "circuit_open"


@dataclass
class FetchOutcome:
    """What happened to one (keyword, page) fetch."""
    status: FetchStatus
    keyword: str
    page_index: int
    page: Optional[RankingPage] = None
    error: Optional[SearchAPIError] = None
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status == FetchStatus.OK

    @property
    def terminal(self) -> bool:
        return isinstance(self.error, TerminalRequestError)


class CircuitBreaker:
    """
    Per-keyword breaker on consecutive rate-limit responses.

    Only rate limits count. Any successful response resets the keyword's
    counter; once open, a keyword stays open until reset() is called.
    """

    def __init__(self, threshold: int = 3):
        self.threshold = threshold
        self._failures: Dict[str, int] = {}
        self._open: Dict[str, bool] = {}

    def record_rate_limit(self, keyword: str) -> int:
        count = self._failures.get(keyword, 0) + 1
        self._failures[keyword] = count
        if count >= self.threshold and not self._open.get(keyword):
            self._open[keyword] = True
            logger.warning(
                f"Circuit opened for '{keyword}' after {count} consecutive rate-limit responses"
            )
        return count

    def record_success(self, keyword: str) -> None:
        if self._failures.get(keyword):
            logger.debug(f"Circuit counter reset for '{keyword}'")
        self._failures[keyword] = 0

    def is_open(self, keyword: str) -> bool:
        return self._open.get(keyword, False)

    def failures(self, keyword: str) -> int:
        return self._failures.get(keyword, 0)

    def reset(self) -> None:
        self._failures.clear()
        self._open.clear()


class RateLimitedFetcher:
    """
    Paced, retrying wrapper around SearchAPIClient.

    Usage:
        fetcher = RateLimitedFetcher(client, RetryConfig())
        outcome = await fetcher.fetch("party rentals", page=0)
        if outcome.ok:
            entries = outcome.page.entries
    """

    def __init__(
        self,
        client: SearchAPIClient,
        config: Optional[RetryConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.client = client
        self.config = config or RetryConfig()
        self.breaker = breaker or CircuitBreaker(self.config.breaker_threshold)
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()
        self._last_call_at: Optional[float] = None
        self.api_calls = 0

    async def _wait_for_slot(self) -> None:
        """Enforce the minimum delay since the previous external call."""
        if self._last_call_at is not None:
            elapsed = self._clock() - self._last_call_at
            remaining = self.config.call_delay - elapsed
            if remaining > 0:
                await self._sleep(remaining)
        self._last_call_at = self._clock()

    async def fetch(self, keyword: str, page: int) -> FetchOutcome:
        """
        Fetch one page, honoring pacing, retries and the keyword's breaker.

        Never raises SearchAPIError; the outcome carries the last error.
        """
        if self.breaker.is_open(keyword):
            logger.info(f"Circuit open for '{keyword}', skipping page {page + 1}")
            return FetchOutcome(FetchStatus.CIRCUIT_OPEN, keyword, page)

        last_error: Optional[SearchAPIError] = None
        attempts = 0

        for attempt in range(self.config.max_retries + 1):
            await self._wait_for_slot()
            attempts += 1
            self.api_calls += 1

            try:
                result = await self.client.fetch_page(keyword, page)
            except RateLimitedError as e:
                last_error = e
                count = self.breaker.record_rate_limit(keyword)
                if self.breaker.is_open(keyword):
                    return FetchOutcome(
                        FetchStatus.CIRCUIT_OPEN, keyword, page, error=e, attempts=attempts
                    )
                reason = f"rate limited ({count} consecutive)"
            except TransientNetworkError as e:
                last_error = e
                reason = f"transient error: {e}"
            except TerminalRequestError as e:
                logger.error(
                    f"Terminal error for '{keyword}' page {page + 1}: {e} (status: {e.status_code})"
                )
                return FetchOutcome(FetchStatus.FAILED, keyword, page, error=e, attempts=attempts)
            else:
                self.breaker.record_success(keyword)
                return FetchOutcome(FetchStatus.OK, keyword, page, page=result, attempts=attempts)

            if attempt >= self.config.max_retries:
                break

            jitter = self._rng.uniform(0, self.config.max_jitter)
            delay = self.config.backoff_delay(attempt, jitter)
            logger.warning(
                f"'{keyword}' page {page + 1} {reason} "
                f"(attempt {attempt + 1}/{self.config.max_retries + 1}). Retrying in {delay:.1f}s..."
            )
            await self._sleep(delay)

        logger.error(
            f"Giving up on '{keyword}' page {page + 1} after {attempts} attempts: {last_error}"
        )
        return FetchOutcome(FetchStatus.FAILED, keyword, page, error=last_error, attempts=attempts)
