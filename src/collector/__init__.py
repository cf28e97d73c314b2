"""
Ranking Collection Module

Fetches organic search positions for tracked keywords.

Layers (leaves first):
- SearchAPIClient: one HTTP call per (keyword, page)
- RateLimitedFetcher: pacing, backoff, per-keyword circuit breaker
- BatchCollector: sequential pass over all keywords, one snapshot each
- diagnostics: health check for a site-restricted search engine
"""

from .client import (
    SearchAPIClient,
    SearchAPIError,
    RateLimitedError,
    TransientNetworkError,
    TerminalRequestError,
    ResultEntry,
    RankingPage,
)
from .limiter import (
    RetryConfig,
    CircuitBreaker,
    RateLimitedFetcher,
    FetchOutcome,
    FetchStatus,
)
from .batch import (
    BatchCollector,
    BatchRunStats,
    BatchAlreadyRunningError,
    CollectionConfig,
    KeywordResult,
    KeywordStatus,
)
from .diagnostics import (
    SearchDiagnostic,
    evaluate_test_results,
    DEFAULT_TEST_KEYWORDS,
    CONFIGURATION_GUIDANCE,
)

__all__ = [
    "SearchAPIClient",
    "SearchAPIError",
    "RateLimitedError",
    "TransientNetworkError",
    "TerminalRequestError",
    "ResultEntry",
    "RankingPage",
    "RetryConfig",
    "CircuitBreaker",
    "RateLimitedFetcher",
    "FetchOutcome",
    "FetchStatus",
    "BatchCollector",
    "BatchRunStats",
    "BatchAlreadyRunningError",
    "CollectionConfig",
    "KeywordResult",
    "KeywordStatus",
    "SearchDiagnostic",
    "evaluate_test_results",
    "DEFAULT_TEST_KEYWORDS",
    "CONFIGURATION_GUIDANCE",
]
