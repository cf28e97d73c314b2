"""
Batch Ranking Collection

Runs one collection pass over the tracked keyword set:
- Keywords are processed strictly one at a time (shared rate budget)
- Each keyword gets up to `pages_per_keyword` pages through the RateLimitedFetcher
- One immutable RankingSnapshot is appended per successfully checked keyword
- Per-keyword failures are contained; only storage errors abort the run

Only one batch may run at a time: an in-process lock plus a RUNNING
batch_runs row that other processes can see.
Configuration diagnostics share the in-process lock.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from src.database.models import BatchRun, BatchRunStatus
from src.database import repository
from src.database.session import transaction
from src.utils.config import Settings, get_settings
from src.utils.domains import extract_domain, is_same_site

from .client import ResultEntry
from .diagnostics import SearchDiagnostic, evaluate_test_results
from .limiter import FetchStatus, RateLimitedFetcher, RetryConfig

logger = logging.getLogger(__name__)


SIGNIFICANT_CHANGE_THRESHOLD = 3


class BatchAlreadyRunningError(Exception):
    """Another batch run holds the lock."""

    def __init__(self, message: str = "A ranking batch is already running", run_id=None):
        super().__init__(message)
        self.run_id = run_id


class KeywordStatus:
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CIRCUIT_BROKEN = "circuit_broken"
    SKIPPED = "skipped"


@dataclass
class CollectionConfig:
    """Configuration for a collection pass."""
    target_domain: str
    pages_per_keyword: int = 2
    keyword_delay: float = 8.0
    error_delay: float = 15.0
    stale_after_minutes: int = 120
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CollectionConfig":
        settings = settings or get_settings()
        if not settings.TARGET_DOMAIN:
            raise ValueError("TARGET_DOMAIN is not configured")

        return cls(
            target_domain=settings.TARGET_DOMAIN,
            pages_per_keyword=settings.PAGES_PER_KEYWORD,
            keyword_delay=settings.KEYWORD_DELAY,
            error_delay=settings.ERROR_DELAY,
            stale_after_minutes=settings.BATCH_STALE_AFTER_MINUTES,
            retry=RetryConfig(
                call_delay=settings.SEARCH_CALL_DELAY,
                max_retries=settings.SEARCH_MAX_RETRIES,
                base_delay=settings.SEARCH_BACKOFF_BASE,
                max_delay=settings.SEARCH_BACKOFF_MAX,
                max_jitter=settings.SEARCH_BACKOFF_JITTER,
                breaker_threshold=settings.CIRCUIT_BREAKER_THRESHOLD,
            ),
        )


@dataclass
class KeywordResult:
    """Aggregated outcome for one keyword."""
    keyword_id: Any
    keyword: str
    status: str
    position: int = 0
    url: Optional[str] = None
    competitors: List[Dict[str, Any]] = field(default_factory=list)
    pages_fetched: int = 0
    api_calls: int = 0
    result_count: int = 0
    total_results: str = "0"
    search_time: str = "0"
    validation_warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def circuit_broken(self) -> bool:
        return self.status == KeywordStatus.CIRCUIT_BROKEN

    def source_metadata(self, batch_run_id) -> Dict[str, Any]:
        return {
            "batch_run_id": str(batch_run_id),
            "pages_fetched": self.pages_fetched,
            "api_calls_used": self.api_calls,
            "result_count": self.result_count,
            "total_results": self.total_results,
            "search_time": self.search_time,
            "is_validation_passed": not self.validation_warnings,
            "validation_warnings": self.validation_warnings,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "keyword": self.keyword,
            "status": self.status,
            "position": self.position,
            "circuit_broken": self.circuit_broken,
            "api_calls": self.api_calls,
            "error": self.error,
        }


@dataclass
class BatchRunStats:
    """Summary of one collection pass."""
    total: int = 0
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    circuit_broken: int = 0
    api_calls: int = 0
    keyword_results: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    significant_changes: List[Dict[str, Any]] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled: bool = False
    batch_run_id: Optional[str] = None

    def record(self, result: KeywordResult) -> None:
        if result.status == KeywordStatus.SKIPPED:
            self.skipped += 1
        else:
            self.processed += 1
            if result.status == KeywordStatus.SUCCEEDED:
                self.succeeded += 1
            elif result.status == KeywordStatus.CIRCUIT_BROKEN:
                self.circuit_broken += 1
            else:
                self.failed += 1
        self.keyword_results[str(result.keyword_id)] = result.to_dict()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_run_id": self.batch_run_id,
            "total": self.total,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "circuit_broken": self.circuit_broken,
            "api_calls": self.api_calls,
            "keyword_results": self.keyword_results,
            "significant_changes": self.significant_changes,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled": self.cancelled,
        }


def validate_results(position: int, first_page: List[ResultEntry], target_domain: str) -> List[str]:
    """
    Flag results that look like a site-restricted search engine configuration.

    Returns a list of human-readable warnings (empty when the results look sane).
    """
    warnings = []

    if 0 < position <= 2:
        warnings.append(
            f"Target domain ranks in position {position} - the search engine may be restricted to specific sites"
        )

    domains = {extract_domain(entry.url) for entry in first_page}
    if len(first_page) >= 5 and len(domains) < 5:
        warnings.append(
            f"Low domain diversity in results ({len(domains)} unique domains) - the search engine may be restricted"
        )

    if first_page and all(is_same_site(entry.url, target_domain) for entry in first_page):
        warnings.append(
            "All search results appear to be from the target domain - the search engine is likely restricted to this site"
        )

    return warnings


def aggregate_entries(entries: List[ResultEntry], target_domain: str):
    """
    Combine ordered entries from all fetched pages.

    Returns (position, url, competitors): the tracked site's best rank (0 if
    absent) and the first entry for every other distinct domain.
    """
    position = 0
    url = None
    competitors = []
    seen_domains = set()

    for entry in entries:
        if is_same_site(entry.url, target_domain):
            if position == 0:
                position = entry.position
                url = entry.url
            continue

        domain = extract_domain(entry.url)
        if domain in seen_domains:
            continue
        seen_domains.add(domain)
        competitors.append({
            "position": entry.position,
            "url": entry.url,
            "domain": domain,
            "title": entry.title,
        })

    return position, url, competitors


class BatchCollector:
    """
    Drives one sequential collection pass.

    Usage:
        collector = BatchCollector(fetcher, get_session_factory(), CollectionConfig.from_settings())
        stats = await collector.run_batch()
    """

    def __init__(
        self,
        fetcher: RateLimitedFetcher,
        session_factory: Callable,
        config: CollectionConfig,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.fetcher = fetcher
        self.session_factory = session_factory
        self.config = config
        self._sleep = sleep
        self._lock = asyncio.Lock()
        self._cancel_event = asyncio.Event()
        self.last_stats: Optional[BatchRunStats] = None

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def cancel(self) -> None:
        """Stop before the next keyword. The in-flight fetch finishes its own retry loop."""
        if self.is_running:
            logger.info("Batch cancellation requested")
        self._cancel_event.set()

    async def run_batch(self, keywords: Optional[List[Any]] = None) -> BatchRunStats:
        """
        Collect rankings for every keyword.

        Args:
            keywords: Objects with `id`, `keyword` and `is_active` (TrackedKeyword rows).
                      Defaults to all active keywords in storage.

        Returns:
            BatchRunStats

        Raises:
            BatchAlreadyRunningError: another run is in progress
            SQLAlchemyError: storage failure (the run is marked failed)
        """
        if self._lock.locked():
            raise BatchAlreadyRunningError()

        async with self._lock:
            self._cancel_event.clear()
            self.fetcher.breaker.reset()
            return await self._run(keywords)

    async def diagnose(self, test_keywords: List[str]) -> SearchDiagnostic:
        """
        Look up a few keywords and check the results for a restricted search engine.

        Nothing is stored. Shares the run lock with run_batch so the two never
        compete for the rate budget.

        Raises:
            BatchAlreadyRunningError: a batch or another diagnostic is in progress
        """
        if self._lock.locked():
            raise BatchAlreadyRunningError("Search API is busy with a ranking batch")

        async with self._lock:
            self.fetcher.breaker.reset()
            logger.info(f"Diagnosing search configuration with: {', '.join(test_keywords)}")

            results = []
            for index, keyword in enumerate(test_keywords):
                if index:
                    await self._sleep(self.config.keyword_delay)
                results.append(await self.collect_keyword(None, keyword))

            return evaluate_test_results(results)

    async def _run(self, keywords: Optional[List[Any]]) -> BatchRunStats:
        with self.session_factory() as db, transaction(db):
            running = repository.get_running_batch(db, self.config.stale_after_minutes)
            if running is not None:
                raise BatchAlreadyRunningError(
                    f"Batch run {running.id} is already running", run_id=running.id
                )
            if keywords is None:
                keywords = repository.get_active_keywords(db)
            run = repository.create_batch_run(db, total_keywords=len(keywords))
            run_id = run.id

        stats = BatchRunStats(
            total=len(keywords),
            started_at=datetime.utcnow(),
            batch_run_id=str(run_id),
        )
        api_calls_before = self.fetcher.api_calls
        logger.info(f"Starting batch {run_id}: {len(keywords)} keywords for {self.config.target_domain}")

        try:
            await self._process_keywords(keywords, run_id, stats)
        except SQLAlchemyError as e:
            logger.error(f"Storage error during batch {run_id}: {e}")
            self._mark_failed(run_id, str(e))
            raise
        except Exception as e:
            logger.error(f"Batch {run_id} aborted: {e}", exc_info=True)
            self._mark_failed(run_id, f"Unexpected error: {e}")
            raise

        stats.api_calls = self.fetcher.api_calls - api_calls_before
        stats.completed_at = datetime.utcnow()
        status = BatchRunStatus.CANCELLED if stats.cancelled else BatchRunStatus.COMPLETED

        with self.session_factory() as db, transaction(db):
            run = db.get(BatchRun, run_id)
            repository.finish_batch_run(db, run, stats.to_dict(), status)

        self.last_stats = stats
        logger.info(
            f"Batch {run_id} {status.value}: {stats.succeeded} succeeded, {stats.failed} failed, "
            f"{stats.circuit_broken} circuit-broken, {stats.skipped} skipped, {stats.api_calls} API calls"
        )
        return stats

    async def _process_keywords(self, keywords: List[Any], run_id, stats: BatchRunStats) -> None:
        seen = set()
        pending_delay = None

        for index, tracked in enumerate(keywords):
            if self._cancel_event.is_set():
                remaining = keywords[index:]
                for rest in remaining:
                    stats.record(self._skipped(rest, "cancelled"))
                stats.cancelled = True
                logger.info(f"Batch cancelled, {len(remaining)} keywords skipped")
                break

            text = (tracked.keyword or "").strip()
            normalized = text.lower()
            if not getattr(tracked, "is_active", True):
                stats.record(self._skipped(tracked, "inactive"))
                continue
            if normalized in seen:
                stats.record(self._skipped(tracked, "duplicate"))
                continue
            seen.add(normalized)

            if pending_delay:
                logger.debug(f"Waiting {pending_delay:.0f}s before next keyword")
                await self._sleep(pending_delay)

            logger.info(f"Processing keyword {index + 1}/{len(keywords)}: '{text}'")
            result = await self.collect_keyword(tracked.id, text)

            if result.status == KeywordStatus.SUCCEEDED:
                self._persist(run_id, result, stats)
                pending_delay = self.config.keyword_delay
            else:
                pending_delay = self.config.error_delay

            stats.record(result)

    async def collect_keyword(self, keyword_id, keyword: str) -> KeywordResult:
        """Fetch up to `pages_per_keyword` pages and aggregate them."""
        result = KeywordResult(keyword_id=keyword_id, keyword=keyword, status=KeywordStatus.SUCCEEDED)
        entries: List[ResultEntry] = []
        first_page: List[ResultEntry] = []
        calls_before = self.fetcher.api_calls

        for page_index in range(self.config.pages_per_keyword):
            try:
                outcome = await self.fetcher.fetch(keyword, page_index)
            except Exception as e:
                logger.error(f"Unexpected error fetching '{keyword}' page {page_index}: {e}", exc_info=True)
                result.status = KeywordStatus.FAILED
                result.error = f"Unexpected error: {e}"
                break

            if outcome.status == FetchStatus.CIRCUIT_OPEN:
                result.status = KeywordStatus.CIRCUIT_BROKEN
                result.error = str(outcome.error) if outcome.error else "circuit open"
                break
            if outcome.status == FetchStatus.FAILED:
                result.status = KeywordStatus.FAILED
                result.error = str(outcome.error) if outcome.error else "fetch failed"
                break

            page = outcome.page
            result.pages_fetched += 1
            entries.extend(page.entries)
            if page_index == 0:
                first_page = page.entries
                result.total_results = page.total_results
                result.search_time = page.search_time

            if any(is_same_site(entry.url, self.config.target_domain) for entry in page.entries):
                break
            if page.is_last_page:
                break

        result.api_calls = self.fetcher.api_calls - calls_before

        if result.status != KeywordStatus.SUCCEEDED:
            logger.warning(f"'{keyword}' {result.status}: {result.error}")
            return result

        result.position, result.url, result.competitors = aggregate_entries(entries, self.config.target_domain)
        result.result_count = len(entries)
        result.validation_warnings = validate_results(result.position, first_page, self.config.target_domain)
        for warning in result.validation_warnings:
            logger.warning(f"'{keyword}': {warning}")

        logger.info(
            f"Result for '{keyword}': position {result.position or 'not found'}, "
            f"{result.api_calls} API calls"
        )
        return result

    def _persist(self, run_id, result: KeywordResult, stats: BatchRunStats) -> None:
        with self.session_factory() as db, transaction(db):
            previous = repository.get_previous_snapshot(db, result.keyword_id, exclude_run_id=run_id)
            snapshot = repository.store_snapshot(
                db,
                keyword_id=result.keyword_id,
                batch_run_id=run_id,
                keyword=result.keyword,
                position=result.position,
                url=result.url,
                competitors=result.competitors,
                source_metadata=result.source_metadata(run_id),
            )

            if previous is None:
                return

            change = previous.position - result.position
            if abs(change) >= SIGNIFICANT_CHANGE_THRESHOLD:
                stats.significant_changes.append({
                    "keyword": result.keyword,
                    "previous_position": previous.position,
                    "current_position": result.position,
                    "change": change,
                    "date": snapshot.recorded_at.isoformat(),
                    "url": result.url,
                })
                logger.info(
                    f"Significant change for '{result.keyword}': {previous.position} -> {result.position}"
                )

    def _mark_failed(self, run_id, message: str) -> None:
        try:
            with self.session_factory() as db, transaction(db):
                repository.fail_batch_run(db, run_id, message)
        except SQLAlchemyError as e:
            logger.error(f"Could not mark batch {run_id} as failed: {e}")

    @staticmethod
    def _skipped(tracked, reason: str) -> KeywordResult:
        logger.info(f"Skipping '{tracked.keyword}' ({reason})")
        return KeywordResult(
            keyword_id=tracked.id,
            keyword=tracked.keyword,
            status=KeywordStatus.SKIPPED,
            error=reason,
        )
