"""
Rankings Service

Business operations behind the rankings API and the batch script:
- Batch: start a collection pass, report its status
- Report card: load snapshots for a window and score them
- Insights: cached generation, lookup, status updates, statistics, session history
- Search configuration: diagnostics and setup guidance

Long-lived collaborators (collector, insight cache) are created lazily from
settings, one per process.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.orm import Session

from src.analyzer.client import ClaudeClient
from src.analyzer.insights import InsightGenerator
from src.cache.insight_cache import (
    InsightCache,
    InsightResult,
    parse_insight_id,
    record_to_dict,
    session_to_dict,
    update_insight_status as _update_insight_status,
)
from src.collector.batch import BatchCollector, BatchRunStats, CollectionConfig
from src.collector.client import SearchAPIClient
from src.collector.diagnostics import CONFIGURATION_GUIDANCE, DEFAULT_TEST_KEYWORDS, MAX_TEST_KEYWORDS
from src.collector.limiter import RateLimitedFetcher
from src.database import repository
from src.database.models import BatchRunStatus
from src.database.session import get_session_factory
from src.scoring.report_card import (
    CompetitorRecord,
    KeywordRecord,
    ReportCard,
    SnapshotRecord,
    compute_report_card,
    get_date_range,
    latest_per_keyword,
    parse_period,
)
from src.utils.config import get_settings
from src.utils.errors import NotFoundError

logger = logging.getLogger(__name__)


# =============================================================================
# PROCESS-WIDE COLLABORATORS
# =============================================================================

_collector: Optional[BatchCollector] = None
_insight_cache: Optional[InsightCache] = None


def get_collector() -> BatchCollector:
    """Get or create the batch collector."""
    global _collector
    if _collector is None:
        settings = get_settings()
        config = CollectionConfig.from_settings(settings)
        client = SearchAPIClient(
            api_key=settings.GOOGLE_API_KEY,
            cx=settings.GOOGLE_CX,
            timeout=settings.SEARCH_TIMEOUT,
        )
        _collector = BatchCollector(
            fetcher=RateLimitedFetcher(client, config.retry),
            session_factory=get_session_factory(),
            config=config,
        )
    return _collector


def _build_insight_generator() -> InsightGenerator:
    settings = get_settings()
    client = ClaudeClient(
        api_key=settings.ANTHROPIC_API_KEY,
        model=settings.CLAUDE_MODEL,
        timeout=settings.ANALYSIS_TIMEOUT,
    )
    return InsightGenerator(client)


def get_insight_cache() -> InsightCache:
    """
    Get or create the insight cache.

    The Claude client is only built when a generation is actually needed,
    so cached sessions are served without an API key.
    """
    global _insight_cache
    if _insight_cache is None:
        _insight_cache = InsightCache(
            generator_factory=_build_insight_generator,
            timeout=get_settings().ANALYSIS_TIMEOUT,
        )
    return _insight_cache


def reset_services() -> None:
    """Forget cached collaborators (settings changed, tests)."""
    global _collector, _insight_cache
    _collector = None
    _insight_cache = None


# =============================================================================
# BATCH
# =============================================================================

async def run_ranking_batch(
    keyword_ids: Optional[List[UUID]] = None,
    collector: Optional[BatchCollector] = None,
) -> BatchRunStats:
    """
    Run one collection pass.

    Args:
        keyword_ids: Restrict the pass to these keywords (default: all active)
        collector: Override the process-wide collector

    Raises:
        BatchAlreadyRunningError: a pass is already in progress
    """
    collector = collector or get_collector()

    keywords = None
    if keyword_ids:
        with collector.session_factory() as db:
            keywords = repository.get_keywords_by_ids(db, keyword_ids)

    return await collector.run_batch(keywords)


def _batch_run_to_dict(run) -> Dict[str, Any]:
    return {
        "batch_run_id": str(run.id),
        "status": run.status,
        "total": run.total_keywords or 0,
        "processed": run.processed_count or 0,
        "succeeded": run.succeeded_count or 0,
        "failed": run.failed_count or 0,
        "skipped": run.skipped_count or 0,
        "circuit_broken": run.circuit_broken_count or 0,
        "api_calls": run.api_calls or 0,
        "significant_changes": run.significant_changes or [],
        "error_message": run.error_message,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
    }


def get_batch_status(db: Session, collector: Optional[BatchCollector] = None) -> Dict[str, Any]:
    """
    Current or most recent batch run, for operational monitoring.

    The audit row is authoritative across processes; this process's in-memory
    stats add per-keyword detail when available.
    """
    run = repository.get_latest_batch_run(db)
    collector = collector or _collector

    status = {
        "is_running": bool(collector and collector.is_running),
        "last_run": _batch_run_to_dict(run) if run else None,
    }
    if collector and collector.last_stats and run and collector.last_stats.batch_run_id == str(run.id):
        status["last_run"]["keyword_results"] = collector.last_stats.keyword_results
    if run and run.status == BatchRunStatus.RUNNING.value:
        status["is_running"] = True
    return status


# =============================================================================
# REPORT CARD
# =============================================================================

def _snapshot_record(snapshot) -> SnapshotRecord:
    return SnapshotRecord(
        keyword_id=snapshot.keyword_id,
        keyword=snapshot.keyword,
        recorded_at=snapshot.recorded_at,
        position=snapshot.position or 0,
        competitors=snapshot.competitors or [],
    )


def build_report_card(db: Session, period: Optional[str] = None, now: Optional[datetime] = None) -> ReportCard:
    """
    Score the active keyword set over a window.

    Raises:
        InvalidInputError: unknown period
    """
    report_period = parse_period(period)
    start, end = get_date_range(report_period, now)

    keywords = repository.get_active_keywords(db)
    if not keywords:
        return ReportCard.empty(report_period.value, generated_at=datetime.utcnow())

    keyword_ids = [k.id for k in keywords]
    history = [_snapshot_record(s) for s in repository.get_snapshots_in_range(db, start, end, keyword_ids)]
    competitors = [
        CompetitorRecord(name=c.name, url=c.url) for c in repository.get_active_competitors(db)
    ]

    return compute_report_card(
        keywords=[KeywordRecord(id=k.id, keyword=k.keyword) for k in keywords],
        latest_snapshots=latest_per_keyword(history),
        historical_snapshots=history,
        competitors=competitors,
        period=report_period,
        generated_at=datetime.utcnow(),
    )


# =============================================================================
# INSIGHTS
# =============================================================================

async def get_or_generate_insights(
    db: Session,
    report_card: Optional[Union[ReportCard, Dict[str, Any]]] = None,
    period: Optional[str] = None,
    analysis_type: str = "insights",
    focus_areas: Optional[List[str]] = None,
    force_regenerate: bool = False,
    cache: Optional[InsightCache] = None,
) -> InsightResult:
    """
    Insights for a report card, from cache when the data is unchanged.

    When no report card is supplied, one is computed for `period`.
    """
    if report_card is None:
        report_card = build_report_card(db, period)

    cache = cache or get_insight_cache()
    return await cache.get_or_generate(
        db,
        report_card,
        analysis_type=analysis_type,
        focus_areas=focus_areas,
        force_regenerate=force_regenerate,
    )


def get_insight(db: Session, insight_id: Union[UUID, str]) -> Dict[str, Any]:
    record = repository.get_insight_record(db, parse_insight_id(insight_id))
    if record is None:
        raise NotFoundError(f"Insight {insight_id} not found")
    return record_to_dict(record)


def update_insight_status(
    db: Session,
    insight_id: Union[UUID, str],
    status: str,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> Dict[str, Any]:
    record = _update_insight_status(db, insight_id, status, notes=notes, actor=actor)
    return record_to_dict(record)


def get_insight_stats(db: Session) -> Dict[str, Any]:
    return repository.get_insight_stats(db)


# =============================================================================
# INSIGHT SESSION HISTORY
# =============================================================================

def get_recent_sessions(db: Session, limit: int = 10) -> List[Dict[str, Any]]:
    """Latest active sessions with their insights."""
    return [
        dict(session_to_dict(session), insights=[record_to_dict(r) for r in session.records])
        for session in repository.get_recent_sessions(db, limit)
    ]


def get_sessions_by_period(db: Session, period: str) -> List[Dict[str, Any]]:
    """
    Full generation history for a period, superseded sessions included.

    Raises:
        InvalidInputError: unknown period
    """
    report_period = parse_period(period)
    return [session_to_dict(s) for s in repository.get_sessions_by_period(db, report_period.value)]


def get_session_stats(db: Session) -> Dict[str, Any]:
    return repository.get_session_stats(db)


# =============================================================================
# SEARCH CONFIGURATION
# =============================================================================

async def diagnose_search_configuration(
    db: Session,
    test_keywords: Optional[List[str]] = None,
    collector: Optional[BatchCollector] = None,
) -> Dict[str, Any]:
    """
    Health check of the search engine configuration.

    Uses the given keywords, else up to three active tracked keywords, else
    a generic default set.

    Raises:
        ValueError: collector not configured
        BatchAlreadyRunningError: a batch is using the search API
    """
    collector = collector or get_collector()

    keywords = [k.strip() for k in (test_keywords or []) if k and k.strip()]
    if not keywords:
        active = repository.get_active_keywords(db)[:MAX_TEST_KEYWORDS]
        keywords = [k.keyword for k in active] or list(DEFAULT_TEST_KEYWORDS)

    diagnostic = await collector.diagnose(keywords)
    logger.info(
        f"Search configuration {'healthy' if diagnostic.is_healthy else 'has issues'}: "
        f"{len(diagnostic.issues)} issues, {len(diagnostic.recommendations)} recommendations"
    )
    return {
        "diagnostic": diagnostic.to_dict(),
        "tested_keywords": keywords,
        "timestamp": datetime.utcnow().isoformat(),
    }


def get_validation_guidance() -> Dict[str, Any]:
    """Static checklist for fixing a restricted search engine."""
    return {
        "guidance": CONFIGURATION_GUIDANCE,
        "timestamp": datetime.utcnow().isoformat(),
    }
