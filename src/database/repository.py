"""
Repository Layer - Clean Interface for Data Operations

Provides simple functions to store and retrieve ranking data.
Handles all SQLAlchemy query details internally; callers own the session
and the transaction boundary.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from .models import (
    BatchRun,
    BatchRunStatus,
    InsightRecord,
    InsightSession,
    InsightSessionStatus,
    ManagedCompetitor,
    RankingSnapshot,
    TrackedKeyword,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION READS
# =============================================================================

def get_active_keywords(db: Session) -> List[TrackedKeyword]:
    """All active tracked keywords, oldest first."""
    return (
        db.query(TrackedKeyword)
        .filter(TrackedKeyword.is_active.is_(True))
        .order_by(TrackedKeyword.created_at, TrackedKeyword.keyword)
        .all()
    )


def get_keywords_by_ids(db: Session, keyword_ids: List[UUID]) -> List[TrackedKeyword]:
    if not keyword_ids:
        return []
    return db.query(TrackedKeyword).filter(TrackedKeyword.id.in_(keyword_ids)).all()


def get_active_competitors(db: Session) -> List[ManagedCompetitor]:
    return (
        db.query(ManagedCompetitor)
        .filter(ManagedCompetitor.is_active.is_(True))
        .order_by(ManagedCompetitor.name)
        .all()
    )


# =============================================================================
# BATCH RUNS
# =============================================================================

def get_running_batch(db: Session, stale_after_minutes: int = 120) -> Optional[BatchRun]:
    """
    Return a batch run that is still marked running and not stale.

    A running row older than the stale window is treated as abandoned
    (crashed process) and does not block a new run.
    """
    cutoff = datetime.utcnow() - timedelta(minutes=stale_after_minutes)
    return (
        db.query(BatchRun)
        .filter(
            BatchRun.status == BatchRunStatus.RUNNING.value,
            BatchRun.started_at >= cutoff,
        )
        .order_by(BatchRun.started_at.desc())
        .first()
    )


def create_batch_run(db: Session, total_keywords: int, started_at: datetime = None) -> BatchRun:
    run = BatchRun(
        status=BatchRunStatus.RUNNING.value,
        total_keywords=total_keywords,
        started_at=started_at or datetime.utcnow(),
        keyword_results={},
        significant_changes=[],
    )
    db.add(run)
    db.flush()
    logger.info(f"Created batch run {run.id} for {total_keywords} keywords")
    return run


def finish_batch_run(db: Session, run: BatchRun, stats: Dict[str, Any], status: BatchRunStatus) -> BatchRun:
    """Copy a BatchRunStats dict onto the audit row and close it."""
    run.status = status.value
    run.processed_count = stats.get("processed", 0)
    run.succeeded_count = stats.get("succeeded", 0)
    run.failed_count = stats.get("failed", 0)
    run.skipped_count = stats.get("skipped", 0)
    run.circuit_broken_count = stats.get("circuit_broken", 0)
    run.api_calls = stats.get("api_calls", 0)
    run.keyword_results = stats.get("keyword_results", {})
    run.significant_changes = stats.get("significant_changes", [])
    run.completed_at = datetime.utcnow()
    db.flush()
    return run


def fail_batch_run(db: Session, run_id: UUID, error_message: str) -> None:
    """Mark a batch run as failed (infrastructure error)."""
    run = db.get(BatchRun, run_id)
    if run:
        run.status = BatchRunStatus.FAILED.value
        run.error_message = error_message
        run.completed_at = datetime.utcnow()
        db.flush()
        logger.error(f"Batch run {run_id} failed: {error_message}")


def get_latest_batch_run(db: Session) -> Optional[BatchRun]:
    return db.query(BatchRun).order_by(BatchRun.started_at.desc()).first()


# =============================================================================
# RANKING SNAPSHOTS
# =============================================================================

def store_snapshot(
    db: Session,
    keyword_id: UUID,
    batch_run_id: UUID,
    keyword: str,
    position: int,
    url: Optional[str],
    competitors: List[Dict[str, Any]],
    source_metadata: Dict[str, Any],
    recorded_at: datetime = None,
) -> RankingSnapshot:
    """
    Append one ranking observation.

    The (keyword_id, batch_run_id) unique constraint rejects a second write
    for the same keyword in the same run.
    """
    snapshot = RankingSnapshot(
        keyword_id=keyword_id,
        batch_run_id=batch_run_id,
        keyword=keyword,
        position=position,
        url=url,
        competitors=competitors,
        source_metadata=source_metadata,
        recorded_at=recorded_at or datetime.utcnow(),
    )
    db.add(snapshot)
    db.flush()
    return snapshot


def get_previous_snapshot(
    db: Session,
    keyword_id: UUID,
    exclude_run_id: Optional[UUID] = None,
) -> Optional[RankingSnapshot]:
    """Most recent snapshot for a keyword, optionally ignoring one run."""
    query = db.query(RankingSnapshot).filter(RankingSnapshot.keyword_id == keyword_id)
    if exclude_run_id is not None:
        query = query.filter(RankingSnapshot.batch_run_id != exclude_run_id)
    return query.order_by(RankingSnapshot.recorded_at.desc()).first()


def get_snapshots_in_range(
    db: Session,
    start: datetime,
    end: datetime,
    keyword_ids: Optional[List[UUID]] = None,
) -> List[RankingSnapshot]:
    """All snapshots recorded in [start, end], newest first."""
    query = db.query(RankingSnapshot).filter(
        RankingSnapshot.recorded_at >= start,
        RankingSnapshot.recorded_at <= end,
    )
    if keyword_ids is not None:
        query = query.filter(RankingSnapshot.keyword_id.in_(keyword_ids))
    return query.order_by(RankingSnapshot.recorded_at.desc()).all()


def count_snapshots(db: Session) -> int:
    return db.query(func.count(RankingSnapshot.id)).scalar() or 0


# =============================================================================
# INSIGHT SESSIONS
# =============================================================================

def get_active_session_by_hash(db: Session, source_hash: str) -> Optional[InsightSession]:
    return (
        db.query(InsightSession)
        .filter(
            InsightSession.source_data_hash == source_hash,
            InsightSession.status == InsightSessionStatus.ACTIVE.value,
        )
        .first()
    )


def supersede_sessions(
    db: Session,
    source_hash: str,
    period: str,
    superseded_at: datetime = None,
) -> int:
    """Mark every active session with this hash or this period as superseded."""
    superseded_at = superseded_at or datetime.utcnow()
    sessions = (
        db.query(InsightSession)
        .filter(
            InsightSession.status == InsightSessionStatus.ACTIVE.value,
            (InsightSession.source_data_hash == source_hash) | (InsightSession.period == period),
        )
        .all()
    )
    for session in sessions:
        session.status = InsightSessionStatus.SUPERSEDED.value
        session.superseded_at = superseded_at

    if sessions:
        db.flush()
        logger.info(f"Superseded {len(sessions)} insight session(s) for period {period}")
    return len(sessions)


def get_recent_sessions(db: Session, limit: int = 10) -> List[InsightSession]:
    """Most recently generated active sessions, newest first."""
    return (
        db.query(InsightSession)
        .filter(InsightSession.status == InsightSessionStatus.ACTIVE.value)
        .order_by(InsightSession.generated_at.desc())
        .limit(limit)
        .all()
    )


def get_sessions_by_period(db: Session, period: str) -> List[InsightSession]:
    """Every session generated for a period, superseded ones included, newest first."""
    return (
        db.query(InsightSession)
        .filter(InsightSession.period == period)
        .order_by(InsightSession.generated_at.desc())
        .all()
    )


def get_session_stats(db: Session) -> Dict[str, Any]:
    """
    Aggregates over all insight sessions.

    API call and cost totals live in the JSON generation metadata, so they
    are summed here rather than in SQL.
    """
    rows = db.query(
        InsightSession.status,
        InsightSession.total_insights,
        InsightSession.generation_time_ms,
        InsightSession.generation_metadata,
    ).all()

    total = len(rows)
    active = sum(1 for row in rows if row.status == InsightSessionStatus.ACTIVE.value)
    total_insights = sum(row.total_insights or 0 for row in rows)
    times = [row.generation_time_ms for row in rows if row.generation_time_ms is not None]

    total_api_calls = 0
    total_cost = 0.0
    for row in rows:
        metadata = row.generation_metadata or {}
        total_api_calls += metadata.get("total_api_calls", 0) or 0
        total_cost += (metadata.get("token_usage") or {}).get("estimated_cost", 0.0) or 0.0

    return {
        "total_sessions": total,
        "active_sessions": active,
        "superseded_sessions": total - active,
        "total_insights": total_insights,
        "average_insights_per_session": round(total_insights / total, 2) if total else 0.0,
        "total_api_calls": total_api_calls,
        "total_cost": round(total_cost, 6),
        "average_generation_time_ms": round(sum(times) / len(times)) if times else 0,
    }


def get_insight_record(db: Session, insight_id: UUID) -> Optional[InsightRecord]:
    return db.get(InsightRecord, insight_id)


def get_insight_stats(db: Session) -> Dict[str, Any]:
    """Aggregate counts over insights in active sessions."""
    base = (
        db.query(InsightRecord)
        .join(InsightSession, InsightRecord.session_id == InsightSession.id)
        .filter(InsightSession.status == InsightSessionStatus.ACTIVE.value)
    )

    by_status = dict(
        base.with_entities(InsightRecord.status, func.count(InsightRecord.id))
        .group_by(InsightRecord.status)
        .all()
    )
    high_priority = base.filter(InsightRecord.priority == "high").count()
    avg_confidence = base.with_entities(func.avg(InsightRecord.confidence_score)).scalar()

    return {
        "total": sum(by_status.values()),
        "new": by_status.get("new", 0),
        "in_progress": by_status.get("in_progress", 0),
        "completed": by_status.get("completed", 0),
        "dismissed": by_status.get("dismissed", 0),
        "high_priority": high_priority,
        "average_confidence": round(float(avg_confidence), 2) if avg_confidence is not None else 0.0,
    }
