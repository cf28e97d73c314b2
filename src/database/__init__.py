"""
RankWatch Database Layer

Usage:
    from src.database import (
        # Session management
        init_db, get_db, get_db_context,

        # Models
        TrackedKeyword, RankingSnapshot, InsightSession, InsightRecord,
    )

    init_db()

    with get_db_context() as db:
        keywords = get_active_keywords(db)
"""

# Models
from .models import (
    Base,
    TrackedKeyword,
    ManagedCompetitor,
    BatchRun,
    RankingSnapshot,
    InsightSession,
    InsightRecord,
    # Enums
    BatchRunStatus,
    InsightSessionStatus,
    InsightStatus,
    InsightType,
    InsightPriority,
    InsightCategory,
)

# Session management
from .session import (
    get_database_url,
    create_db_engine,
    get_engine,
    get_session_factory,
    get_db,
    get_db_context,
    init_db,
    check_db_connection,
    transaction,
)

# Repository
from .repository import (
    get_active_keywords,
    get_keywords_by_ids,
    get_active_competitors,
    get_running_batch,
    create_batch_run,
    finish_batch_run,
    fail_batch_run,
    get_latest_batch_run,
    store_snapshot,
    get_previous_snapshot,
    get_snapshots_in_range,
    get_active_session_by_hash,
    supersede_sessions,
    get_recent_sessions,
    get_sessions_by_period,
    get_session_stats,
    get_insight_record,
    get_insight_stats,
)

__all__ = [
    # Models
    "Base",
    "TrackedKeyword",
    "ManagedCompetitor",
    "BatchRun",
    "RankingSnapshot",
    "InsightSession",
    "InsightRecord",
    "BatchRunStatus",
    "InsightSessionStatus",
    "InsightStatus",
    "InsightType",
    "InsightPriority",
    "InsightCategory",
    # Session
    "get_database_url",
    "create_db_engine",
    "get_engine",
    "get_session_factory",
    "get_db",
    "get_db_context",
    "init_db",
    "check_db_connection",
    "transaction",
    # Repository
    "get_active_keywords",
    "get_keywords_by_ids",
    "get_active_competitors",
    "get_running_batch",
    "create_batch_run",
    "finish_batch_run",
    "fail_batch_run",
    "get_latest_batch_run",
    "store_snapshot",
    "get_previous_snapshot",
    "get_snapshots_in_range",
    "get_active_session_by_hash",
    "supersede_sessions",
    "get_recent_sessions",
    "get_sessions_by_period",
    "get_session_stats",
    "get_insight_record",
    "get_insight_stats",
]
