"""
SQLAlchemy Models for RankWatch

Design Principles:
1. Keyword and competitor configuration is owned elsewhere; we only read it
2. Ranking snapshots are append-only, never updated
3. Insight sessions are keyed by a content hash of the report card they analyzed
4. Insight records change only through explicit status transitions

Portable between PostgreSQL (production) and SQLite (development, tests).
"""

import enum
from datetime import datetime
from uuid import uuid4

from sqlalchemy import (
    Column, String, Integer, Float, Boolean, DateTime, Text,
    ForeignKey, Index, UniqueConstraint, JSON, Uuid, text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


# =============================================================================
# ENUMS
# =============================================================================

class BatchRunStatus(enum.Enum):
    """Status of a collection pass"""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"          # Infrastructure failure, not per-keyword failures
    CANCELLED = "cancelled"


class InsightSessionStatus(enum.Enum):
    """Lifecycle of a cached analysis"""
    ACTIVE = "active"
    SUPERSEDED = "superseded"


class InsightStatus(enum.Enum):
    """User-driven status of one insight"""
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISMISSED = "dismissed"


class InsightType(enum.Enum):
    OPPORTUNITY = "opportunity"
    WARNING = "warning"
    TREND = "trend"
    RECOMMENDATION = "recommendation"


class InsightPriority(enum.Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class InsightCategory(enum.Enum):
    RANKING = "ranking"
    COMPETITIVE = "competitive"
    TECHNICAL = "technical"
    CONTENT = "content"
    PERFORMANCE = "performance"


# =============================================================================
# CONFIGURATION (read-only to the core)
# =============================================================================

class TrackedKeyword(Base):
    """A search phrase being monitored"""
    __tablename__ = "tracked_keywords"

    id = Column(Uuid, primary_key=True, default=uuid4)
    keyword = Column(String(500), nullable=False)
    keyword_normalized = Column(String(500), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    snapshots = relationship("RankingSnapshot", back_populates="tracked_keyword")

    __table_args__ = (
        # One active row per phrase
        Index(
            "uq_tracked_keywords_active_phrase",
            "keyword_normalized",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )


class ManagedCompetitor(Base):
    """A competitor site compared against in the report card"""
    __tablename__ = "managed_competitors"

    id = Column(Uuid, primary_key=True, default=uuid4)
    name = Column(String(255), nullable=False)
    url = Column(String(2000), nullable=False)
    url_normalized = Column(String(2000))  # scheme and www. stripped
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_managed_competitors_active", "is_active"),
    )


# =============================================================================
# COLLECTION
# =============================================================================

class BatchRun(Base):
    """
    Audit record of one collection pass.

    A RUNNING row also marks the batch lock across processes.
    """
    __tablename__ = "batch_runs"

    id = Column(Uuid, primary_key=True, default=uuid4)
    status = Column(String(20), default=BatchRunStatus.RUNNING.value, nullable=False)

    total_keywords = Column(Integer, default=0)
    processed_count = Column(Integer, default=0)
    succeeded_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    skipped_count = Column(Integer, default=0)
    circuit_broken_count = Column(Integer, default=0)
    api_calls = Column(Integer, default=0)

    keyword_results = Column(JSONType, default=dict)
    """
    {
        "<keyword_id>": {"keyword": "party rentals", "status": "succeeded",
                         "position": 7, "circuit_broken": false, "error": null}
    }
    """
    significant_changes = Column(JSONType, default=list)
    error_message = Column(Text)

    started_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime)

    snapshots = relationship("RankingSnapshot", back_populates="batch_run")

    __table_args__ = (
        Index("idx_batch_runs_status", "status", "started_at"),
    )


class RankingSnapshot(Base):
    """One immutable observation of a keyword's position"""
    __tablename__ = "ranking_snapshots"

    id = Column(Uuid, primary_key=True, default=uuid4)
    keyword_id = Column(Uuid, ForeignKey("tracked_keywords.id"), nullable=False)
    batch_run_id = Column(Uuid, ForeignKey("batch_runs.id"), nullable=False)

    keyword = Column(String(500), nullable=False)
    recorded_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # 0 = not found, else 1-based rank
    position = Column(Integer, default=0, nullable=False)
    url = Column(String(2000))

    competitors = Column(JSONType, default=list)
    """
    [{"position": 1, "url": "https://...", "domain": "rival.com", "title": "..."}]
    """
    source_metadata = Column(JSONType, default=dict)
    """
    {
        "pages_fetched": 2, "api_calls_used": 2, "result_count": 20,
        "total_results": "1240000", "search_time": "0.31",
        "is_validation_passed": true, "validation_warnings": []
    }
    """

    tracked_keyword = relationship("TrackedKeyword", back_populates="snapshots")
    batch_run = relationship("BatchRun", back_populates="snapshots")

    __table_args__ = (
        UniqueConstraint("keyword_id", "batch_run_id", name="uq_snapshot_keyword_run"),
        Index("idx_snapshots_keyword_date", "keyword_id", "recorded_at"),
        Index("idx_snapshots_recorded_at", "recorded_at"),
    )


# =============================================================================
# INSIGHTS
# =============================================================================

class InsightSession(Base):
    """
    Cached analysis of one report card.

    At most one ACTIVE session exists per source_data_hash.
    """
    __tablename__ = "insight_sessions"

    id = Column(Uuid, primary_key=True, default=uuid4)
    source_data_hash = Column(String(64), nullable=False)
    status = Column(String(20), default=InsightSessionStatus.ACTIVE.value, nullable=False)

    period = Column(String(20), nullable=False)
    analysis_type = Column(String(20), nullable=False)
    report_card_snapshot = Column(JSONType, nullable=False)

    executive_summary = Column(Text)
    summary = Column(Text)
    total_insights = Column(Integer, default=0)
    insight_ids = Column(JSONType, default=list)

    # Generation metadata
    model = Column(String(100))
    generation_time_ms = Column(Integer)
    generation_metadata = Column(JSONType, default=dict)

    generated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    superseded_at = Column(DateTime)

    records = relationship(
        "InsightRecord",
        back_populates="session",
        order_by="InsightRecord.created_order",
    )

    __table_args__ = (
        Index(
            "uq_insight_sessions_active_hash",
            "source_data_hash",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_insight_sessions_hash_status", "source_data_hash", "status"),
        Index("idx_insight_sessions_period", "period", "status"),
    )


class InsightRecord(Base):
    """One actionable finding owned by a session"""
    __tablename__ = "insight_records"

    id = Column(Uuid, primary_key=True, default=uuid4)
    session_id = Column(Uuid, ForeignKey("insight_sessions.id"), nullable=False)
    created_order = Column(Integer, default=0)

    type = Column(String(20), nullable=False)
    priority = Column(String(10), nullable=False)
    category = Column(String(20), nullable=False)
    title = Column(String(500), nullable=False)
    message = Column(Text, nullable=False)
    affected_keywords = Column(JSONType, default=list)
    action_items = Column(JSONType, default=list)
    confidence_score = Column(Float, default=0.5)

    status = Column(String(20), default=InsightStatus.NEW.value, nullable=False)
    notes = Column(Text)
    completed_by = Column(String(255))
    completed_at = Column(DateTime)
    dismissed_by = Column(String(255))
    dismissed_at = Column(DateTime)

    generation_metadata = Column(JSONType, default=dict)
    generated_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    session = relationship("InsightSession", back_populates="records")

    __table_args__ = (
        Index("idx_insight_records_session", "session_id"),
        Index("idx_insight_records_session_status", "session_id", "status"),
        Index("idx_insight_records_status_priority", "status", "priority"),
    )
