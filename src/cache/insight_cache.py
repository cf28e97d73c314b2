"""
Insight Session Cache

Insight generation is slow and paid per call, while the report card it
analyzes only changes when new snapshots arrive. Sessions are therefore keyed
by a content hash of the report card:

- Same report card (ignoring its timestamp) -> the stored session, no generator call
- New report card, or forced regeneration -> one generator call, new session,
  older active sessions for the same hash or period marked superseded

At most one active session exists per hash. Concurrent requests for the same
hash are serialized by a per-hash lock in-process and by a partial unique
index across processes.
"""

import asyncio
import hashlib
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.analyzer.client import AnalysisUnavailableError
from src.analyzer.insights import InsightGenerator, InsightRequest, validate_analysis_type
from src.database import repository
from src.database.models import (
    InsightRecord,
    InsightSession,
    InsightSessionStatus,
    InsightStatus,
)
from src.database.session import transaction
from src.scoring.report_card import ReportCard
from src.utils.errors import InvalidInputError, NotFoundError

logger = logging.getLogger(__name__)


# Excluded from the hash: regenerating the same data later must hit the cache
VOLATILE_FIELDS = {"generated_at", "generatedAt"}

# current status -> statuses it may move to
ALLOWED_TRANSITIONS = {
    InsightStatus.NEW.value: {
        InsightStatus.NEW.value,
        InsightStatus.IN_PROGRESS.value,
        InsightStatus.COMPLETED.value,
        InsightStatus.DISMISSED.value,
    },
    InsightStatus.IN_PROGRESS.value: {
        InsightStatus.IN_PROGRESS.value,
        InsightStatus.COMPLETED.value,
        InsightStatus.DISMISSED.value,
    },
    InsightStatus.COMPLETED.value: set(),
    InsightStatus.DISMISSED.value: set(),
}


def _report_card_dict(report_card: Union[ReportCard, Dict[str, Any], None]) -> Dict[str, Any]:
    if isinstance(report_card, ReportCard):
        return report_card.to_dict()
    if isinstance(report_card, dict) and report_card:
        return report_card
    raise InvalidInputError("Report card data is required", field="report_card")


def compute_report_card_hash(report_card: Union[ReportCard, Dict[str, Any]]) -> str:
    """
    SHA-256 of the canonical JSON form of a report card.

    Key order and the generation timestamp do not affect the hash.
    """
    data = _report_card_dict(report_card)
    stable = {k: v for k, v in data.items() if k not in VOLATILE_FIELDS}
    canonical = json.dumps(stable, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


# =============================================================================
# SERIALIZATION
# =============================================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def record_to_dict(record: InsightRecord) -> Dict[str, Any]:
    return {
        "id": str(record.id),
        "session_id": str(record.session_id),
        "type": record.type,
        "priority": record.priority,
        "category": record.category,
        "title": record.title,
        "message": record.message,
        "affected_keywords": record.affected_keywords or [],
        "action_items": record.action_items or [],
        "confidence_score": record.confidence_score,
        "status": record.status,
        "notes": record.notes,
        "completed_by": record.completed_by,
        "completed_at": _iso(record.completed_at),
        "dismissed_by": record.dismissed_by,
        "dismissed_at": _iso(record.dismissed_at),
        "generated_at": _iso(record.generated_at),
    }


def session_to_dict(session: InsightSession) -> Dict[str, Any]:
    return {
        "id": str(session.id),
        "source_data_hash": session.source_data_hash,
        "status": session.status,
        "period": session.period,
        "analysis_type": session.analysis_type,
        "executive_summary": session.executive_summary,
        "summary": session.summary,
        "total_insights": session.total_insights,
        "insight_ids": session.insight_ids or [],
        "model": session.model,
        "generation_time_ms": session.generation_time_ms,
        "generated_at": _iso(session.generated_at),
        "superseded_at": _iso(session.superseded_at),
    }


@dataclass
class InsightResult:
    """A session plus its insights, and whether it came from cache."""
    session: InsightSession
    insights: List[InsightRecord] = field(default_factory=list)
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": str(self.session.id),
            "cached": self.cached,
            "analysis_type": self.session.analysis_type,
            "period": self.session.period,
            "executive_summary": self.session.executive_summary,
            "summary": self.session.summary,
            "generated_at": _iso(self.session.generated_at),
            "generation_time_ms": self.session.generation_time_ms,
            "insights": [record_to_dict(r) for r in self.insights],
        }


# =============================================================================
# CACHE
# =============================================================================

class InsightCache:
    """
    Content-hash cache in front of the insight generator.

    Usage:
        cache = InsightCache(InsightGenerator(ClaudeClient()))
        result = await cache.get_or_generate(db, report_card)
        if result.cached:
            ...
    """

    def __init__(
        self,
        generator: Optional[InsightGenerator] = None,
        timeout: float = 60.0,
        generator_factory: Optional[Callable[[], InsightGenerator]] = None,
    ):
        if generator is None and generator_factory is None:
            raise ValueError("An insight generator or generator factory is required")
        self._generator = generator
        self._generator_factory = generator_factory
        self.timeout = timeout
        # source hash -> lock, and how many requests hold or wait on it
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._stats = {
            "hits": 0,
            "misses": 0,
            "generations": 0,
            "conflicts": 0,
        }

    @property
    def generator(self) -> InsightGenerator:
        """The generator, built on first use so cache hits need no API client."""
        if self._generator is None:
            self._generator = self._generator_factory()
        return self._generator

    def get_stats(self) -> Dict[str, int]:
        return dict(self._stats)

    @asynccontextmanager
    async def _hash_lock(self, source_hash: str):
        """Hold the lock for one hash; it is dropped once nobody holds or waits on it."""
        lock = self._locks.get(source_hash)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[source_hash] = lock
        self._lock_users[source_hash] = self._lock_users.get(source_hash, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[source_hash] -= 1
            if self._lock_users[source_hash] == 0:
                del self._lock_users[source_hash]
                del self._locks[source_hash]

    def _cached(self, db: Session, source_hash: str) -> Optional[InsightResult]:
        session = repository.get_active_session_by_hash(db, source_hash)
        if session is None:
            return None
        self._stats["hits"] += 1
        logger.info(f"Insight cache hit for {source_hash[:12]} (session {session.id})")
        return InsightResult(session=session, insights=list(session.records), cached=True)

    async def get_or_generate(
        self,
        db: Session,
        report_card: Union[ReportCard, Dict[str, Any]],
        analysis_type: str = "insights",
        focus_areas: Optional[List[str]] = None,
        force_regenerate: bool = False,
    ) -> InsightResult:
        """
        Return the active session for this report card, generating one if needed.

        Args:
            db: Database session
            report_card: ReportCard or its dict form
            analysis_type: One of ANALYSIS_TYPES
            focus_areas: Optional topics to emphasize
            force_regenerate: Skip the cache and supersede the current session

        Raises:
            InvalidInputError: missing report card or bad analysis type
            AnalysisRateLimitedError, AnalysisUnavailableError, AnalysisError:
                generation failed; nothing is persisted
        """
        card = _report_card_dict(report_card)
        analysis_type = validate_analysis_type(analysis_type)
        period = card.get("period")
        if not period:
            raise InvalidInputError("Report card period is required", field="period")

        source_hash = compute_report_card_hash(card)

        if not force_regenerate:
            cached = self._cached(db, source_hash)
            if cached:
                return cached

        async with self._hash_lock(source_hash):
            # Another request may have generated while we waited
            if not force_regenerate:
                cached = self._cached(db, source_hash)
                if cached:
                    return cached

            self._stats["misses"] += 1
            started = time.monotonic()
            request = InsightRequest(report_card=card, analysis_type=analysis_type, focus_areas=focus_areas)

            try:
                generated = await asyncio.wait_for(self.generator.generate(request), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                logger.error(f"Insight generation timed out after {self.timeout:.0f}s")
                raise AnalysisUnavailableError(
                    f"Insight generation timed out after {self.timeout:.0f}s"
                ) from e

            elapsed_ms = int((time.monotonic() - started) * 1000)
            self._stats["generations"] += 1

            try:
                return self._store(db, card, source_hash, analysis_type, generated, elapsed_ms)
            except IntegrityError:
                # A concurrent writer in another process won the unique index
                self._stats["conflicts"] += 1
                logger.warning(f"Concurrent insight session for {source_hash[:12]}, using the winner")
                winner = self._cached(db, source_hash)
                if winner is None:
                    raise
                return winner

    def _store(self, db: Session, card, source_hash, analysis_type, generated, elapsed_ms) -> InsightResult:
        now = datetime.utcnow()

        with transaction(db):
            repository.supersede_sessions(db, source_hash, card["period"], superseded_at=now)

            session = InsightSession(
                source_data_hash=source_hash,
                status=InsightSessionStatus.ACTIVE.value,
                period=card["period"],
                analysis_type=analysis_type,
                report_card_snapshot=card,
                executive_summary=generated.executive_summary,
                summary=generated.summary,
                total_insights=len(generated.insights),
                model=generated.model,
                generation_time_ms=elapsed_ms,
                generation_metadata={
                    "model": generated.model,
                    "generation_time_ms": elapsed_ms,
                    "token_usage": generated.usage.to_dict(),
                    "total_api_calls": 1,
                },
                generated_at=now,
            )
            db.add(session)
            db.flush()

            records = []
            for order, insight in enumerate(generated.insights):
                record = InsightRecord(
                    session_id=session.id,
                    created_order=order,
                    status=InsightStatus.NEW.value,
                    generated_at=now,
                    generation_metadata={
                        "report_card_period": card["period"],
                        "report_card_score": card.get("overall_score"),
                        "source_data_hash": source_hash,
                        "model": generated.model,
                    },
                    **insight.to_dict(),
                )
                db.add(record)
                records.append(record)
            db.flush()

            session.insight_ids = [str(r.id) for r in records]

        logger.info(
            f"Stored insight session {session.id}: {len(records)} insights, {elapsed_ms}ms"
        )
        return InsightResult(session=session, insights=records, cached=False)


# =============================================================================
# STATUS TRANSITIONS
# =============================================================================

def update_insight_status(
    db: Session,
    insight_id: Union[UUID, str],
    status: str,
    notes: Optional[str] = None,
    actor: Optional[str] = None,
) -> InsightRecord:
    """
    Move an insight to a new status.

    new -> in_progress -> completed, and new | in_progress -> dismissed.
    completed and dismissed are terminal.

    Raises:
        InvalidInputError: unknown status or disallowed transition
        NotFoundError: no such insight
    """
    if status not in ALLOWED_TRANSITIONS:
        valid = ", ".join(ALLOWED_TRANSITIONS)
        raise InvalidInputError(f"Invalid status '{status}'. Expected one of: {valid}", field="status")

    insight_id = parse_insight_id(insight_id)
    record = repository.get_insight_record(db, insight_id)
    if record is None:
        raise NotFoundError(f"Insight {insight_id} not found")

    if status not in ALLOWED_TRANSITIONS[record.status]:
        raise InvalidInputError(
            f"Cannot change insight status from '{record.status}' to '{status}'", field="status"
        )

    with transaction(db):
        now = datetime.utcnow()
        record.status = status
        if notes is not None:
            record.notes = notes
        if status == InsightStatus.COMPLETED.value:
            record.completed_by = actor
            record.completed_at = now
        elif status == InsightStatus.DISMISSED.value:
            record.dismissed_by = actor
            record.dismissed_at = now
        record.updated_at = now

    logger.info(f"Insight {insight_id} -> {status}" + (f" by {actor}" if actor else ""))
    return record


def parse_insight_id(value: Union[UUID, str]) -> UUID:
    """Accept a UUID or its string form."""
    if isinstance(value, UUID):
        return value
    try:
        return UUID(str(value))
    except ValueError:
        raise InvalidInputError(f"Invalid insight id '{value}'", field="insight_id")
