"""
Rankings API

Outbound queries for the ranking monitor, mounted by the host application.

Endpoints:
- Batch status and manual batch trigger
- Report card for a period
- Cached insight generation, lookup, status updates and statistics
- Insight session history and statistics
- Search configuration diagnostics
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.analyzer.client import AnalysisError, AnalysisRateLimitedError, AnalysisUnavailableError
from src.collector.batch import BatchAlreadyRunningError
from src.database import repository
from src.database.session import get_db
from src.services import rankings as service
from src.utils.config import get_settings
from src.utils.errors import InvalidInputError, NotFoundError


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/rankings", tags=["Rankings"])


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class BatchStatusResponse(BaseModel):
    """Current or most recent batch run."""
    is_running: bool
    last_run: Optional[Dict[str, Any]] = None


class BatchStartResponse(BaseModel):
    status: str = "started"
    started_at: datetime = Field(default_factory=datetime.utcnow)


class ReportCardResponse(BaseModel):
    overall_grade: str
    overall_score: int
    total_keywords: int
    metrics: Dict[str, Any]
    keyword_breakdown: Dict[str, int]
    trends: Dict[str, str]
    top_performers: List[Dict[str, Any]]
    needs_attention: List[Dict[str, Any]]
    competitor_analysis: Dict[str, Any]
    period: str
    generated_at: Optional[str] = None


class InsightsRequest(BaseModel):
    """Generate (or fetch cached) insights for a report card."""
    report_card: Optional[Dict[str, Any]] = Field(
        default=None, description="Report card to analyze; computed for `period` when omitted"
    )
    period: Optional[str] = Field(default=None, description="Used only when report_card is omitted")
    analysis_type: str = Field(default="insights")
    focus_areas: Optional[List[str]] = None
    force_regenerate: bool = False


class InsightResponse(BaseModel):
    id: str
    session_id: str
    type: str
    priority: str
    category: str
    title: str
    message: str
    affected_keywords: List[str] = []
    action_items: List[str] = []
    confidence_score: float
    status: str
    notes: Optional[str] = None
    completed_by: Optional[str] = None
    completed_at: Optional[str] = None
    dismissed_by: Optional[str] = None
    dismissed_at: Optional[str] = None
    generated_at: Optional[str] = None


class InsightsResponse(BaseModel):
    session_id: str
    cached: bool
    analysis_type: str
    period: str
    executive_summary: Optional[str] = None
    summary: Optional[str] = None
    generated_at: Optional[str] = None
    generation_time_ms: Optional[int] = None
    insights: List[InsightResponse]


class InsightStatusUpdate(BaseModel):
    status: str = Field(..., description="new, in_progress, completed or dismissed")
    notes: Optional[str] = None
    actor: Optional[str] = Field(default=None, description="Who completed or dismissed the insight")


class InsightStatsResponse(BaseModel):
    total: int
    new: int
    in_progress: int
    completed: int
    dismissed: int
    high_priority: int
    average_confidence: float


class InsightSessionResponse(BaseModel):
    id: str
    source_data_hash: str
    status: str
    period: str
    analysis_type: str
    executive_summary: Optional[str] = None
    summary: Optional[str] = None
    total_insights: int = 0
    insight_ids: List[str] = []
    model: Optional[str] = None
    generation_time_ms: Optional[int] = None
    generated_at: Optional[str] = None
    superseded_at: Optional[str] = None
    insights: Optional[List[InsightResponse]] = None


class SessionStatsResponse(BaseModel):
    total_sessions: int
    active_sessions: int
    superseded_sessions: int
    total_insights: int
    average_insights_per_session: float
    total_api_calls: int
    total_cost: float
    average_generation_time_ms: int


class ValidateRequest(BaseModel):
    """Keywords to test; active tracked keywords or defaults when omitted."""
    test_keywords: Optional[List[str]] = None


class ValidateResponse(BaseModel):
    diagnostic: Dict[str, Any]
    tested_keywords: List[str]
    timestamp: str


class GuidanceResponse(BaseModel):
    guidance: Dict[str, Any]
    timestamp: str


# =============================================================================
# ERROR MAPPING
# =============================================================================

def _http_error(e: Exception) -> HTTPException:
    """Map domain errors onto HTTP responses."""
    if isinstance(e, InvalidInputError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, BatchAlreadyRunningError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, AnalysisRateLimitedError):
        return HTTPException(
            status_code=429,
            detail="Insight service rate limit exceeded. Please try again later.",
        )
    if isinstance(e, AnalysisUnavailableError):
        return HTTPException(status_code=503, detail=f"Insight service is unavailable: {e}")
    return HTTPException(status_code=502, detail=f"Failed to generate insights: {e}")


# =============================================================================
# BATCH
# =============================================================================

async def _run_batch_task():
    try:
        await service.run_ranking_batch()
    except BatchAlreadyRunningError as e:
        logger.warning(f"Batch not started: {e}")
    except SQLAlchemyError as e:
        logger.error(f"Batch aborted by storage error: {e}")
    except Exception as e:
        logger.error(f"Batch aborted: {e}", exc_info=True)


@router.get("/batch/status", response_model=BatchStatusResponse)
def batch_status(db: Session = Depends(get_db)):
    """Processed, succeeded, failed and circuit-broken counts of the current or last run."""
    return BatchStatusResponse(**service.get_batch_status(db))


@router.post("/batch/run", response_model=BatchStartResponse, status_code=202)
def start_batch(background_tasks: BackgroundTasks, db: Session = Depends(get_db)):
    """
    Start a collection pass in the background.

    Returns 409 when a pass is already running in this or another process.
    """
    try:
        collector = service.get_collector()
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))

    stale_after = get_settings().BATCH_STALE_AFTER_MINUTES
    if collector.is_running or repository.get_running_batch(db, stale_after) is not None:
        raise _http_error(BatchAlreadyRunningError())

    background_tasks.add_task(_run_batch_task)
    logger.info("Ranking batch scheduled")
    return BatchStartResponse()


# =============================================================================
# REPORT CARD
# =============================================================================

@router.get("/report-card", response_model=ReportCardResponse)
def report_card(
    period: str = Query(default="last30Days", description="last7Days, last30Days, last90Days, lastYear or all"),
    db: Session = Depends(get_db),
):
    try:
        card = service.build_report_card(db, period)
    except InvalidInputError as e:
        raise _http_error(e)
    return ReportCardResponse(**card.to_dict())


# =============================================================================
# INSIGHTS
# =============================================================================

@router.post("/insights", response_model=InsightsResponse)
async def generate_insights(request: InsightsRequest, db: Session = Depends(get_db)):
    """
    Insights for a report card.

    Unchanged report cards return the cached session (`cached: true`)
    without calling the generator.
    """
    try:
        cache = service.get_insight_cache()
        result = await service.get_or_generate_insights(
            db,
            report_card=request.report_card,
            period=request.period,
            analysis_type=request.analysis_type,
            focus_areas=request.focus_areas,
            force_regenerate=request.force_regenerate,
            cache=cache,
        )
    except (InvalidInputError, AnalysisError) as e:
        raise _http_error(e)

    return InsightsResponse(**result.to_dict())


@router.get("/insights/stats", response_model=InsightStatsResponse)
def insight_stats(db: Session = Depends(get_db)):
    return InsightStatsResponse(**service.get_insight_stats(db))


@router.get("/insights/sessions", response_model=List[InsightSessionResponse])
def insight_sessions(
    period: Optional[str] = Query(default=None, description="Full history for this period, superseded included"),
    limit: int = Query(default=10, ge=1, le=100, description="Recent active sessions to return"),
    db: Session = Depends(get_db),
):
    """Recent active sessions with their insights, or every session generated for a period."""
    if period is None:
        return service.get_recent_sessions(db, limit)
    try:
        return service.get_sessions_by_period(db, period)
    except InvalidInputError as e:
        raise _http_error(e)


@router.get("/insights/sessions/stats", response_model=SessionStatsResponse)
def insight_session_stats(db: Session = Depends(get_db)):
    return SessionStatsResponse(**service.get_session_stats(db))


@router.get("/insights/{insight_id}", response_model=InsightResponse)
def get_insight(insight_id: UUID, db: Session = Depends(get_db)):
    try:
        return InsightResponse(**service.get_insight(db, insight_id))
    except NotFoundError as e:
        raise _http_error(e)


@router.patch("/insights/{insight_id}", response_model=InsightResponse)
def update_insight(insight_id: UUID, update: InsightStatusUpdate, db: Session = Depends(get_db)):
    """Move an insight through new -> in_progress -> completed, or dismiss it."""
    try:
        record = service.update_insight_status(
            db, insight_id, update.status, notes=update.notes, actor=update.actor
        )
    except (InvalidInputError, NotFoundError) as e:
        raise _http_error(e)
    return InsightResponse(**record)


# =============================================================================
# SEARCH CONFIGURATION
# =============================================================================

@router.post("/validate", response_model=ValidateResponse)
async def validate_search_configuration(
    request: Optional[ValidateRequest] = None,
    db: Session = Depends(get_db),
):
    """
    Look up a few keywords and report signs of a site-restricted search engine.

    Returns 409 while a batch holds the search API.
    """
    try:
        collector = service.get_collector()
    except ValueError as e:
        raise HTTPException(status_code=503, detail=str(e))

    try:
        return ValidateResponse(
            **await service.diagnose_search_configuration(
                db, request.test_keywords if request else None, collector=collector
            )
        )
    except BatchAlreadyRunningError as e:
        raise _http_error(e)


@router.get("/validate", response_model=GuidanceResponse)
def validation_guidance():
    """Checklist and common causes for a restricted search engine."""
    return GuidanceResponse(**service.get_validation_guidance())
