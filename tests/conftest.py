"""
Pytest Configuration and Shared Fixtures

Provides an in-memory database, scripted search clients, a fake clock and
sample report card data for all test modules.
"""

import pytest
from datetime import datetime, timedelta
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from src.analyzer.client import TokenUsage
from src.analyzer.insights import GeneratedInsight, GeneratedInsights
from src.collector.client import RankingPage, ResultEntry
from src.database.models import Base, ManagedCompetitor, TrackedKeyword
from src.utils.domains import normalize_url


# ============================================================================
# Database
# ============================================================================

@pytest.fixture
def engine():
    """Fresh in-memory SQLite database shared by every session in a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_keyword(db):
    """Create and commit a tracked keyword."""
    def _make(keyword: str, is_active: bool = True, created_at: datetime = None) -> TrackedKeyword:
        row = TrackedKeyword(
            keyword=keyword,
            keyword_normalized=keyword.strip().lower(),
            is_active=is_active,
            created_at=created_at or datetime.utcnow(),
        )
        db.add(row)
        db.commit()
        return row
    return _make


@pytest.fixture
def make_competitor(db):
    """Create and commit a managed competitor."""
    def _make(name: str, url: str, is_active: bool = True) -> ManagedCompetitor:
        row = ManagedCompetitor(
            name=name,
            url=url,
            url_normalized=normalize_url(url),
            is_active=is_active,
        )
        db.add(row)
        db.commit()
        return row
    return _make


# ============================================================================
# Search API fakes
# ============================================================================

def make_page(keyword: str, page: int, urls: List[str]) -> RankingPage:
    """RankingPage with absolute positions for the given result URLs."""
    start = page * 10 + 1
    return RankingPage(
        keyword=keyword,
        page=page,
        entries=[
            ResultEntry(position=start + i, url=url, title=f"Result {start + i}")
            for i, url in enumerate(urls)
        ],
        total_results="1000",
        search_time="0.25",
    )


def filler_urls(count: int, prefix: str = "site") -> List[str]:
    """Distinct non-target result URLs."""
    return [f"https://{prefix}{i}.com/page" for i in range(count)]


class FakeSearchClient:
    """
    Scripted stand-in for SearchAPIClient.

    pages:  (keyword, page) -> result URLs; unknown pages are empty
    errors: (keyword, page) -> exceptions raised, in order, before the page succeeds
    gate:   optional asyncio.Event every call waits on
    """

    def __init__(self, pages: Dict = None, errors: Dict = None):
        self.pages = pages or {}
        self.errors = {key: list(value) for key, value in (errors or {}).items()}
        self.calls = []
        self.gate = None
        self.closed = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def fetch_page(self, keyword: str, page: int) -> RankingPage:
        self.calls.append((keyword, page))
        if self.gate is not None:
            await self.gate.wait()
        queued = self.errors.get((keyword, page))
        if queued:
            raise queued.pop(0)
        return make_page(keyword, page, self.pages.get((keyword, page), []))

    async def close(self):
        self.closed = True


class FakeClock:
    """Monotonic clock that only moves when something sleeps on it."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    async def sleep(self, seconds: float):
        self.sleeps.append(seconds)
        self.now += seconds


class FixedJitter:
    """random.Random stand-in returning a constant jitter."""

    def __init__(self, value: float = 1.0):
        self.value = value

    def uniform(self, a: float, b: float) -> float:
        return self.value


@pytest.fixture
def clock():
    return FakeClock()


# ============================================================================
# Report card / insight fixtures
# ============================================================================

@pytest.fixture
def sample_report_card() -> Dict[str, Any]:
    """Report card as produced by ReportCard.to_dict()."""
    return {
        "overall_grade": "C",
        "overall_score": 72,
        "total_keywords": 3,
        "metrics": {
            "average_position": "8.5",
            "visibility_score": 67,
            "competitive_score": 50,
            "consistency_score": 80,
            "growth_score": 55,
        },
        "keyword_breakdown": {"top3": 1, "top10": 0, "top20": 1, "not_found": 1},
        "trends": {
            "position_trend": "improving",
            "visibility_trend": "stable",
            "competitive_trend": "stable",
        },
        "top_performers": [
            {"keyword": "bounce house rental", "position": 2, "trend": "improving"},
            {"keyword": "party rentals", "position": 15, "trend": "stable"},
        ],
        "needs_attention": [
            {"keyword": "tent rental", "position": 0, "issue": "Not ranking", "trend": "stable"},
        ],
        "competitor_analysis": {
            "total_competitors": 1,
            "outranked_percentage": 50,
            "opportunities": [],
        },
        "period": "last30Days",
        "generated_at": "2024-03-15T10:00:00",
    }


def make_generated(count: int = 3, model: str = "claude-test") -> GeneratedInsights:
    """Generator output with alternating priorities and fixed confidences."""
    priorities = ["high", "medium", "high", "low"]
    confidences = [0.9, 0.5, 0.7, 0.3]
    insights = [
        GeneratedInsight(
            type="opportunity",
            priority=priorities[i % len(priorities)],
            category="ranking",
            title=f"Insight {i + 1}",
            message=f"Message {i + 1}",
            affected_keywords=["party rentals"],
            action_items=["Refresh the landing page"],
            confidence_score=confidences[i % len(confidences)],
        )
        for i in range(count)
    ]
    return GeneratedInsights(
        insights=insights,
        executive_summary="Rankings are improving.",
        summary="Two of three keywords rank.",
        model=model,
        usage=TokenUsage(input_tokens=1200, output_tokens=400),
    )


@pytest.fixture
def fake_generator():
    """InsightGenerator stand-in whose generate() is an AsyncMock."""
    generator = MagicMock()
    generator.generate = AsyncMock(side_effect=lambda request: make_generated())
    return generator


def days_ago(days: int, hour: int = 12) -> datetime:
    return (datetime.utcnow() - timedelta(days=days)).replace(hour=hour, minute=0, second=0, microsecond=0)
