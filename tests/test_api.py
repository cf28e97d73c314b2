"""
Tests for the rankings API router and the service layer behind it.

The router is mounted on a throwaway FastAPI app with the database
dependency pointed at the in-memory test database.
"""

from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api.rankings import router
from src.analyzer.client import AnalysisError, AnalysisRateLimitedError, AnalysisUnavailableError
from src.cache import InsightCache
from src.collector.batch import BatchAlreadyRunningError
from src.collector.diagnostics import DEFAULT_TEST_KEYWORDS, SearchDiagnostic
from src.database import repository
from src.database.models import BatchRunStatus
from src.database.session import get_db
from src.services import rankings as service

from conftest import days_ago


@pytest.fixture
def app(session_factory):
    app = FastAPI()
    app.include_router(router)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield app
    service.reset_services()


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def insight_cache(fake_generator):
    cache = InsightCache(fake_generator)
    with patch.object(service, "get_insight_cache", return_value=cache):
        yield cache


@pytest.fixture
def ranked_keywords(db, make_keyword, make_competitor):
    """Two keywords with a week of history and one competitor."""
    first = make_keyword("bounce house rental")
    second = make_keyword("tent rental")
    make_competitor("Rival Rentals", "https://www.rival.com")

    run = repository.create_batch_run(db, total_keywords=2, started_at=days_ago(7))
    repository.store_snapshot(db, first.id, run.id, first.keyword, 6, None, [], {}, recorded_at=days_ago(7))
    repository.store_snapshot(db, second.id, run.id, second.keyword, 0, None, [], {}, recorded_at=days_ago(7))
    repository.finish_batch_run(db, run, {}, BatchRunStatus.COMPLETED)

    run = repository.create_batch_run(db, total_keywords=2, started_at=days_ago(1))
    rival = [{"position": 5, "url": "https://rival.com/bounce", "domain": "rival.com", "title": "Rival"}]
    repository.store_snapshot(db, first.id, run.id, first.keyword, 2, "https://example.com/", rival, {},
                              recorded_at=days_ago(1))
    repository.store_snapshot(db, second.id, run.id, second.keyword, 0, None, [], {}, recorded_at=days_ago(1))
    repository.finish_batch_run(db, run, {"succeeded": 2, "processed": 2}, BatchRunStatus.COMPLETED)
    db.commit()
    return first, second


# =============================================================================
# SERVICE LAYER
# =============================================================================

class TestBuildReportCard:
    """Report cards from stored snapshots."""

    def test_uses_latest_snapshot_in_window(self, db, ranked_keywords):
        card = service.build_report_card(db, "last30Days")

        assert card.total_keywords == 2
        assert card.metrics["average_position"] == "2.0"
        assert card.metrics["visibility_score"] == 50
        assert card.keyword_breakdown["top3"] == 1
        assert card.metrics["growth_score"] == 70
        assert card.competitor_analysis["outranked_percentage"] == 100

    def test_window_excludes_older_snapshots(self, db, ranked_keywords):
        card = service.build_report_card(db, "last7Days", now=datetime.utcnow() - timedelta(days=3))

        # Only the 7-day-old snapshots fall inside this window
        assert card.metrics["average_position"] == "6.0"

    def test_no_keywords(self, db):
        card = service.build_report_card(db, None)

        assert card.overall_grade == "N/A"
        assert card.period == "last30Days"


class TestBatchStatus:
    """Operational status from the audit table."""

    def test_no_runs(self, db):
        assert service.get_batch_status(db, collector=MagicMock(is_running=False, last_stats=None)) == {
            "is_running": False,
            "last_run": None,
        }

    def test_latest_run(self, db, ranked_keywords):
        status = service.get_batch_status(db, collector=MagicMock(is_running=False, last_stats=None))

        assert status["is_running"] is False
        assert status["last_run"]["status"] == "completed"
        assert status["last_run"]["succeeded"] == 2

    def test_running_row_reports_running(self, db):
        repository.create_batch_run(db, total_keywords=4)
        db.commit()

        status = service.get_batch_status(db, collector=MagicMock(is_running=False, last_stats=None))

        assert status["is_running"] is True


class TestRunRankingBatch:
    """Keyword selection for a run."""

    @pytest.mark.asyncio
    async def test_restricts_to_given_ids(self, session_factory, make_keyword):
        wanted = make_keyword("party rentals")
        make_keyword("tent rental")
        collector = MagicMock(session_factory=session_factory)
        collector.run_batch = AsyncMock(return_value="stats")

        result = await service.run_ranking_batch(keyword_ids=[wanted.id], collector=collector)

        assert result == "stats"
        keywords = collector.run_batch.call_args.args[0]
        assert [k.id for k in keywords] == [wanted.id]

    @pytest.mark.asyncio
    async def test_defaults_to_all_active(self, session_factory):
        collector = MagicMock(session_factory=session_factory)
        collector.run_batch = AsyncMock(return_value="stats")

        await service.run_ranking_batch(collector=collector)

        collector.run_batch.assert_awaited_once_with(None)


# =============================================================================
# ENDPOINTS
# =============================================================================

class TestBatchEndpoints:
    """Batch status and manual trigger."""

    def test_status(self, client):
        with patch.object(service, "_collector", None):
            response = client.get("/api/rankings/batch/status")

        assert response.status_code == 200
        assert response.json() == {"is_running": False, "last_run": None}

    def test_start(self, client):
        collector = MagicMock(is_running=False)
        with patch.object(service, "get_collector", return_value=collector), \
                patch.object(service, "run_ranking_batch", new=AsyncMock()) as run:
            response = client.post("/api/rankings/batch/run")

        assert response.status_code == 202
        assert response.json()["status"] == "started"
        run.assert_awaited_once()

    def test_conflict_when_running_in_process(self, client):
        with patch.object(service, "get_collector", return_value=MagicMock(is_running=True)):
            response = client.post("/api/rankings/batch/run")

        assert response.status_code == 409

    def test_conflict_when_running_elsewhere(self, client, db):
        repository.create_batch_run(db, total_keywords=1)
        db.commit()

        with patch.object(service, "get_collector", return_value=MagicMock(is_running=False)):
            response = client.post("/api/rankings/batch/run")

        assert response.status_code == 409

    def test_not_configured(self, client):
        with patch.object(service, "get_collector", side_effect=ValueError("TARGET_DOMAIN is not configured")):
            response = client.post("/api/rankings/batch/run")

        assert response.status_code == 503


class TestReportCardEndpoint:
    """GET /report-card"""

    def test_report_card(self, client, ranked_keywords):
        response = client.get("/api/rankings/report-card", params={"period": "last30Days"})

        assert response.status_code == 200
        body = response.json()
        assert body["period"] == "last30Days"
        assert body["total_keywords"] == 2
        assert body["keyword_breakdown"]["not_found"] == 1

    def test_invalid_period(self, client):
        response = client.get("/api/rankings/report-card", params={"period": "lastDecade"})
        assert response.status_code == 400


class TestInsightEndpoints:
    """Insight generation, lookup and status updates."""

    def test_generate_then_cached(self, client, insight_cache, sample_report_card):
        first = client.post("/api/rankings/insights", json={"report_card": sample_report_card})
        second = client.post("/api/rankings/insights", json={"report_card": sample_report_card})

        assert first.status_code == 200
        assert first.json()["cached"] is False
        assert len(first.json()["insights"]) == 3
        assert second.json()["cached"] is True
        assert second.json()["session_id"] == first.json()["session_id"]
        assert insight_cache.generator.generate.await_count == 1

    def test_report_card_computed_when_omitted(self, client, insight_cache, ranked_keywords):
        response = client.post("/api/rankings/insights", json={"period": "last7Days"})

        assert response.status_code == 200
        assert response.json()["period"] == "last7Days"

    def test_invalid_analysis_type(self, client, insight_cache, sample_report_card):
        response = client.post(
            "/api/rankings/insights",
            json={"report_card": sample_report_card, "analysis_type": "poetry"},
        )
        assert response.status_code == 400

    @pytest.mark.parametrize("error,status", [
        (AnalysisRateLimitedError("slow down"), 429),
        (AnalysisUnavailableError("down"), 503),
        (AnalysisError("garbled"), 502),
    ])
    def test_generation_errors(self, client, insight_cache, sample_report_card, error, status):
        insight_cache.generator.generate = AsyncMock(side_effect=error)

        response = client.post("/api/rankings/insights", json={"report_card": sample_report_card})

        assert response.status_code == status

    def test_cached_session_served_without_api_key(self, client, fake_generator, sample_report_card):
        with patch.object(service, "_build_insight_generator", return_value=fake_generator):
            first = client.post("/api/rankings/insights", json={"report_card": sample_report_card})
        service.reset_services()

        missing_key = AnalysisUnavailableError("ANTHROPIC_API_KEY not provided")
        with patch.object(service, "_build_insight_generator", side_effect=missing_key) as build:
            cached = client.post("/api/rankings/insights", json={"report_card": sample_report_card})
            forced = client.post(
                "/api/rankings/insights",
                json={"report_card": sample_report_card, "force_regenerate": True},
            )

        assert first.status_code == 200
        assert cached.status_code == 200
        assert cached.json()["cached"] is True
        assert cached.json()["session_id"] == first.json()["session_id"]
        assert forced.status_code == 503
        build.assert_called_once()

    def test_get_and_update_insight(self, client, insight_cache, sample_report_card):
        created = client.post("/api/rankings/insights", json={"report_card": sample_report_card}).json()
        insight_id = created["insights"][0]["id"]

        fetched = client.get(f"/api/rankings/insights/{insight_id}")
        assert fetched.status_code == 200
        assert fetched.json()["status"] == "new"

        updated = client.patch(
            f"/api/rankings/insights/{insight_id}",
            json={"status": "completed", "actor": "sam@example.com", "notes": "Shipped"},
        )
        assert updated.status_code == 200
        assert updated.json()["completed_by"] == "sam@example.com"
        assert updated.json()["notes"] == "Shipped"

        reopened = client.patch(f"/api/rankings/insights/{insight_id}", json={"status": "new"})
        assert reopened.status_code == 400

    def test_insight_not_found(self, client):
        response = client.get(f"/api/rankings/insights/{uuid4()}")
        assert response.status_code == 404

    def test_update_not_found(self, client):
        response = client.patch(f"/api/rankings/insights/{uuid4()}", json={"status": "completed"})
        assert response.status_code == 404

    def test_malformed_id(self, client):
        response = client.get("/api/rankings/insights/not-a-uuid")
        assert response.status_code == 422

    def test_stats(self, client, insight_cache, sample_report_card):
        client.post("/api/rankings/insights", json={"report_card": sample_report_card})

        response = client.get("/api/rankings/insights/stats")

        assert response.status_code == 200
        assert response.json()["total"] == 3
        assert response.json()["high_priority"] == 2

    def test_session_history(self, client, insight_cache, sample_report_card):
        first = client.post("/api/rankings/insights", json={"report_card": sample_report_card}).json()
        second = client.post(
            "/api/rankings/insights",
            json={"report_card": sample_report_card, "force_regenerate": True},
        ).json()

        recent = client.get("/api/rankings/insights/sessions")
        history = client.get("/api/rankings/insights/sessions", params={"period": "last30Days"})

        assert recent.status_code == 200
        assert [s["id"] for s in recent.json()] == [second["session_id"]]
        assert len(recent.json()[0]["insights"]) == 3
        assert history.status_code == 200
        statuses = {s["id"]: s["status"] for s in history.json()}
        assert statuses == {first["session_id"]: "superseded", second["session_id"]: "active"}
        assert all(s["insights"] is None for s in history.json())

    def test_session_history_invalid_period(self, client):
        response = client.get("/api/rankings/insights/sessions", params={"period": "lastDecade"})
        assert response.status_code == 400

    def test_session_history_limit_bounds(self, client):
        response = client.get("/api/rankings/insights/sessions", params={"limit": 0})
        assert response.status_code == 422

    def test_session_stats(self, client, insight_cache, sample_report_card):
        client.post("/api/rankings/insights", json={"report_card": sample_report_card})
        client.post("/api/rankings/insights", json={"report_card": sample_report_card, "force_regenerate": True})

        response = client.get("/api/rankings/insights/sessions/stats")

        assert response.status_code == 200
        assert response.json()["total_sessions"] == 2
        assert response.json()["active_sessions"] == 1
        assert response.json()["superseded_sessions"] == 1
        assert response.json()["total_insights"] == 6


# =============================================================================
# SEARCH CONFIGURATION
# =============================================================================

def _diagnosing_collector(diagnostic=None):
    collector = MagicMock(is_running=False)
    collector.diagnose = AsyncMock(return_value=diagnostic or SearchDiagnostic(is_healthy=True))
    return collector


class TestDiagnoseService:
    """Test keyword selection."""

    @pytest.mark.asyncio
    async def test_given_keywords(self, db, make_keyword):
        make_keyword("tent rental")
        collector = _diagnosing_collector()

        result = await service.diagnose_search_configuration(db, [" party rentals ", ""], collector=collector)

        collector.diagnose.assert_awaited_once_with(["party rentals"])
        assert result["tested_keywords"] == ["party rentals"]
        assert result["diagnostic"]["is_healthy"] is True

    @pytest.mark.asyncio
    async def test_falls_back_to_three_active_keywords(self, db, make_keyword):
        for i, name in enumerate(["a", "b", "c", "d"]):
            make_keyword(name, created_at=datetime.utcnow() - timedelta(minutes=10 - i))
        make_keyword("retired", is_active=False)
        collector = _diagnosing_collector()

        result = await service.diagnose_search_configuration(db, None, collector=collector)

        assert result["tested_keywords"] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_falls_back_to_defaults(self, db):
        collector = _diagnosing_collector()

        result = await service.diagnose_search_configuration(db, [], collector=collector)

        assert result["tested_keywords"] == DEFAULT_TEST_KEYWORDS


class TestValidateEndpoints:
    """POST and GET /validate"""

    def test_diagnose(self, client):
        diagnostic = SearchDiagnostic(
            is_healthy=False,
            issues=['Keyword "bounce house rental" ranks suspiciously high at position 1'],
            test_results=[{"keyword": "bounce house rental", "position": 1, "warnings": []}],
        )
        collector = _diagnosing_collector(diagnostic)
        with patch.object(service, "get_collector", return_value=collector):
            response = client.post("/api/rankings/validate", json={"test_keywords": ["bounce house rental"]})

        assert response.status_code == 200
        body = response.json()
        assert body["diagnostic"]["is_healthy"] is False
        assert body["tested_keywords"] == ["bounce house rental"]
        assert body["timestamp"]

    def test_diagnose_without_body(self, client):
        collector = _diagnosing_collector()
        with patch.object(service, "get_collector", return_value=collector):
            response = client.post("/api/rankings/validate")

        assert response.status_code == 200
        assert response.json()["tested_keywords"] == DEFAULT_TEST_KEYWORDS

    def test_busy(self, client):
        collector = _diagnosing_collector()
        collector.diagnose = AsyncMock(side_effect=BatchAlreadyRunningError())
        with patch.object(service, "get_collector", return_value=collector):
            response = client.post("/api/rankings/validate", json={})

        assert response.status_code == 409

    def test_not_configured(self, client):
        with patch.object(service, "get_collector", side_effect=ValueError("TARGET_DOMAIN is not configured")):
            response = client.post("/api/rankings/validate", json={})

        assert response.status_code == 503

    def test_guidance(self, client):
        response = client.get("/api/rankings/validate")

        assert response.status_code == 200
        guidance = response.json()["guidance"]
        assert [item["id"] for item in guidance["checklist_items"]][:2] == ["cse_web_search", "cse_site_restrictions"]
        assert len(guidance["common_issues"]) == 3
        assert guidance["configuration_steps"]
