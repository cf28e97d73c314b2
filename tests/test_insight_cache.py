"""
Tests for the insight session cache.

These tests verify:
- Report card hashing ignores key order and the generation timestamp
- Cache hits never call the generator
- Forced regeneration and new data supersede older sessions
- Generation failures persist nothing
- Insight status transitions and statistics
"""

import asyncio
import copy
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
import pytest_asyncio

from src.analyzer.client import AnalysisError, AnalysisRateLimitedError, AnalysisUnavailableError
from src.cache import InsightCache, compute_report_card_hash, update_insight_status
from src.database import repository
from src.database.models import InsightRecord, InsightSession, InsightSessionStatus
from src.utils.errors import InvalidInputError, NotFoundError

from conftest import make_generated


def _active_sessions(db):
    return db.query(InsightSession).filter(InsightSession.status == InsightSessionStatus.ACTIVE.value).all()


class TestReportCardHash:
    """Content hashing."""

    def test_key_order_ignored(self, sample_report_card):
        reordered = dict(reversed(list(sample_report_card.items())))
        assert compute_report_card_hash(reordered) == compute_report_card_hash(sample_report_card)

    def test_generated_at_ignored(self, sample_report_card):
        later = dict(sample_report_card, generated_at="2025-01-01T00:00:00")
        assert compute_report_card_hash(later) == compute_report_card_hash(sample_report_card)

    def test_data_change_changes_hash(self, sample_report_card):
        changed = copy.deepcopy(sample_report_card)
        changed["metrics"]["visibility_score"] = 68
        assert compute_report_card_hash(changed) != compute_report_card_hash(sample_report_card)

    def test_hex_sha256(self, sample_report_card):
        digest = compute_report_card_hash(sample_report_card)
        assert len(digest) == 64
        int(digest, 16)

    def test_missing_report_card(self):
        with pytest.raises(InvalidInputError):
            compute_report_card_hash({})


class TestGetOrGenerate:
    """Cache lookups and generation."""

    @pytest.mark.asyncio
    async def test_first_call_generates(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)

        result = await cache.get_or_generate(db, sample_report_card)

        assert result.cached is False
        assert len(result.insights) == 3
        assert result.session.source_data_hash == compute_report_card_hash(sample_report_card)
        assert result.session.period == "last30Days"
        assert result.session.total_insights == 3
        assert result.session.insight_ids == [str(r.id) for r in result.insights]
        assert result.session.generation_metadata["token_usage"]["total_tokens"] == 1600
        assert [r.created_order for r in result.insights] == [0, 1, 2]
        assert all(r.status == "new" for r in result.insights)
        fake_generator.generate.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_second_call_hits_cache(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)
        first = await cache.get_or_generate(db, sample_report_card)

        # Regenerated report with a new timestamp and the same data
        again = dict(sample_report_card, generated_at="2024-03-16T08:00:00")
        second = await cache.get_or_generate(db, again)

        assert second.cached is True
        assert second.session.id == first.session.id
        assert [r.id for r in second.insights] == [r.id for r in first.insights]
        assert fake_generator.generate.await_count == 1
        assert cache.get_stats()["hits"] == 1
        assert cache.get_stats()["generations"] == 1

    @pytest.mark.asyncio
    async def test_force_regenerate_supersedes(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)
        first = await cache.get_or_generate(db, sample_report_card)

        second = await cache.get_or_generate(db, sample_report_card, force_regenerate=True)

        assert second.cached is False
        assert second.session.id != first.session.id
        assert fake_generator.generate.await_count == 2
        db.refresh(first.session)
        assert first.session.status == InsightSessionStatus.SUPERSEDED.value
        assert first.session.superseded_at is not None
        assert [s.id for s in _active_sessions(db)] == [second.session.id]

    @pytest.mark.asyncio
    async def test_new_data_supersedes_same_period(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)
        first = await cache.get_or_generate(db, sample_report_card)

        updated = copy.deepcopy(sample_report_card)
        updated["overall_score"] = 75
        second = await cache.get_or_generate(db, updated)

        assert second.cached is False
        db.refresh(first.session)
        assert first.session.status == InsightSessionStatus.SUPERSEDED.value
        assert len(_active_sessions(db)) == 1

    @pytest.mark.asyncio
    async def test_other_period_untouched(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)
        await cache.get_or_generate(db, sample_report_card)

        weekly = dict(sample_report_card, period="last7Days")
        await cache.get_or_generate(db, weekly)

        assert len(_active_sessions(db)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_requests_generate_once(self, db, sample_report_card):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_generate(request):
            started.set()
            await release.wait()
            return make_generated()

        generator = MagicMock()
        generator.generate = AsyncMock(side_effect=slow_generate)
        cache = InsightCache(generator)

        first = asyncio.create_task(cache.get_or_generate(db, sample_report_card))
        await started.wait()
        second = asyncio.create_task(cache.get_or_generate(db, sample_report_card))
        await asyncio.sleep(0)
        release.set()

        results = await asyncio.gather(first, second)

        assert generator.generate.await_count == 1
        assert sorted(r.cached for r in results) == [False, True]
        assert results[0].session.id == results[1].session.id

    @pytest.mark.asyncio
    async def test_invalid_analysis_type(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)
        with pytest.raises(InvalidInputError):
            await cache.get_or_generate(db, sample_report_card, analysis_type="poetry")
        fake_generator.generate.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_period(self, db, fake_generator, sample_report_card):
        card = dict(sample_report_card)
        del card["period"]
        with pytest.raises(InvalidInputError):
            await InsightCache(fake_generator).get_or_generate(db, card)


class TestGenerationFailures:
    """Nothing is persisted when generation fails."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("error", [
        AnalysisRateLimitedError("slow down", retry_after=30),
        AnalysisUnavailableError("down"),
        AnalysisError("garbled"),
    ])
    async def test_error_propagates(self, db, fake_generator, sample_report_card, error):
        fake_generator.generate = AsyncMock(side_effect=error)

        with pytest.raises(type(error)):
            await InsightCache(fake_generator).get_or_generate(db, sample_report_card)

        assert db.query(InsightSession).count() == 0
        assert db.query(InsightRecord).count() == 0

    @pytest.mark.asyncio
    async def test_failure_keeps_previous_session_active(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)
        first = await cache.get_or_generate(db, sample_report_card)
        fake_generator.generate = AsyncMock(side_effect=AnalysisUnavailableError("down"))

        with pytest.raises(AnalysisUnavailableError):
            await cache.get_or_generate(db, sample_report_card, force_regenerate=True)

        assert [s.id for s in _active_sessions(db)] == [first.session.id]

    @pytest.mark.asyncio
    async def test_timeout_is_unavailable(self, db, sample_report_card):
        async def hang(request):
            await asyncio.sleep(5)

        generator = MagicMock()
        generator.generate = AsyncMock(side_effect=hang)

        with pytest.raises(AnalysisUnavailableError):
            await InsightCache(generator, timeout=0.01).get_or_generate(db, sample_report_card)

        assert db.query(InsightSession).count() == 0


class TestHashLocks:
    """Per-hash locks only live while a request holds or waits on them."""

    @pytest.mark.asyncio
    async def test_lock_dropped_after_generation(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)

        await cache.get_or_generate(db, sample_report_card)
        weekly = dict(sample_report_card, period="last7Days")
        await cache.get_or_generate(db, weekly)

        assert cache._locks == {}
        assert cache._lock_users == {}

    @pytest.mark.asyncio
    async def test_lock_shared_then_dropped(self, db, sample_report_card):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow_generate(request):
            started.set()
            await release.wait()
            return make_generated()

        generator = MagicMock()
        generator.generate = AsyncMock(side_effect=slow_generate)
        cache = InsightCache(generator)

        first = asyncio.create_task(cache.get_or_generate(db, sample_report_card))
        await started.wait()
        second = asyncio.create_task(cache.get_or_generate(db, sample_report_card))
        await asyncio.sleep(0)

        assert len(cache._locks) == 1
        assert list(cache._lock_users.values()) == [2]

        release.set()
        await asyncio.gather(first, second)

        assert cache._locks == {}

    @pytest.mark.asyncio
    async def test_lock_dropped_after_failure(self, db, fake_generator, sample_report_card):
        fake_generator.generate = AsyncMock(side_effect=AnalysisUnavailableError("down"))
        cache = InsightCache(fake_generator)

        with pytest.raises(AnalysisUnavailableError):
            await cache.get_or_generate(db, sample_report_card)

        assert cache._locks == {}


class TestLazyGenerator:
    """The generator is only built when a generation is needed."""

    def test_requires_generator_or_factory(self):
        with pytest.raises(ValueError):
            InsightCache()

    @pytest.mark.asyncio
    async def test_cache_hit_never_builds_generator(self, db, fake_generator, sample_report_card):
        stored = await InsightCache(fake_generator).get_or_generate(db, sample_report_card)
        factory = MagicMock(side_effect=AnalysisUnavailableError("ANTHROPIC_API_KEY not provided"))

        result = await InsightCache(generator_factory=factory).get_or_generate(db, sample_report_card)

        assert result.cached is True
        assert result.session.id == stored.session.id
        factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_miss_builds_generator_once(self, db, fake_generator, sample_report_card):
        factory = MagicMock(return_value=fake_generator)
        cache = InsightCache(generator_factory=factory)

        await cache.get_or_generate(db, sample_report_card)
        await cache.get_or_generate(db, sample_report_card, force_regenerate=True)

        factory.assert_called_once()
        assert fake_generator.generate.await_count == 2

    @pytest.mark.asyncio
    async def test_unbuildable_generator_persists_nothing(self, db, sample_report_card):
        factory = MagicMock(side_effect=AnalysisUnavailableError("ANTHROPIC_API_KEY not provided"))

        with pytest.raises(AnalysisUnavailableError):
            await InsightCache(generator_factory=factory).get_or_generate(db, sample_report_card)

        assert db.query(InsightSession).count() == 0


class TestStatusTransitions:
    """User-driven insight status changes."""

    @pytest_asyncio.fixture
    async def insight_id(self, db, fake_generator, sample_report_card):
        result = await InsightCache(fake_generator).get_or_generate(db, sample_report_card)
        return result.insights[0].id

    @pytest.mark.asyncio
    async def test_progress_then_complete(self, db, insight_id):
        update_insight_status(db, insight_id, "in_progress", notes="Started")
        record = update_insight_status(db, str(insight_id), "completed", actor="sam@example.com")

        assert record.status == "completed"
        assert record.notes == "Started"
        assert record.completed_by == "sam@example.com"
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_dismiss(self, db, insight_id):
        record = update_insight_status(db, insight_id, "dismissed", actor="sam@example.com")

        assert record.dismissed_by == "sam@example.com"
        assert record.dismissed_at is not None

    @pytest.mark.asyncio
    async def test_terminal_status_rejected(self, db, insight_id):
        update_insight_status(db, insight_id, "completed")

        with pytest.raises(InvalidInputError):
            update_insight_status(db, insight_id, "new")
        with pytest.raises(InvalidInputError):
            update_insight_status(db, insight_id, "dismissed")

    @pytest.mark.asyncio
    async def test_cannot_move_back_to_new(self, db, insight_id):
        update_insight_status(db, insight_id, "in_progress")
        with pytest.raises(InvalidInputError):
            update_insight_status(db, insight_id, "new")

    @pytest.mark.asyncio
    async def test_unknown_status(self, db, insight_id):
        with pytest.raises(InvalidInputError):
            update_insight_status(db, insight_id, "archived")

    def test_missing_insight(self, db):
        with pytest.raises(NotFoundError):
            update_insight_status(db, uuid4(), "completed")

    def test_malformed_id(self, db):
        with pytest.raises(InvalidInputError):
            update_insight_status(db, "not-a-uuid", "completed")


class TestInsightStats:
    """Aggregates over active sessions."""

    @pytest.mark.asyncio
    async def test_counts(self, db, fake_generator, sample_report_card):
        result = await InsightCache(fake_generator).get_or_generate(db, sample_report_card)
        update_insight_status(db, result.insights[0].id, "completed")

        stats = repository.get_insight_stats(db)

        assert stats["total"] == 3
        assert stats["new"] == 2
        assert stats["completed"] == 1
        assert stats["high_priority"] == 2
        assert stats["average_confidence"] == 0.7

    @pytest.mark.asyncio
    async def test_superseded_sessions_excluded(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)
        await cache.get_or_generate(db, sample_report_card)
        await cache.get_or_generate(db, sample_report_card, force_regenerate=True)

        assert repository.get_insight_stats(db)["total"] == 3

    def test_empty(self, db):
        stats = repository.get_insight_stats(db)
        assert stats["total"] == 0
        assert stats["average_confidence"] == 0.0


class TestSessionHistory:
    """Reads over past insight sessions."""

    @pytest.mark.asyncio
    async def test_recent_sessions_are_active_only(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)
        await cache.get_or_generate(db, sample_report_card)
        monthly = await cache.get_or_generate(db, sample_report_card, force_regenerate=True)
        weekly = await cache.get_or_generate(db, dict(sample_report_card, period="last7Days"))

        recent = repository.get_recent_sessions(db)

        assert {s.id for s in recent} == {monthly.session.id, weekly.session.id}
        assert len(repository.get_recent_sessions(db, limit=1)) == 1

    @pytest.mark.asyncio
    async def test_sessions_by_period_include_superseded(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)
        first = await cache.get_or_generate(db, sample_report_card)
        second = await cache.get_or_generate(db, sample_report_card, force_regenerate=True)
        await cache.get_or_generate(db, dict(sample_report_card, period="last7Days"))

        history = {s.id: s.status for s in repository.get_sessions_by_period(db, "last30Days")}

        assert history == {
            first.session.id: InsightSessionStatus.SUPERSEDED.value,
            second.session.id: InsightSessionStatus.ACTIVE.value,
        }

    @pytest.mark.asyncio
    async def test_session_stats(self, db, fake_generator, sample_report_card):
        cache = InsightCache(fake_generator)
        await cache.get_or_generate(db, sample_report_card)
        await cache.get_or_generate(db, sample_report_card, force_regenerate=True)
        await cache.get_or_generate(db, dict(sample_report_card, period="last7Days"))

        stats = repository.get_session_stats(db)

        assert stats["total_sessions"] == 3
        assert stats["active_sessions"] == 2
        assert stats["superseded_sessions"] == 1
        assert stats["total_insights"] == 9
        assert stats["average_insights_per_session"] == 3.0
        assert stats["total_api_calls"] == 3
        # 1200 input + 400 output tokens per session
        assert stats["total_cost"] == pytest.approx(0.0288)

    def test_session_stats_empty(self, db):
        stats = repository.get_session_stats(db)

        assert stats["total_sessions"] == 0
        assert stats["average_insights_per_session"] == 0.0
        assert stats["average_generation_time_ms"] == 0
