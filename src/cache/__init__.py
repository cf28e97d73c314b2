"""
RankWatch Insight Caching Layer

Insight sessions keyed by a content hash of the report card they analyzed,
so an unchanged report card never triggers a second generator call.

Usage:
    cache = InsightCache(InsightGenerator(ClaudeClient()))
    result = await cache.get_or_generate(db, report_card)
"""

from .insight_cache import (
    ALLOWED_TRANSITIONS,
    InsightCache,
    InsightResult,
    compute_report_card_hash,
    update_insight_status,
    record_to_dict,
    session_to_dict,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "InsightCache",
    "InsightResult",
    "compute_report_card_hash",
    "update_insight_status",
    "record_to_dict",
    "session_to_dict",
]
