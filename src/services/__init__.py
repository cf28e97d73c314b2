"""
RankWatch Services Layer

Business operations that combine the collector, the scoring engine,
the insight cache and the repository.
"""

from .rankings import (
    get_collector,
    get_insight_cache,
    reset_services,
    run_ranking_batch,
    get_batch_status,
    build_report_card,
    get_or_generate_insights,
    get_insight,
    update_insight_status,
    get_insight_stats,
)

__all__ = [
    "get_collector",
    "get_insight_cache",
    "reset_services",
    "run_ranking_batch",
    "get_batch_status",
    "build_report_card",
    "get_or_generate_insights",
    "get_insight",
    "update_insight_status",
    "get_insight_stats",
]
