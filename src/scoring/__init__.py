"""
Scoring Module for RankWatch

Computes the ranking report card from stored snapshots.

Example Usage:
    from src.scoring import compute_report_card, get_date_range, latest_per_keyword

    start, end = get_date_range("last30Days")
    report = compute_report_card(
        keywords=keywords,
        latest_snapshots=latest_per_keyword(history),
        historical_snapshots=history,
        competitors=competitors,
        period="last30Days",
    )
    print(f"{report.overall_grade} ({report.overall_score})")
"""

from .report_card import (
    # Constants
    SCORE_WEIGHTS,
    POSITION_SCORE_TIERS,
    GRADE_THRESHOLDS,
    CONSISTENCY_STDDEV_PENALTY,
    GROWTH_POINTS_PER_POSITION,
    NOT_AVAILABLE,
    # Enums
    ReportPeriod,
    Trend,
    # Records
    KeywordRecord,
    SnapshotRecord,
    CompetitorRecord,
    ReportCard,
    # Functions
    compute_report_card,
    get_date_range,
    parse_period,
    latest_per_keyword,
    round_half_up,
    format_average_position,
    get_position_score,
    get_grade,
    calculate_consistency_score,
    calculate_growth_score,
    calculate_competitive_score,
    calculate_trends,
    analyze_competitors,
    diversify_opportunities,
    keyword_trend,
)

__all__ = [
    "SCORE_WEIGHTS",
    "POSITION_SCORE_TIERS",
    "GRADE_THRESHOLDS",
    "CONSISTENCY_STDDEV_PENALTY",
    "GROWTH_POINTS_PER_POSITION",
    "NOT_AVAILABLE",
    "ReportPeriod",
    "Trend",
    "KeywordRecord",
    "SnapshotRecord",
    "CompetitorRecord",
    "ReportCard",
    "compute_report_card",
    "get_date_range",
    "parse_period",
    "latest_per_keyword",
    "round_half_up",
    "format_average_position",
    "get_position_score",
    "get_grade",
    "calculate_consistency_score",
    "calculate_growth_score",
    "calculate_competitive_score",
    "calculate_trends",
    "analyze_competitors",
    "diversify_opportunities",
    "keyword_trend",
]
