"""
Ranking Report Card

Turns raw ranking snapshots into a graded report for a time window.

Metrics (all 0-100 except average position):
- Visibility: share of tracked keywords ranking in their latest snapshot
- Position score: tiered score of the average position
- Consistency: low position variance over the window scores high
- Growth: first vs. last valid position per keyword
- Competitive: how often we outrank managed competitors

Overall = visibility×0.30 + position×0.25 + consistency×0.20 + growth×0.15 + competitive×0.10

compute_report_card() is a pure function: same inputs, same report.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from statistics import pstdev
from typing import Any, Dict, Iterable, List, Optional, Tuple

from src.utils.domains import url_contains
from src.utils.errors import InvalidInputError

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

SCORE_WEIGHTS = {
    "visibility": 0.30,
    "position": 0.25,
    "consistency": 0.20,
    "growth": 0.15,
    "competitive": 0.10,
}

# (max average position, score)
POSITION_SCORE_TIERS = [
    (3, 100),
    (5, 90),
    (10, 75),
    (15, 60),
    (20, 45),
]
POSITION_SCORE_FLOOR = 30

GRADE_THRESHOLDS = [
    (90, "A"),
    (80, "B"),
    (70, "C"),
    (60, "D"),
]

CONSISTENCY_STDDEV_PENALTY = 10   # points lost per position of standard deviation
GROWTH_POINTS_PER_POSITION = 5
NEUTRAL_GROWTH_SCORE = 50
NEUTRAL_COMPETITIVE_SCORE = 50
TREND_CHANGE_THRESHOLD = 2

MAX_TOP_PERFORMERS = 5
MAX_NEEDS_ATTENTION = 5
MAX_OPPORTUNITIES = 10

NOT_AVAILABLE = "N/A"


class ReportPeriod(Enum):
    """Supported report windows"""
    LAST_7_DAYS = "last7Days"
    LAST_30_DAYS = "last30Days"
    LAST_90_DAYS = "last90Days"
    LAST_YEAR = "lastYear"
    ALL = "all"


class Trend(Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


PERIOD_DAYS = {
    ReportPeriod.LAST_7_DAYS: 7,
    ReportPeriod.LAST_30_DAYS: 30,
    ReportPeriod.LAST_90_DAYS: 90,
}

ALL_TIME_START = datetime(2000, 1, 1)


# =============================================================================
# INPUT RECORDS
# =============================================================================

@dataclass
class KeywordRecord:
    """A tracked keyword as seen by the engine."""
    id: Any
    keyword: str


@dataclass
class SnapshotRecord:
    """One ranking observation as seen by the engine."""
    keyword_id: Any
    keyword: str
    recorded_at: datetime
    position: int
    competitors: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class CompetitorRecord:
    """A managed competitor as seen by the engine."""
    name: str
    url: str


# =============================================================================
# OUTPUT
# =============================================================================

@dataclass
class ReportCard:
    """Computed report. Never the source of truth; recomputed on demand."""
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
    generated_at: Optional[datetime] = None

    @classmethod
    def empty(cls, period: str, generated_at: Optional[datetime] = None) -> "ReportCard":
        """Valid report for a tracking set with no keywords."""
        return cls(
            overall_grade=NOT_AVAILABLE,
            overall_score=0,
            total_keywords=0,
            metrics={
                "average_position": NOT_AVAILABLE,
                "visibility_score": 0,
                "competitive_score": 0,
                "consistency_score": 0,
                "growth_score": 0,
            },
            keyword_breakdown={"top3": 0, "top10": 0, "top20": 0, "not_found": 0},
            trends={
                "position_trend": Trend.STABLE.value,
                "visibility_trend": Trend.STABLE.value,
                "competitive_trend": Trend.STABLE.value,
            },
            top_performers=[],
            needs_attention=[],
            competitor_analysis={
                "total_competitors": 0,
                "outranked_percentage": 0,
                "opportunities": [],
            },
            period=period,
            generated_at=generated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall_grade": self.overall_grade,
            "overall_score": self.overall_score,
            "total_keywords": self.total_keywords,
            "metrics": dict(self.metrics),
            "keyword_breakdown": dict(self.keyword_breakdown),
            "trends": dict(self.trends),
            "top_performers": [dict(p) for p in self.top_performers],
            "needs_attention": [dict(n) for n in self.needs_attention],
            "competitor_analysis": {
                **self.competitor_analysis,
                "opportunities": [dict(o) for o in self.competitor_analysis.get("opportunities", [])],
            },
            "period": self.period,
            "generated_at": self.generated_at.isoformat() if self.generated_at else None,
        }


# =============================================================================
# HELPERS
# =============================================================================

def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from zero for positives (2.5 -> 3)."""
    return int(math.floor(value + 0.5))


def format_average_position(position_sum: int, count: int) -> str:
    """Mean position to one decimal, halves rounded up ([1, 2, 2, 4] -> "2.3")."""
    mean = Decimal(position_sum) / Decimal(count)
    return str(mean.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP))


def parse_period(value: Optional[str]) -> ReportPeriod:
    """Parse a period string; None means the default 30-day window."""
    if value is None:
        return ReportPeriod.LAST_30_DAYS
    if isinstance(value, ReportPeriod):
        return value
    try:
        return ReportPeriod(value)
    except ValueError:
        valid = ", ".join(p.value for p in ReportPeriod)
        raise InvalidInputError(f"Invalid period '{value}'. Expected one of: {valid}", field="period")


def get_date_range(period, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    Window for a report period.

    Starts at midnight of the first day, ends at the last microsecond of today.
    """
    period = parse_period(period)
    now = now or datetime.utcnow()
    end = now.replace(hour=23, minute=59, second=59, microsecond=999999)

    if period in PERIOD_DAYS:
        start = now - timedelta(days=PERIOD_DAYS[period])
    elif period == ReportPeriod.LAST_YEAR:
        try:
            start = now.replace(year=now.year - 1)
        except ValueError:
            # Feb 29
            start = now.replace(year=now.year - 1, day=28)
    else:
        start = ALL_TIME_START

    start = start.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, end


def latest_per_keyword(snapshots: Iterable[SnapshotRecord]) -> List[SnapshotRecord]:
    """Most recent snapshot for each keyword id."""
    latest: Dict[Any, SnapshotRecord] = {}
    for snapshot in snapshots:
        current = latest.get(snapshot.keyword_id)
        if current is None or snapshot.recorded_at > current.recorded_at:
            latest[snapshot.keyword_id] = snapshot
    return list(latest.values())


def get_position_score(average_position) -> int:
    if average_position == NOT_AVAILABLE or average_position is None:
        return 0
    position = float(average_position)
    for max_position, score in POSITION_SCORE_TIERS:
        if position <= max_position:
            return score
    return POSITION_SCORE_FLOOR


def get_grade(score: int) -> str:
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def _group_by_keyword(history: Iterable[SnapshotRecord]) -> Dict[Any, List[SnapshotRecord]]:
    grouped: Dict[Any, List[SnapshotRecord]] = {}
    for snapshot in history:
        grouped.setdefault(snapshot.keyword_id, []).append(snapshot)
    return grouped


def _valid_positions_by_date(snapshots: List[SnapshotRecord]) -> List[int]:
    ordered = sorted(snapshots, key=lambda s: s.recorded_at)
    return [s.position for s in ordered if s.position > 0]


def _find_competitor(snapshot: SnapshotRecord, competitor: CompetitorRecord) -> Optional[Dict[str, Any]]:
    for entry in snapshot.competitors or []:
        if url_contains(entry.get("url"), competitor.url):
            return entry
    return None


# =============================================================================
# METRICS
# =============================================================================

def calculate_consistency_score(history: List[SnapshotRecord], keywords: List[KeywordRecord]) -> int:
    """
    Mean per-keyword consistency across all tracked keywords.

    A keyword scores max(0, 100 - 10 × stddev) of its valid positions, or 0
    with fewer than two valid observations.
    """
    if not history or not keywords:
        return 0

    grouped = _group_by_keyword(history)
    total = 0.0
    for keyword in keywords:
        positions = [s.position for s in grouped.get(keyword.id, []) if s.position > 0]
        if len(positions) < 2:
            continue
        total += max(0.0, 100 - pstdev(positions) * CONSISTENCY_STDDEV_PENALTY)

    return round_half_up(total / len(keywords))


def calculate_growth_score(history: List[SnapshotRecord]) -> int:
    """Mean per-keyword growth; 50 when no keyword has two valid observations."""
    scores = []
    for snapshots in _group_by_keyword(history).values():
        positions = _valid_positions_by_date(snapshots)
        if len(positions) < 2:
            continue
        improvement = positions[0] - positions[-1]
        scores.append(min(100, max(0, NEUTRAL_GROWTH_SCORE + improvement * GROWTH_POINTS_PER_POSITION)))

    if not scores:
        return NEUTRAL_GROWTH_SCORE
    return round_half_up(sum(scores) / len(scores))


def _compare_competitors(latest: List[SnapshotRecord], competitors: List[CompetitorRecord]):
    """
    Head-to-head comparisons for keywords we rank for.

    Returns (comparisons, wins, opportunities) where each opportunity is a
    (keyword, competitor) pair the competitor wins or ties.
    """
    comparisons = 0
    wins = 0
    opportunities = []

    for snapshot in latest:
        if snapshot.position <= 0:
            continue
        for competitor in competitors:
            entry = _find_competitor(snapshot, competitor)
            if entry is None:
                continue
            comparisons += 1
            their_position = entry.get("position", 0)
            if snapshot.position < their_position:
                wins += 1
            else:
                opportunities.append({
                    "keyword": snapshot.keyword,
                    "competitor": competitor.name,
                    "your_position": snapshot.position,
                    "competitor_position": their_position,
                    "gap": their_position - snapshot.position,
                })

    return comparisons, wins, opportunities


def calculate_competitive_score(latest: List[SnapshotRecord], competitors: List[CompetitorRecord]) -> int:
    if not competitors or not latest:
        return NEUTRAL_COMPETITIVE_SCORE
    comparisons, wins, _ = _compare_competitors(latest, competitors)
    if comparisons == 0:
        return NEUTRAL_COMPETITIVE_SCORE
    return round_half_up(wins / comparisons * 100)


def diversify_opportunities(opportunities: List[Dict[str, Any]], limit: int = MAX_OPPORTUNITIES) -> List[Dict[str, Any]]:
    """Keep the smallest-gap opportunity per keyword, then the `limit` smallest overall."""
    best: Dict[str, Dict[str, Any]] = {}
    for opportunity in opportunities:
        current = best.get(opportunity["keyword"])
        if current is None or opportunity["gap"] < current["gap"]:
            best[opportunity["keyword"]] = opportunity

    return sorted(best.values(), key=lambda o: o["gap"])[:limit]


def analyze_competitors(latest: List[SnapshotRecord], competitors: List[CompetitorRecord]) -> Dict[str, Any]:
    comparisons, wins, opportunities = _compare_competitors(latest, competitors)
    return {
        "total_competitors": len(competitors),
        "outranked_percentage": round_half_up(wins / comparisons * 100) if comparisons else 0,
        "opportunities": diversify_opportunities(opportunities),
    }


def keyword_trend(snapshots: List[SnapshotRecord]) -> str:
    """improving / declining when the position moved by more than two over the window."""
    positions = _valid_positions_by_date(snapshots)
    if len(positions) < 2:
        return Trend.STABLE.value

    change = positions[0] - positions[-1]
    if change > TREND_CHANGE_THRESHOLD:
        return Trend.IMPROVING.value
    if change < -TREND_CHANGE_THRESHOLD:
        return Trend.DECLINING.value
    return Trend.STABLE.value


def _direction(recent: Optional[float], older: Optional[float], lower_is_better: bool) -> str:
    if recent is None or older is None or recent == older:
        return Trend.STABLE.value
    improved = recent < older if lower_is_better else recent > older
    return Trend.IMPROVING.value if improved else Trend.DECLINING.value


def _average_position(snapshots: List[SnapshotRecord]) -> Optional[float]:
    positions = [s.position for s in snapshots if s.position > 0]
    return sum(positions) / len(positions) if positions else None


def _visibility_share(snapshots: List[SnapshotRecord]) -> Optional[float]:
    if not snapshots:
        return None
    return sum(1 for s in snapshots if s.position > 0) / len(snapshots)


def _win_rate(snapshots: List[SnapshotRecord], competitors: List[CompetitorRecord]) -> Optional[float]:
    comparisons, wins, _ = _compare_competitors(snapshots, competitors)
    return wins / comparisons if comparisons else None


def calculate_trends(history: List[SnapshotRecord], competitors: List[CompetitorRecord]) -> Dict[str, str]:
    """
    Compare the newer half of the window with the older half.

    History is split by recency; a half with nothing to measure reads as stable.
    """
    ordered = sorted(history, key=lambda s: s.recorded_at, reverse=True)
    middle = len(ordered) // 2
    recent, older = ordered[:middle], ordered[middle:]

    return {
        "position_trend": _direction(_average_position(recent), _average_position(older), lower_is_better=True),
        "visibility_trend": _direction(_visibility_share(recent), _visibility_share(older), lower_is_better=False),
        "competitive_trend": _direction(
            _win_rate(recent, competitors), _win_rate(older, competitors), lower_is_better=False
        ),
    }


# =============================================================================
# REPORT CARD
# =============================================================================

def compute_report_card(
    keywords: List[KeywordRecord],
    latest_snapshots: List[SnapshotRecord],
    historical_snapshots: List[SnapshotRecord],
    competitors: List[CompetitorRecord],
    period,
    generated_at: Optional[datetime] = None,
) -> ReportCard:
    """
    Compute the report card for one window.

    Args:
        keywords: Active tracked keywords
        latest_snapshots: Latest snapshot per keyword within the window
        historical_snapshots: Every snapshot within the window
        competitors: Active managed competitors
        period: ReportPeriod or its string value
        generated_at: Timestamp stamped on the report (excluded from hashing)

    Returns:
        ReportCard (ReportCard.empty() when there are no keywords)
    """
    period_value = parse_period(period).value

    if not keywords:
        return ReportCard.empty(period_value, generated_at)

    latest_by_keyword = {s.keyword_id: s for s in latest_snapshots}
    history_by_keyword = _group_by_keyword(historical_snapshots)

    breakdown = {"top3": 0, "top10": 0, "top20": 0, "not_found": 0}
    performance = []
    position_sum = 0
    ranked = 0

    for keyword in keywords:
        snapshot = latest_by_keyword.get(keyword.id)
        position = snapshot.position if snapshot and snapshot.position else 0

        if position > 0:
            ranked += 1
            position_sum += position
            if position <= 3:
                breakdown["top3"] += 1
            elif position <= 10:
                breakdown["top10"] += 1
            elif position <= 20:
                breakdown["top20"] += 1
        else:
            breakdown["not_found"] += 1

        performance.append((keyword, position))

    average_position = format_average_position(position_sum, ranked) if ranked else NOT_AVAILABLE
    visibility_score = round_half_up(ranked / len(keywords) * 100)
    consistency_score = calculate_consistency_score(historical_snapshots, keywords)
    growth_score = calculate_growth_score(historical_snapshots)

    # Only keywords still tracked take part in competitor comparisons
    tracked_latest = [latest_by_keyword[k.id] for k in keywords if k.id in latest_by_keyword]
    competitive_score = calculate_competitive_score(tracked_latest, competitors)

    overall_score = round_half_up(
        visibility_score * SCORE_WEIGHTS["visibility"]
        + get_position_score(average_position) * SCORE_WEIGHTS["position"]
        + consistency_score * SCORE_WEIGHTS["consistency"]
        + growth_score * SCORE_WEIGHTS["growth"]
        + competitive_score * SCORE_WEIGHTS["competitive"]
    )

    ranked_keywords = sorted(
        [(k, p) for k, p in performance if p > 0],
        key=lambda item: item[1],
    )
    top_performers = [
        {
            "keyword": keyword.keyword,
            "position": position,
            "trend": keyword_trend(history_by_keyword.get(keyword.id, [])),
        }
        for keyword, position in ranked_keywords[:MAX_TOP_PERFORMERS]
    ]

    needs_attention = [
        {
            "keyword": keyword.keyword,
            "position": position,
            "issue": "Not ranking" if position == 0 else "Low position",
            "trend": keyword_trend(history_by_keyword.get(keyword.id, [])),
        }
        for keyword, position in performance
        if position == 0 or position > 20
    ][:MAX_NEEDS_ATTENTION]

    report = ReportCard(
        overall_grade=get_grade(overall_score),
        overall_score=overall_score,
        total_keywords=len(keywords),
        metrics={
            "average_position": average_position,
            "visibility_score": visibility_score,
            "competitive_score": competitive_score,
            "consistency_score": consistency_score,
            "growth_score": growth_score,
        },
        keyword_breakdown=breakdown,
        trends=calculate_trends(historical_snapshots, competitors),
        top_performers=top_performers,
        needs_attention=needs_attention,
        competitor_analysis=analyze_competitors(tracked_latest, competitors),
        period=period_value,
        generated_at=generated_at,
    )

    logger.debug(
        f"Report card ({period_value}): {report.overall_grade} {report.overall_score}, "
        f"{ranked}/{len(keywords)} keywords ranked"
    )
    return report
