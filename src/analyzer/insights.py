"""
Insight Generator

Asks Claude to analyze a ranking report card and parses the answer into
structured insights.

Analysis types:
- insights:    prioritized, actionable findings across the whole report
- summary:     executive summary with a few headline findings
- competitive: competitor gaps and how to close them
- predictive:  where rankings are heading if nothing changes
- anomalies:   unusual movements worth investigating
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from src.database.models import InsightCategory, InsightPriority, InsightType
from src.utils.errors import InvalidInputError

from .client import AnalysisError, ClaudeClient, TokenUsage

logger = logging.getLogger(__name__)


ANALYSIS_TYPES = ["insights", "summary", "competitive", "predictive", "anomalies"]

MAX_INSIGHTS = 10

SYSTEM_PROMPT = """You are a senior SEO analyst reviewing search ranking data for a local business website.

NEVER:
- Invent keywords, positions or competitors that are not in the data
- Give generic advice that would apply to any website

ALWAYS:
- Reference specific keywords and positions from the report card
- Make every action item concrete enough to start this week
- Answer with a single JSON document and nothing else"""

ANALYSIS_FOCUS = {
    "insights": "Identify the most valuable, actionable insights across rankings, competitors and trends.",
    "summary": "Write an executive summary of overall search performance with the three most important findings.",
    "competitive": "Focus on competitor gaps: where competitors outrank the site and which gaps are easiest to close.",
    "predictive": "Project where rankings are heading over the next 30-90 days based on the trends and growth score.",
    "anomalies": "Look for unusual or inconsistent ranking movements that may indicate technical or indexing problems.",
}

OUTPUT_FORMAT = """Respond with JSON in exactly this shape:
```json
{
  "executive_summary": "2-3 sentences for a business owner",
  "summary": "one paragraph of supporting detail",
  "insights": [
    {
      "type": "opportunity | warning | trend | recommendation",
      "priority": "high | medium | low",
      "category": "ranking | competitive | technical | content | performance",
      "title": "short headline",
      "message": "what is happening and why it matters",
      "affected_keywords": ["keyword"],
      "action_items": ["concrete step"],
      "confidence_score": 0.0
    }
  ]
}
```"""


@dataclass
class InsightRequest:
    """What to analyze."""
    report_card: Dict[str, Any]
    analysis_type: str = "insights"
    focus_areas: Optional[List[str]] = None


@dataclass
class GeneratedInsight:
    type: str
    priority: str
    category: str
    title: str
    message: str
    affected_keywords: List[str] = field(default_factory=list)
    action_items: List[str] = field(default_factory=list)
    confidence_score: float = 0.5

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "priority": self.priority,
            "category": self.category,
            "title": self.title,
            "message": self.message,
            "affected_keywords": list(self.affected_keywords),
            "action_items": list(self.action_items),
            "confidence_score": self.confidence_score,
        }


@dataclass
class GeneratedInsights:
    """Parsed generator output."""
    insights: List[GeneratedInsight]
    executive_summary: str
    summary: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)


def validate_analysis_type(analysis_type: Optional[str]) -> str:
    analysis_type = analysis_type or "insights"
    if analysis_type not in ANALYSIS_TYPES:
        raise InvalidInputError(
            f"Invalid analysis type '{analysis_type}'. Expected one of: {', '.join(ANALYSIS_TYPES)}",
            field="analysis_type",
        )
    return analysis_type


def build_prompt(request: InsightRequest) -> str:
    """User prompt for one analysis request."""
    focus = ANALYSIS_FOCUS[request.analysis_type]
    report_json = json.dumps(request.report_card, indent=2, default=str)

    sections = [
        "# RANKING REPORT CARD",
        f"```json\n{report_json}\n```",
        "# TASK",
        focus,
    ]
    if request.focus_areas:
        sections.append("Pay particular attention to: " + ", ".join(request.focus_areas))
    sections.append(f"Return at most {MAX_INSIGHTS} insights, most important first.")
    sections.append(OUTPUT_FORMAT)

    return "\n\n".join(sections)


def _enum_value(value: Any, enum_cls, default):
    values = {member.value for member in enum_cls}
    if isinstance(value, str) and value.strip().lower() in values:
        return value.strip().lower()
    return default.value


def _string_list(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


def _confidence(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.5
    return min(1.0, max(0.0, score))


def extract_json(output: str) -> Dict[str, Any]:
    """
    Pull the JSON document out of a model answer.

    Tries fenced ```json blocks first, then the outermost {...} span.
    """
    candidates = re.findall(r"```(?:json)?\s*(\{.*?\})\s*```", output, re.DOTALL)

    start = output.find("{")
    end = output.rfind("}")
    if start != -1 and end > start:
        candidates.append(output[start:end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            return parsed

    raise AnalysisError("Insight generator returned output that is not valid JSON")


def parse_insights(data: Dict[str, Any]) -> List[GeneratedInsight]:
    insights = []
    for item in data.get("insights") or []:
        if not isinstance(item, dict):
            continue
        title = str(item.get("title") or "").strip()
        message = str(item.get("message") or "").strip()
        if not title or not message:
            continue

        insights.append(GeneratedInsight(
            type=_enum_value(item.get("type"), InsightType, InsightType.RECOMMENDATION),
            priority=_enum_value(item.get("priority"), InsightPriority, InsightPriority.MEDIUM),
            category=_enum_value(item.get("category"), InsightCategory, InsightCategory.RANKING),
            title=title[:500],
            message=message,
            affected_keywords=_string_list(item.get("affected_keywords") or item.get("affectedKeywords")),
            action_items=_string_list(item.get("action_items") or item.get("actionItems")),
            confidence_score=_confidence(item.get("confidence_score", item.get("confidenceScore"))),
        ))

    return insights[:MAX_INSIGHTS]


class InsightGenerator:
    """
    Claude-backed insight generator.

    Usage:
        generator = InsightGenerator(ClaudeClient())
        result = await generator.generate(InsightRequest(report_card=card.to_dict()))
    """

    MAX_OUTPUT_TOKENS = 4000
    TEMPERATURE = 0.3

    def __init__(self, client: ClaudeClient):
        self.client = client

    async def generate(self, request: InsightRequest) -> GeneratedInsights:
        """
        Run one analysis.

        Raises:
            AnalysisRateLimitedError, AnalysisUnavailableError: from the client
            AnalysisError: the answer could not be parsed
        """
        validate_analysis_type(request.analysis_type)
        logger.info(f"Generating '{request.analysis_type}' insights")

        response = await self.client.analyze(
            prompt=build_prompt(request),
            system=SYSTEM_PROMPT,
            max_tokens=self.MAX_OUTPUT_TOKENS,
            temperature=self.TEMPERATURE,
        )

        data = extract_json(response.content)
        insights = parse_insights(data)
        executive_summary = str(data.get("executive_summary") or data.get("executiveSummary") or "").strip()
        summary = str(data.get("summary") or executive_summary).strip()

        logger.info(f"Parsed {len(insights)} insights ({response.usage.total_tokens} tokens)")

        return GeneratedInsights(
            insights=insights,
            executive_summary=executive_summary,
            summary=summary,
            model=response.model,
            usage=response.usage,
        )
