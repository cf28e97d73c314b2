"""
RankWatch Insight Analysis

Claude-backed analysis of ranking report cards.
"""

from .client import (
    ClaudeClient,
    TokenUsage,
    AnalysisResponse,
    AnalysisError,
    AnalysisUnavailableError,
    AnalysisRateLimitedError,
)
from .insights import (
    ANALYSIS_TYPES,
    InsightGenerator,
    InsightRequest,
    GeneratedInsight,
    GeneratedInsights,
    validate_analysis_type,
)

__all__ = [
    "ClaudeClient",
    "TokenUsage",
    "AnalysisResponse",
    "AnalysisError",
    "AnalysisUnavailableError",
    "AnalysisRateLimitedError",
    "ANALYSIS_TYPES",
    "InsightGenerator",
    "InsightRequest",
    "GeneratedInsight",
    "GeneratedInsights",
    "validate_analysis_type",
]
