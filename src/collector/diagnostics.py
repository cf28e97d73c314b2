"""
Search Configuration Diagnostics

A health check for the Programmable Search Engine behind the collector.
A handful of test keywords are looked up like a normal batch would, then the
positions and validation warnings are checked for the signature of an engine
restricted to a few sites (the tracked domain ranking 1-2 almost everywhere).
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


DEFAULT_TEST_KEYWORDS = [
    "bounce house rental",
    "party rental services",
    "inflatable rentals",
]
MAX_TEST_KEYWORDS = 3

# Share of tested keywords in positions 1-2 above which the engine looks restricted
SUSPICIOUS_TOP_POSITION_SHARE = 0.5

RESTRICTION_RECOMMENDATIONS = [
    "Check Google Programmable Search Engine settings",
    'Ensure "Search the entire web" is enabled',
    "Remove any site restrictions in the search engine configuration",
]

CONFIGURATION_GUIDANCE = {
    "checklist_items": [
        {
            "id": "cse_web_search",
            "title": "Verify 'Search the entire web' is enabled",
            "description": (
                "In Google Programmable Search Engine, ensure the 'Search the entire web' option is selected"
            ),
            "priority": "high",
        },
        {
            "id": "cse_site_restrictions",
            "title": "Remove site restrictions",
            "description": "Check the 'Sites to search' section and remove any specific site restrictions",
            "priority": "high",
        },
        {
            "id": "api_quotas",
            "title": "Check API quotas",
            "description": "Verify Google Custom Search API quotas are not exceeded",
            "priority": "medium",
        },
        {
            "id": "test_keywords",
            "title": "Test with diverse keywords",
            "description": "Run validation with keywords that should have diverse results",
            "priority": "medium",
        },
    ],
    "common_issues": [
        {
            "issue": "Target domain consistently ranks #1-2",
            "cause": "The search engine is likely restricted to specific sites",
            "solution": "Enable 'Search the entire web' in the search engine settings",
        },
        {
            "issue": "Low competitor diversity",
            "cause": "The search engine may be searching a limited set of domains",
            "solution": "Remove site restrictions in the search engine configuration",
        },
        {
            "issue": "All results from target domain",
            "cause": "The search engine is restricted to the target domain only",
            "solution": "Reconfigure the search engine to search the entire web",
        },
    ],
    "configuration_steps": [
        "Go to Google Programmable Search Engine (https://cse.google.com/)",
        "Select your search engine",
        "Click 'Setup' in the left sidebar",
        "In the 'Sites to search' section, select 'Search the entire web'",
        "Remove any specific sites from the list",
        "Save changes and test",
    ],
}


@dataclass
class SearchDiagnostic:
    """Outcome of a configuration health check."""
    is_healthy: bool
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    test_results: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_healthy": self.is_healthy,
            "issues": self.issues,
            "recommendations": self.recommendations,
            "test_results": self.test_results,
        }


def evaluate_test_results(results: List[Any]) -> SearchDiagnostic:
    """
    Judge the search configuration from per-keyword lookups.

    Args:
        results: KeywordResult-like objects (keyword, status, position,
                 validation_warnings, error)

    Keywords that could not be looked up are reported as issues and do not
    count toward the top-position share.
    """
    issues = []
    recommendations = []
    test_results = []

    for result in results:
        if result.status != "succeeded":
            issues.append(f'Failed to test keyword "{result.keyword}": {result.error}')
            continue

        test_results.append({
            "keyword": result.keyword,
            "position": result.position,
            "warnings": list(result.validation_warnings),
        })
        if 0 < result.position <= 2:
            issues.append(
                f'Keyword "{result.keyword}" ranks suspiciously high at position {result.position}'
            )

    tested = len(test_results)
    top_ranked = sum(1 for r in test_results if 0 < r["position"] <= 2)
    if tested and top_ranked / tested > SUSPICIOUS_TOP_POSITION_SHARE:
        issues.append(
            f"{top_ranked}/{tested} keywords rank in top 2 positions - likely search engine restriction"
        )
        recommendations.extend(RESTRICTION_RECOMMENDATIONS)

    diagnostic = SearchDiagnostic(
        is_healthy=not issues,
        issues=issues,
        recommendations=recommendations,
        test_results=test_results,
    )
    if diagnostic.is_healthy:
        logger.info(f"Search configuration healthy ({tested} keywords tested)")
    else:
        for issue in issues:
            logger.warning(f"Search configuration issue: {issue}")
    return diagnostic
