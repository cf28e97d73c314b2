"""
URL and Domain Normalization

Shared matching rules for search results, the tracked site and managed
competitors:
- scheme and leading "www." are ignored
- matching is case-insensitive
- subdomains of the tracked site count as the tracked site
"""

import re
from typing import Optional
from urllib.parse import urlsplit

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


def normalize_url(url: Optional[str]) -> str:
    """
    Normalize a URL for containment matching.

    "https://www.Example.com/path/" -> "example.com/path"
    """
    if not url:
        return ""

    normalized = url.strip().lower()
    normalized = _SCHEME_RE.sub("", normalized)
    if normalized.startswith("www."):
        normalized = normalized[4:]

    return normalized.rstrip("/")


def extract_domain(url: Optional[str]) -> str:
    """
    Extract the bare host from a URL or domain string.

    "https://www.example.com/page?q=1" -> "example.com"
    """
    if not url:
        return ""

    candidate = url.strip()
    if not _SCHEME_RE.match(candidate):
        candidate = f"http://{candidate}"

    try:
        host = urlsplit(candidate).hostname or ""
    except ValueError:
        host = normalize_url(url).split("/", 1)[0]

    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def is_same_site(url: Optional[str], target_domain: Optional[str]) -> bool:
    """Check whether a result URL belongs to the target domain (or a subdomain of it)."""
    target = extract_domain(target_domain)
    if not target:
        return False

    host = extract_domain(url)
    return host == target or host.endswith("." + target)


def url_contains(result_url: Optional[str], competitor_url: Optional[str]) -> bool:
    """
    Competitor matching used by the report card.

    The normalized competitor URL must be a substring of the normalized result URL.
    """
    needle = normalize_url(competitor_url)
    if not needle:
        return False
    return needle in normalize_url(result_url)
