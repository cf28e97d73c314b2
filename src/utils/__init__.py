"""Utility modules for RankWatch."""

from .config import Settings, get_settings
from .domains import extract_domain, is_same_site, normalize_url, url_contains
from .errors import InvalidInputError, NotFoundError

__all__ = [
    "Settings",
    "get_settings",
    # Domains
    "extract_domain",
    "is_same_site",
    "normalize_url",
    "url_contains",
    # Errors
    "InvalidInputError",
    "NotFoundError",
]
