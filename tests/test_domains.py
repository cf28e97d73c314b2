"""
Tests for URL and domain normalization.
"""

import pytest

from src.utils.domains import extract_domain, is_same_site, normalize_url, url_contains


class TestNormalizeUrl:

    @pytest.mark.parametrize("url,expected", [
        ("https://www.Example.com/path/", "example.com/path"),
        ("http://example.com", "example.com"),
        ("WWW.example.com", "example.com"),
        ("  example.com/  ", "example.com"),
        ("", ""),
        (None, ""),
    ])
    def test_normalize(self, url, expected):
        assert normalize_url(url) == expected


class TestExtractDomain:

    @pytest.mark.parametrize("url,expected", [
        ("https://www.example.com/page?q=1", "example.com"),
        ("example.com", "example.com"),
        ("https://Shop.Example.com:8080/", "shop.example.com"),
        ("", ""),
    ])
    def test_extract(self, url, expected):
        assert extract_domain(url) == expected


class TestSiteMatching:

    def test_same_site_and_subdomains(self):
        assert is_same_site("https://www.example.com/a", "example.com")
        assert is_same_site("https://blog.example.com/a", "https://www.example.com")
        assert not is_same_site("https://notexample.com/", "example.com")
        assert not is_same_site("https://example.com.evil.net/", "example.com")
        assert not is_same_site("https://example.com/", None)

    def test_url_contains(self):
        assert url_contains("https://www.rival.com/services/tents", "http://rival.com")
        assert url_contains("https://rival.com/services/tents", "rival.com/services")
        assert not url_contains("https://other.com/", "rival.com")
        assert not url_contains("https://rival.com/", "")
