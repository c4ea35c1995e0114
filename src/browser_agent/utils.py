"""Small helpers shared across modules."""

from __future__ import annotations

import fnmatch
import logging
from typing import Iterable, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

NEW_TAB_URLS = ("about:blank", "chrome://new-tab-page/", "chrome://newtab/")


def get_host(url: str) -> Optional[str]:
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    return parsed.hostname.lower() if parsed.hostname else None


def match_url_with_domain_pattern(url: str, domain_pattern: str) -> bool:
    """Match ``url`` against a glob such as ``*.example.com`` or ``https://app.example.com``.

    Patterns without a scheme match http and https. ``*.example.com`` also matches
    the bare ``example.com``. Regular expressions are not supported.
    """
    if domain_pattern.strip() == "*":
        return True
    if url in NEW_TAB_URLS:
        return False
    try:
        parsed = urlparse(url)
    except ValueError:
        return False
    scheme = (parsed.scheme or "").lower()
    host = (parsed.hostname or "").lower()
    if not host:
        return False

    pattern = domain_pattern.strip().lower()
    if "://" in pattern:
        scheme_pattern, host_pattern = pattern.split("://", 1)
    else:
        scheme_pattern, host_pattern = "http*", pattern
    host_pattern = host_pattern.split("/", 1)[0].split(":", 1)[0]

    if not fnmatch.fnmatchcase(scheme, scheme_pattern):
        return False
    if fnmatch.fnmatchcase(host, host_pattern):
        return True
    if host_pattern.startswith("*.") and host == host_pattern[2:]:
        return True
    return False


def url_matches_any(url: str, patterns: Iterable[str]) -> bool:
    return any(match_url_with_domain_pattern(url, pattern) for pattern in patterns)


def truncate(text: str, limit: int, suffix: str = "...") -> str:
    if len(text) <= limit:
        return text
    return text[: max(0, limit - len(suffix))] + suffix
