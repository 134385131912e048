"""Scraper utilities for rate limiting, duplicate matching, waiting and retries."""

from .rate_limiter import RateLimiter
from .normalizer import (
    DuplicateMatcher,
    is_duplicate,
    normalize_url,
    normalize_name,
    extract_slug,
    page_number_from_url,
)
from .retry import call_with_retry, transient_retrying
from .waiting import wait_for_condition


__all__ = [
    # Rate limiting
    "RateLimiter",
    # Duplicate matching
    "DuplicateMatcher",
    "is_duplicate",
    "normalize_url",
    "normalize_name",
    "extract_slug",
    "page_number_from_url",
    # Retry helpers
    "call_with_retry",
    "transient_retrying",
    # Waiting
    "wait_for_condition",
]
