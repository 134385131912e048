"""Scraping system for collecting records from a paginated search listing.

This package provides:
- Collaborator interfaces (listing navigator, detail opener, item extractor)
- The scraping coordinator state machine and its command/event protocol
- The record store backing collected records and run checkpoints
- Utility modules for rate limiting, duplicate matching, waiting and retries
"""

from .base import (
    DetailOpener,
    DetailTab,
    ItemExtractor,
    ItemLink,
    ListingNavigator,
)
from .coordinator import ScrapingCoordinator
from .store import RecordStore

__all__ = [
    # Interfaces
    "DetailOpener",
    "DetailTab",
    "ItemExtractor",
    "ItemLink",
    "ListingNavigator",
    # Coordinator
    "ScrapingCoordinator",
    # Storage
    "RecordStore",
]
