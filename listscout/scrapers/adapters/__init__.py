"""Site-specific adapter implementations.

Each adapter implements the ListingNavigator, DetailOpener and ItemExtractor
interfaces from listscout.scrapers.base for one target site.
"""

from .linkedin import (
    LinkedInCompanyExtractor,
    PlaywrightDetailOpener,
    PlaywrightDetailTab,
    PlaywrightListingNavigator,
)

__all__ = [
    "LinkedInCompanyExtractor",
    "PlaywrightDetailOpener",
    "PlaywrightDetailTab",
    "PlaywrightListingNavigator",
]
