"""Collaborator interfaces used by the scraping coordinator.

Site-specific adapters implement these against a real browser; tests
implement them with in-memory fakes. The coordinator only ever talks to
these abstractions.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List

from listscout.schemas.record import Record


@dataclass
class ItemLink:
    """A candidate entity found on a listing page."""

    url: str
    name: str = ""  # Best-effort display name, may be empty

    def __post_init__(self):
        """Validate data after initialization."""
        self.url = (self.url or "").strip()
        self.name = (self.name or "").strip()
        if not self.url:
            raise ValueError("url is required")


class ListingNavigator(ABC):
    """Drives the paginated listing page.

    Methods that talk to the page may raise TransientPageError (the page is
    not ready yet, retrying may help) or ContextLostError (the page is gone).
    """

    @abstractmethod
    async def current_url(self) -> str:
        """Return the URL the listing context is currently showing."""
        pass

    @abstractmethod
    async def extract_item_links(self) -> List[ItemLink]:
        """Enumerate entity links on the current listing page.

        Returns:
            Finite list of ItemLink, possibly empty
        """
        pass

    @abstractmethod
    async def has_next_page(self) -> bool:
        """Best-effort pagination hint. False negatives are expected."""
        pass

    @abstractmethod
    async def advance_to_next_page(self) -> bool:
        """Trigger navigation to the next results page.

        Returns:
            True if navigation was triggered, False when no next page exists
        """
        pass

    @abstractmethod
    async def get_current_page_number(self) -> int:
        """Page number detected from content, 1 when undetectable."""
        pass

    @abstractmethod
    async def wait_for_navigation(self, previous_url: str, timeout: float) -> bool:
        """Wait until the listing has moved away from previous_url.

        Returns:
            False on timeout (the caller continues optimistically)
        """
        pass

    @abstractmethod
    async def wait_until_ready(self, timeout: float) -> bool:
        """Wait until results are rendered and loading placeholders are gone."""
        pass


class DetailTab(ABC):
    """An opened detail page. Exactly one is open at a time."""

    url: str = ""

    @abstractmethod
    async def wait_for_load(self, timeout: float) -> bool:
        """Wait for load completion; False on timeout."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release the tab. Must be safe to call more than once."""
        pass


class DetailOpener(ABC):
    """Opens detail pages in a fresh, isolated tab."""

    @abstractmethod
    async def open(self, url: str) -> DetailTab:
        pass


class ItemExtractor(ABC):
    """Pulls structured fields out of a loaded detail page."""

    @abstractmethod
    async def extract_detail(self, tab: DetailTab) -> Record:
        """Extract a record from the detail tab.

        Missing fields default to the "N/A" sentinel; this never raises for
        a field that is simply absent.

        Raises:
            ExtractionError: If the page is fundamentally unreadable
            ContextLostError: If the tab was destroyed
        """
        pass
