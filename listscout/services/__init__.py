"""Services operating on the record store outside of a scraping run."""

from listscout.services.import_service import ImportResult, ImportService

__all__ = [
    "ImportResult",
    "ImportService",
]
