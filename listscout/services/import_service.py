"""Import service for merging externally supplied records into the store.

Accepts either a bare list of record-like objects or an object wrapping
them under ``records`` (older exports used ``companies``).
"""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import structlog

from listscout.config import SiteProfile
from listscout.core.exceptions import ImportFormatError
from listscout.schemas.record import NOT_FOUND, Record
from listscout.scrapers.store import RecordStore
from listscout.scrapers.utils.normalizer import DEFAULT_PROFILE

logger = structlog.get_logger(__name__)

_WRAPPER_KEYS = ("records", "companies")


@dataclass
class ImportResult:
    """Counts reported after an import."""

    total: int  # Entries in the payload
    valid: int  # Entries with a name or a url
    added: int  # Entries merged into the store
    skipped: int  # Valid entries rejected as duplicates


class ImportService:
    """Normalizes imported records and merges them through the duplicate matcher."""

    def __init__(self, store: RecordStore, profile: SiteProfile = DEFAULT_PROFILE):
        """Initialize import service.

        Args:
            store: Record store to merge into
            profile: Target site URL scheme used to complete scheme-less URLs
        """
        self.store = store
        self.profile = profile
        self.logger = logger.bind(service="import_service")

    def normalize_entry(self, entry: Any) -> Optional[Record]:
        """Turn one imported object into a Record.

        Returns:
            Record, or None when the entry has neither a name nor a url
        """
        if not isinstance(entry, dict):
            return None

        name = _clean(entry.get("name"))
        url = _clean(entry.get("url"))
        if not name and not url:
            return None

        if url and not url.startswith(("http://", "https://")) and self.profile.domain in url.lower():
            url = "https://" + url.lstrip("/")

        return Record(
            name=name or NOT_FOUND,
            website=_clean(entry.get("website")),
            industry=_clean(entry.get("industry")),
            phone=_clean(entry.get("phone")),
            headquarters=_clean(entry.get("headquarters")),
            url=url,
            timestamp=_clean(entry.get("timestamp")),
        )

    def extract_entries(self, payload: Union[List[Any], Dict[str, Any]]) -> List[Any]:
        """Unwrap the payload into a list of entries.

        Raises:
            ImportFormatError: If the payload is neither a list nor a wrapper object
        """
        if isinstance(payload, list):
            return payload
        if isinstance(payload, dict):
            for key in _WRAPPER_KEYS:
                if isinstance(payload.get(key), list):
                    return payload[key]
        raise ImportFormatError(
            "Expected a list of records or an object with a 'records' list"
        )

    async def import_payload(self, payload: Union[List[Any], Dict[str, Any]]) -> ImportResult:
        """Merge a decoded payload into the store.

        Returns:
            ImportResult with per-stage counts
        """
        entries = self.extract_entries(payload)
        records = [r for r in (self.normalize_entry(e) for e in entries) if r is not None]

        existing = await self.store.get_records()
        merged = list(existing)
        added = 0
        for record in records:
            reason = self.store.matcher.find_match(record, merged)
            if reason:
                self.logger.debug("import_duplicate", name=record.name, url=record.url, reason=reason)
                continue
            merged.append(record)
            added += 1

        if added:
            await self.store.save_records(merged)

        result = ImportResult(
            total=len(entries),
            valid=len(records),
            added=added,
            skipped=len(records) - added,
        )
        self.logger.info(
            "import_complete",
            total=result.total,
            valid=result.valid,
            added=result.added,
            skipped=result.skipped,
        )
        return result

    async def import_file(self, path: Union[str, Path]) -> ImportResult:
        """Read a JSON file and import it.

        Raises:
            ImportFormatError: If the file is not valid JSON or has the wrong shape
        """
        path = Path(path)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ImportFormatError(f"{path.name} is not valid JSON: {e}") from e
        return await self.import_payload(payload)


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()
