"""Pydantic schema for collected records."""

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from listscout.scrapers.base import ItemLink


NOT_FOUND = "N/A"

# Fields that fall back to the sentinel when a page does not expose them
SENTINEL_FIELDS = ("name", "website", "industry", "phone", "headquarters")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class Record(BaseModel):
    """A collected entity, one per detail page.

    Identity is decided by the duplicate matcher (URL, slug, name), never by
    field equality, so two Records with different timestamps can still be
    the same entity.
    """

    model_config = ConfigDict(extra="ignore")

    name: str = Field(NOT_FOUND, description="Display name of the entity")
    website: str = Field(NOT_FOUND, description="External website URL")
    industry: str = Field(NOT_FOUND)
    phone: str = Field(NOT_FOUND)
    headquarters: str = Field(NOT_FOUND)
    url: str = Field("", description="Canonical detail-page URL")
    timestamp: str = Field(default_factory=utc_now_iso, description="ISO 8601 creation time")

    @field_validator(*SENTINEL_FIELDS, mode="before")
    @classmethod
    def default_to_sentinel(cls, value: Any) -> str:
        if value is None:
            return NOT_FOUND
        text = str(value).strip()
        return text or NOT_FOUND

    @field_validator("url", mode="before")
    @classmethod
    def strip_url(cls, value: Any) -> str:
        return str(value).strip() if value else ""

    @field_validator("timestamp", mode="before")
    @classmethod
    def default_timestamp(cls, value: Any) -> str:
        if isinstance(value, datetime):
            return value.isoformat()
        if not value or not str(value).strip():
            return utc_now_iso()
        return str(value).strip()

    @classmethod
    def from_link(cls, link: "ItemLink") -> "Record":
        """Placeholder record for a listing link that was never visited."""
        return cls(name=link.name, url=link.url)

    def to_dict(self) -> Dict[str, str]:
        return self.model_dump(mode="json")

    def __str__(self) -> str:
        return f"{self.name} ({self.url or 'no url'})"
