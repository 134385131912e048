"""Key-value entries backing the record store."""

from typing import Any

from sqlalchemy import String
from sqlalchemy import JSON
from sqlalchemy.orm import Mapped, mapped_column

from listscout.models.base import Base, TimestampMixin


class KeyValueEntry(TimestampMixin, Base):
    """A single JSON document stored under a unique key.

    The store keeps exactly two logical documents here: the collected record
    list and the coordinator state. Each write replaces the whole value for
    its key.
    """

    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(
        String(100),
        primary_key=True,
        comment="Logical document name (e.g., 'records', 'coordinator_state')"
    )
    value: Mapped[Any] = mapped_column(
        JSON,
        nullable=True,
        comment="JSON document stored under this key"
    )

    def __repr__(self) -> str:
        return f"<KeyValueEntry(key='{self.key}', updated_at={self.updated_at})>"
