"""SQLAlchemy models for listscout.

All models are imported here so table creation can discover them.
"""

from listscout.models.base import Base, TimestampMixin
from listscout.models.kv_entry import KeyValueEntry

__all__ = [
    "Base",
    "TimestampMixin",
    "KeyValueEntry",
]
