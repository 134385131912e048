"""Pydantic schemas for records and coordinator state."""

from .record import NOT_FOUND, Record
from .state import CoordinatorState, QueuedItem, RunPhase, RunStats

__all__ = [
    "NOT_FOUND",
    "Record",
    "CoordinatorState",
    "QueuedItem",
    "RunPhase",
    "RunStats",
]
