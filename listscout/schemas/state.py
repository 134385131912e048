"""Pydantic schemas for coordinator state and run statistics."""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class RunPhase(str, Enum):
    """Phases of the scraping coordinator state machine."""

    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    RECOVERING = "recovering"
    COMPLETING = "completing"


class QueuedItem(BaseModel):
    """A listing link waiting to be visited."""

    url: str
    name: str = ""


class CoordinatorState(BaseModel):
    """Machine state of a scraping run.

    Persisted after every transition that matters for resuming or reporting,
    so the last checkpoint survives a restart of the host process.
    """

    is_running: bool = False
    is_paused: bool = False
    phase: RunPhase = RunPhase.IDLE
    start_page: int = 1
    current_page: int = 1
    max_pages: int = 5
    processed_count: int = 0
    total_found_count: int = 0
    pending_queue: List[QueuedItem] = Field(default_factory=list)
    queue_cursor: int = 0
    errors: List[str] = Field(default_factory=list)
    last_updated: Optional[str] = None

    @property
    def pages_reached(self) -> int:
        """Number of listing pages traversed since the run started."""
        return max(0, self.current_page - self.start_page + 1)

    def stats(self) -> "RunStats":
        return RunStats(
            pages_reached=self.pages_reached,
            last_page=self.current_page,
            items_found=self.total_found_count,
            items_processed=self.processed_count,
            error_count=len(self.errors),
        )


class RunStats(BaseModel):
    """Summary reported when a run completes or is stopped."""

    pages_reached: int
    last_page: int
    items_found: int
    items_processed: int
    error_count: int
