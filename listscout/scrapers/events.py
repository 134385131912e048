"""Command and event protocol of the scraping coordinator.

Commands flow in from a UI or CLI; events flow out to observers. Both are
closed sets of frozen dataclasses so dispatch can match on type.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Union

from listscout.schemas.record import Record
from listscout.schemas.state import RunStats


# ============================================================================
# COMMANDS
# ============================================================================

@dataclass(frozen=True)
class StartCommand:
    max_pages: int = 5


@dataclass(frozen=True)
class StopCommand:
    pass


@dataclass(frozen=True)
class PauseCommand:
    pass


@dataclass(frozen=True)
class ResumeCommand:
    pass


@dataclass(frozen=True)
class GetStateCommand:
    pass


@dataclass(frozen=True)
class GetRecordsCommand:
    pass


@dataclass(frozen=True)
class ClearAllCommand:
    pass


@dataclass(frozen=True)
class ReplaceRecordsCommand:
    records: List[Record] = field(default_factory=list)


Command = Union[
    StartCommand,
    StopCommand,
    PauseCommand,
    ResumeCommand,
    GetStateCommand,
    GetRecordsCommand,
    ClearAllCommand,
    ReplaceRecordsCommand,
]


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a dispatched command. Errors are reported, not raised."""

    success: bool
    data: Any = None
    error: Optional[str] = None


# ============================================================================
# EVENTS
# ============================================================================

@dataclass(frozen=True)
class Started:
    max_pages: int
    start_page: int


@dataclass(frozen=True)
class StatusUpdate:
    text: str


@dataclass(frozen=True)
class ItemsFoundOnPage:
    count: int
    page_number: int


@dataclass(frozen=True)
class ItemProcessed:
    record: Record
    processed_count: int
    skipped: bool = False


@dataclass(frozen=True)
class Completed:
    stats: RunStats


@dataclass(frozen=True)
class Stopped:
    stats: RunStats


@dataclass(frozen=True)
class Paused:
    pass


@dataclass(frozen=True)
class Resumed:
    pass


Event = Union[
    Started,
    StatusUpdate,
    ItemsFoundOnPage,
    ItemProcessed,
    Completed,
    Stopped,
    Paused,
    Resumed,
]

Observer = Callable[[Event], None]
