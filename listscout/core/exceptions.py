"""Custom exception classes for the application."""


class ListScoutException(Exception):
    """Base exception for all listscout errors."""

    def __init__(self, message: str = "An unexpected error occurred"):
        self.message = message
        super().__init__(self.message)


class SetupError(ListScoutException):
    """Raised when a run is requested while not positioned on a listing page."""

    def __init__(self, message: str):
        super().__init__(f"Cannot start run: {message}")


class RunInProgressError(ListScoutException):
    """Raised when start is requested while a run is already active."""

    def __init__(self):
        super().__init__("A scraping run is already in progress")


class InvalidTransitionError(ListScoutException):
    """Raised when a command is not valid in the coordinator's current phase."""

    def __init__(self, command: str, phase: str):
        self.command = command
        self.phase = phase
        super().__init__(f"Command '{command}' is not valid while {phase}")


class TransientPageError(ListScoutException):
    """A page context could not be reached yet; retrying may succeed."""


class ContextLostError(ListScoutException):
    """The listing context is gone for good (closed or navigated off-domain)."""


class ExtractionError(ListScoutException):
    """Raised when a detail page cannot be read at all."""

    def __init__(self, url: str, message: str):
        self.url = url
        super().__init__(f"Extraction failed for {url}: {message}")


class ImportFormatError(ListScoutException):
    """Raised when an import payload has an unrecognised shape."""
