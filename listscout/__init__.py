"""listscout: paginated listing collection with resumable runs."""

__version__ = "0.1.0"
