"""
Run log exception hierarchy.

Foreground failures (persistence) propagate to the caller of the pipeline.
EnrichmentError is raised and handled inside the background enrichment task.
"""

from typing import Optional


class RunLogError(Exception):
    """Base exception for all run log failures."""


class PersistenceError(RunLogError):
    """Raised when the store rejects a write."""


class RunPersistenceError(PersistenceError):
    """Raised when the run upsert fails. Fatal for the batch."""


class EntryPersistenceError(PersistenceError):
    """Raised when entries or tag links fail to persist. The run stays persisted."""


class EnrichmentError(RunLogError):
    """Raised when the release status call or its response is unusable."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
