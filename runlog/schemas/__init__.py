"""
Schemas for log events and the records normalized from them.

- RawEvent: one delivered log event (immutable)
- LogRun: the aggregate record shared by every event of a transaction
- LogEntry: the detail record produced for each event
- Tag / TagLink: tag registry entries and their associations
"""

from .log_event import (
    GOVERNOR_LIMITS,
    ENTRY_PAYLOAD_FIELDS,
    RUN_CONTEXT_FIELDS,
    EnrichmentState,
    LogEntry,
    LogRun,
    RawEvent,
    ReleaseInfo,
    Tag,
    TagEntityType,
    TagLink,
)

__all__ = [
    "GOVERNOR_LIMITS",
    "ENTRY_PAYLOAD_FIELDS",
    "RUN_CONTEXT_FIELDS",
    "EnrichmentState",
    "LogEntry",
    "LogRun",
    "RawEvent",
    "ReleaseInfo",
    "Tag",
    "TagEntityType",
    "TagLink",
]
