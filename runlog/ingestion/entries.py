"""
Entry normalization.

Maps every RawEvent of a batch to a LogEntry owned by the batch's run, then
persists the entries with one bulk insert.
"""

import logging
import re
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from runlog.ingestion.errors import EntryPersistenceError
from runlog.ingestion.persist import LogStore
from runlog.ingestion.tags import TagAccumulator
from runlog.schemas.log_event import ENTRY_PAYLOAD_FIELDS, LogEntry, RawEvent

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_EPOCH_MILLIS = re.compile(r"^-?\d+$")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_timestamp_string(value: str) -> Optional[datetime]:
    """
    Parse the string encoding of an event timestamp.

    Accepts epoch milliseconds ("1700000000123") or ISO-8601
    ("2024-06-15T20:00:00.123Z"). Naive values are read as UTC.

    Returns:
        The parsed datetime, or None when the string is not a timestamp
    """
    value = value.strip()
    if _EPOCH_MILLIS.match(value):
        try:
            return _EPOCH + timedelta(milliseconds=int(value))
        except OverflowError:
            return None
    try:
        return _as_utc(datetime.fromisoformat(value.replace("Z", "+00:00")))
    except ValueError:
        return None


def resolve_timestamp(event: RawEvent) -> datetime:
    """
    Resolve the timestamp of an event.

    The string encoding wins when present, because the native field loses
    sub-second precision on the way through the feed.

    Raises:
        ValueError: If neither encoding yields a timestamp
    """
    if event.timestamp_string:
        parsed = parse_timestamp_string(event.timestamp_string)
        if parsed is not None:
            return parsed
        logger.warning(
            f"Unparsable timestamp_string '{event.timestamp_string}' in transaction "
            f"{event.transaction_id}, using native timestamp"
        )

    if event.timestamp is None:
        raise ValueError(f"Event in transaction {event.transaction_id} has no timestamp")
    return _as_utc(event.timestamp)


def split_tags(value: Optional[str]) -> List[str]:
    """Split a comma-delimited tag string into unique, trimmed, non-empty names."""
    if not value or not value.strip():
        return []

    names: List[str] = []
    for token in value.split(","):
        token = token.strip()
        if token and token not in names:
            names.append(token)
    return names


class EntryNormalizer:
    """Builds and persists one LogEntry per RawEvent."""

    def __init__(self, store: LogStore):
        self.store = store

    def build_entry(self, event: RawEvent, log_run_id: int) -> LogEntry:
        """Map one event to its entry, copying the payload fields verbatim."""
        return LogEntry(
            log_run_id=log_run_id,
            timestamp=resolve_timestamp(event),
            payload={f: getattr(event, f) for f in ENTRY_PAYLOAD_FIELDS},
            tag_names=split_tags(event.tags),
        )

    def normalize(
        self,
        events: List[RawEvent],
        log_run_id: int,
        accumulator: TagAccumulator,
    ) -> List[LogEntry]:
        """
        Build entries for the whole batch and insert them in one call.

        Tag names of each persisted entry are added to `accumulator` for the
        TagReconciler.

        Raises:
            EntryPersistenceError: If the bulk insert fails
        """
        entries = [self.build_entry(event, log_run_id) for event in events]

        try:
            entry_ids = self.store.insert_log_entries(entries)
        except Exception as e:
            raise EntryPersistenceError(
                f"Failed to insert {len(entries)} entries for run {log_run_id}: {e}"
            ) from e

        if len(entry_ids) != len(entries):
            raise EntryPersistenceError(
                f"Store returned {len(entry_ids)} ids for {len(entries)} entries of run {log_run_id}"
            )

        for entry, entry_id in zip(entries, entry_ids):
            entry.log_entry_id = entry_id
            accumulator.add(entry_id, entry.tag_names)

        logger.debug(f"Inserted {len(entries)} entries for run {log_run_id}")
        return entries
