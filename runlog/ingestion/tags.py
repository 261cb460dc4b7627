"""
Tag reconciliation.

Entry normalization collects tag names into a TagAccumulator scoped to one
batch. The TagReconciler then resolves those names against the tag registry,
creates the missing tags and links every tag to each entry that carries it
and, once, to the shared run.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Set

from runlog.ingestion.errors import EntryPersistenceError
from runlog.ingestion.persist import LogStore
from runlog.schemas.log_event import Tag, TagEntityType, TagLink

logger = logging.getLogger(__name__)


@dataclass
class TagAccumulator:
    """Tag names seen while normalizing one batch."""

    pending_names: Set[str] = field(default_factory=set)
    entry_tag_names: Dict[int, List[str]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.pending_names

    def add(self, entry_id: int, names: List[str]) -> None:
        """Record the tag names of a persisted entry."""
        if not names:
            return
        self.pending_names.update(names)
        self.entry_tag_names.setdefault(entry_id, []).extend(names)


@dataclass
class TagReconciliation:
    """Outcome of reconciling one batch's tags."""

    tags: Dict[str, Tag] = field(default_factory=dict)
    created_tag_names: Set[str] = field(default_factory=set)
    links: Set[TagLink] = field(default_factory=set)
    links_inserted: int = 0


class TagReconciler:
    """Creates missing tags and links them to entries and their run."""

    def __init__(self, store: LogStore):
        self.store = store

    def reconcile(self, accumulator: TagAccumulator, log_run_id: int) -> TagReconciliation:
        """
        Resolve the pending tag names and persist deduplicated links.

        Args:
            accumulator: Tag names collected during entry normalization
            log_run_id: Id of the run shared by every entry of the batch

        Returns:
            TagReconciliation with resolved tags and the link set

        Raises:
            EntryPersistenceError: If the store rejects tags or links
        """
        result = TagReconciliation()
        if accumulator.is_empty:
            return result

        try:
            tags = self.store.find_tags_by_name(accumulator.pending_names)
            missing = accumulator.pending_names - tags.keys()
            if missing:
                tags.update(self.store.create_tags(missing))
                result.created_tag_names = missing
        except Exception as e:
            raise EntryPersistenceError(f"Failed to resolve tags for run {log_run_id}: {e}") from e

        unresolved = accumulator.pending_names - tags.keys()
        if unresolved:
            raise EntryPersistenceError(
                f"Tags could not be resolved for run {log_run_id}: {sorted(unresolved)}"
            )

        result.tags = tags
        result.links = self.build_links(accumulator, tags, log_run_id)

        try:
            result.links_inserted = self.store.insert_tag_links(result.links)
        except Exception as e:
            raise EntryPersistenceError(f"Failed to link tags for run {log_run_id}: {e}") from e

        logger.info(
            f"Run {log_run_id}: {len(tags)} tags ({len(result.created_tag_names)} new), "
            f"{len(result.links)} links"
        )
        return result

    @staticmethod
    def build_links(
        accumulator: TagAccumulator, tags: Dict[str, Tag], log_run_id: int
    ) -> Set[TagLink]:
        """Link each entry to its tags and the run to every tag, once each."""
        links: Set[TagLink] = set()
        for entry_id, names in accumulator.entry_tag_names.items():
            for name in names:
                tag_id = tags[name].tag_id
                links.add(TagLink(entity_type=TagEntityType.LOG_ENTRY, entity_id=entry_id, tag_id=tag_id))
                links.add(TagLink(entity_type=TagEntityType.LOG_RUN, entity_id=log_run_id, tag_id=tag_id))
        return links
