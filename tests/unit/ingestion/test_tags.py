"""
Unit tests for the tags module.

Tests TagAccumulator and TagReconciler against the in-memory store.
"""

from unittest.mock import MagicMock

import pytest

from runlog.ingestion.errors import EntryPersistenceError
from runlog.ingestion.persist import LogStore
from runlog.ingestion.tags import TagAccumulator, TagReconciler
from runlog.schemas.log_event import Tag, TagEntityType, TagLink

RUN_ID = 1


def _links_by_name(links, tags):
    names = {t.tag_id: name for name, t in tags.items()}
    return {(link.entity_type, link.entity_id, names[link.tag_id]) for link in links}


class TestTagAccumulator:
    """Tests for TagAccumulator."""

    def test_empty_by_default(self):
        assert TagAccumulator().is_empty

    def test_add_ignores_untagged_entries(self):
        accumulator = TagAccumulator()
        accumulator.add(10, [])
        assert accumulator.is_empty
        assert accumulator.entry_tag_names == {}

    def test_add_collects_names(self):
        accumulator = TagAccumulator()
        accumulator.add(10, ["a", "b"])
        accumulator.add(11, ["b"])
        assert accumulator.pending_names == {"a", "b"}
        assert accumulator.entry_tag_names == {10: ["a", "b"], 11: ["b"]}


class TestTagReconciler:
    """Tests for TagReconciler."""

    def test_noop_when_no_pending_tags(self):
        """The store is never touched for untagged batches."""
        store = MagicMock(spec=LogStore)
        result = TagReconciler(store).reconcile(TagAccumulator(), RUN_ID)

        assert result.links == set()
        store.find_tags_by_name.assert_not_called()
        store.insert_tag_links.assert_not_called()

    def test_two_entries_overlapping_tags(self, fake_store, fake_db):
        """Tags "a,b" and "b,c" produce 3 tags and 7 distinct links."""
        accumulator = TagAccumulator()
        accumulator.add(10, ["a", "b"])
        accumulator.add(11, ["b", "c"])

        result = TagReconciler(fake_store).reconcile(accumulator, RUN_ID)

        assert set(fake_db.tags) == {"a", "b", "c"}
        assert result.created_tag_names == {"a", "b", "c"}
        assert _links_by_name(result.links, result.tags) == {
            (TagEntityType.LOG_RUN, RUN_ID, "a"),
            (TagEntityType.LOG_RUN, RUN_ID, "b"),
            (TagEntityType.LOG_RUN, RUN_ID, "c"),
            (TagEntityType.LOG_ENTRY, 10, "a"),
            (TagEntityType.LOG_ENTRY, 10, "b"),
            (TagEntityType.LOG_ENTRY, 11, "b"),
            (TagEntityType.LOG_ENTRY, 11, "c"),
        }
        assert result.links_inserted == 7
        assert len(fake_db.links) == 7

    def test_shared_tag_links_run_once(self, fake_store):
        """A tag on M entries yields M entry links and one run link."""
        accumulator = TagAccumulator()
        for entry_id in range(10, 15):
            accumulator.add(entry_id, ["shared"])

        result = TagReconciler(fake_store).reconcile(accumulator, RUN_ID)

        run_links = [l for l in result.links if l.entity_type == TagEntityType.LOG_RUN]
        entry_links = [l for l in result.links if l.entity_type == TagEntityType.LOG_ENTRY]
        assert len(run_links) == 1
        assert len(entry_links) == 5

    def test_existing_tags_reused(self, fake_store, fake_db):
        """Only names missing from the registry are created."""
        fake_db.tags["a"] = Tag(tag_id=500, name="a")
        accumulator = TagAccumulator()
        accumulator.add(10, ["a", "new"])

        result = TagReconciler(fake_store).reconcile(accumulator, RUN_ID)

        assert result.created_tag_names == {"new"}
        assert result.tags["a"].tag_id == 500
        assert TagLink(entity_type=TagEntityType.LOG_RUN, entity_id=RUN_ID, tag_id=500) in result.links

    def test_create_not_called_when_all_exist(self):
        store = MagicMock(spec=LogStore)
        store.find_tags_by_name.return_value = {"a": Tag(tag_id=1, name="a")}
        store.insert_tag_links.return_value = 2
        accumulator = TagAccumulator()
        accumulator.add(10, ["a"])

        TagReconciler(store).reconcile(accumulator, RUN_ID)

        store.create_tags.assert_not_called()
        store.insert_tag_links.assert_called_once()

    def test_relinking_is_idempotent(self, fake_store, fake_db):
        accumulator = TagAccumulator()
        accumulator.add(10, ["a"])
        reconciler = TagReconciler(fake_store)

        reconciler.reconcile(accumulator, RUN_ID)
        again = reconciler.reconcile(accumulator, RUN_ID)

        assert again.links_inserted == 0
        assert len(fake_db.links) == 2

    @pytest.mark.parametrize("failing", ["find_tags_by_name", "create_tags", "insert_tag_links"])
    def test_store_failures_wrapped(self, fake_store, fake_db, failing):
        fake_db.fail_on.add(failing)
        accumulator = TagAccumulator()
        accumulator.add(10, ["a"])

        with pytest.raises(EntryPersistenceError):
            TagReconciler(fake_store).reconcile(accumulator, RUN_ID)
