"""
Unit tests for the aggregate module.

Tests build_log_run and AggregateNormalizer with a mocked scheduler.
"""

from unittest.mock import MagicMock

import pytest

from runlog.ingestion.aggregate import AggregateNormalizer, build_log_run
from runlog.ingestion.enrichment import EnrichmentScheduler
from runlog.ingestion.errors import RunPersistenceError
from runlog.schemas.log_event import EnrichmentState, ReleaseInfo

SPRING = ReleaseInfo(release_number="58", release_version="Spring")


@pytest.fixture
def scheduler():
    """Scheduler mock with no cached release and no job scheduled."""
    mock = MagicMock(spec=EnrichmentScheduler)
    mock.find_cached_release.return_value = None
    mock.maybe_schedule.return_value = None
    return mock


class TestBuildLogRun:
    """Tests for build_log_run."""

    def test_uses_first_event_as_template(self, create_event):
        events = [
            create_event(logged_by_username="first@example.com"),
            create_event(logged_by_username="second@example.com"),
        ]
        run = build_log_run(events)

        assert run.transaction_id == "T1"
        assert run.context["logged_by_username"] == "first@example.com"
        assert run.context["organization_name"] == "Test Org"
        assert run.release_number is None

    def test_parent_transaction_copied(self, create_event):
        run = build_log_run([create_event(parent_transaction_id="T0")])
        assert run.parent_transaction_id == "T0"

    def test_no_parent_transaction(self, create_event):
        run = build_log_run([create_event()])
        assert run.parent_transaction_id is None

    def test_empty_batch(self):
        with pytest.raises(ValueError):
            build_log_run([])

    def test_mixed_transactions_warn(self, create_event, caplog):
        """Events of other transactions are not reconciled, only reported."""
        run = build_log_run([create_event(transaction_id="T1"), create_event(transaction_id="T2")])
        assert run.transaction_id == "T1"
        assert "T2" in caplog.text


class TestAggregateNormalizer:
    """Tests for AggregateNormalizer."""

    def test_creates_run_and_requests_enrichment(self, fake_store, fake_db, scheduler, create_event):
        job = MagicMock()
        scheduler.maybe_schedule.return_value = job

        result = AggregateNormalizer(fake_store, scheduler).normalize([create_event()])

        assert result.created is True
        assert result.run.log_run_id in fake_db.runs
        assert result.enrichment_job is job
        assert result.enrichment_state == EnrichmentState.ENRICHMENT_REQUESTED
        scheduler.maybe_schedule.assert_called_once()
        assert fake_store.commits >= 1

    def test_cached_release_skips_gate(self, fake_store, fake_db, scheduler, create_event):
        """A cache hit copies release info and never evaluates the gate."""
        scheduler.find_cached_release.return_value = SPRING

        result = AggregateNormalizer(fake_store, scheduler).normalize([create_event()])

        stored = fake_db.runs[result.run.log_run_id]
        assert stored.release_number == "58"
        assert stored.release_version == "Spring"
        assert result.used_cached_release is True
        assert result.enrichment_state == EnrichmentState.ENRICHED
        scheduler.maybe_schedule.assert_not_called()

    def test_declined_gate_leaves_run_unenriched(self, fake_store, scheduler, create_event):
        result = AggregateNormalizer(fake_store, scheduler).normalize([create_event()])
        assert result.enrichment_state == EnrichmentState.UNENRICHED
        assert result.enrichment_job is None

    def test_redelivery_updates_in_place(self, fake_store, fake_db, scheduler, create_event):
        """The same transaction id never creates a second run."""
        normalizer = AggregateNormalizer(fake_store, scheduler)
        first = normalizer.normalize([create_event(session_type="Aura")])
        second = normalizer.normalize([create_event(session_type="API")])

        assert second.created is False
        assert second.run.log_run_id == first.run.log_run_id
        assert len(fake_db.runs) == 1
        assert fake_db.runs[first.run.log_run_id].context["session_type"] == "API"
        # Only the creating upsert goes through the gate
        scheduler.maybe_schedule.assert_called_once()

    def test_redelivery_keeps_existing_release(self, fake_store, fake_db, scheduler, create_event):
        normalizer = AggregateNormalizer(fake_store, scheduler)
        first = normalizer.normalize([create_event()])
        fake_db.runs[first.run.log_run_id].apply_release(SPRING)

        normalizer.normalize([create_event()])

        assert fake_db.runs[first.run.log_run_id].release_number == "58"

    def test_upsert_failure_is_fatal(self, fake_store, fake_db, scheduler, create_event):
        fake_db.fail_on.add("upsert_log_run")

        with pytest.raises(RunPersistenceError):
            AggregateNormalizer(fake_store, scheduler).normalize([create_event()])

        assert fake_store.rollbacks == 1
        scheduler.maybe_schedule.assert_not_called()

    def test_cache_lookup_failure_tolerated(self, fake_store, fake_db, scheduler, create_event):
        scheduler.find_cached_release.side_effect = RuntimeError("db hiccup")

        result = AggregateNormalizer(fake_store, scheduler).normalize([create_event()])

        assert result.run.log_run_id in fake_db.runs
        assert result.used_cached_release is False

    def test_scheduling_failure_tolerated(self, fake_store, scheduler, create_event):
        scheduler.maybe_schedule.side_effect = RuntimeError("claim failed")

        result = AggregateNormalizer(fake_store, scheduler).normalize([create_event()])

        assert result.enrichment_job is None
        assert result.enrichment_state == EnrichmentState.UNENRICHED
