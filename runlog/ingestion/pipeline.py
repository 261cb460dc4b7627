"""
Batch pipeline.

Processes one delivered batch of events end to end:

    RawEvent[] -> AggregateNormalizer -> EntryNormalizer -> TagReconciler
                        |
                        +-> EnrichmentScheduler (background, fire-and-forget)

A failed run upsert aborts the batch. A failure after the run is committed
leaves the run in place; re-delivering the batch completes it.
"""

import logging
from concurrent.futures import Future
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from runlog.configs.config import PipelineOptions
from runlog.configs.settings import Settings
from runlog.ingestion.aggregate import AggregateNormalizer
from runlog.ingestion.enrichment import EnrichmentScheduler, ReleaseStatusClient
from runlog.ingestion.entries import EntryNormalizer
from runlog.ingestion.errors import EntryPersistenceError
from runlog.ingestion.persist import LogStore, PostgresLogStore
from runlog.ingestion.tags import TagAccumulator, TagReconciler
from runlog.monitoring.logging import with_context
from runlog.schemas.log_event import EnrichmentState, RawEvent

logger = logging.getLogger(__name__)


class BatchStatus(str, Enum):
    """Status of one batch."""

    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


@dataclass
class BatchProcessingResult:
    """Result of processing one batch."""

    status: BatchStatus
    transaction_id: Optional[str]
    started_at: datetime
    ended_at: datetime
    log_run_id: Optional[int] = None
    run_created: bool = False
    entries_persisted: int = 0
    tags_created: int = 0
    tag_links: int = 0
    used_cached_release: bool = False
    enrichment_state: EnrichmentState = EnrichmentState.UNENRICHED
    enrichment_job: Optional[Future] = None
    errors: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def duration_seconds(self) -> float:
        """Calculate processing duration."""
        return (self.ended_at - self.started_at).total_seconds()


class LogBatchPipeline:
    """Runs the normalization stages for one batch at a time."""

    def __init__(self, store: LogStore, scheduler: EnrichmentScheduler):
        """
        Initialize the pipeline.

        Args:
            store: Foreground store, used synchronously by every stage
            scheduler: Enrichment scheduler bound to the same store
        """
        self.store = store
        self.scheduler = scheduler
        self.aggregates = AggregateNormalizer(store, scheduler)
        self.entries = EntryNormalizer(store)
        self.tags = TagReconciler(store)
        self.history: List[BatchProcessingResult] = []

    def process(self, events: List[RawEvent]) -> BatchProcessingResult:
        """
        Normalize and persist one batch.

        Returns:
            BatchProcessingResult for the batch

        Raises:
            RunPersistenceError: If the run could not be persisted
            EntryPersistenceError: If entries or tag links could not be persisted
                or committed; other stage failures are wrapped in it too
        """
        started = datetime.now(timezone.utc)
        result = BatchProcessingResult(
            status=BatchStatus.FAILED,
            transaction_id=events[0].transaction_id if events else None,
            started_at=started,
            ended_at=started,
        )
        self.history.append(result)
        log = with_context(logger, transaction_id=result.transaction_id, stage="run")

        try:
            aggregate = self.aggregates.normalize(events)
        except Exception as e:
            result.errors.append({"stage": "run", "error": str(e)})
            result.ended_at = datetime.now(timezone.utc)
            log.error(f"Batch aborted: {e}")
            raise

        result.log_run_id = aggregate.run.log_run_id
        result.run_created = aggregate.created
        result.used_cached_release = aggregate.used_cached_release
        result.enrichment_state = aggregate.enrichment_state
        result.enrichment_job = aggregate.enrichment_job

        # Scoped to this batch only
        accumulator = TagAccumulator()
        stage = "entries"
        try:
            entries = self.entries.normalize(events, aggregate.run.log_run_id, accumulator)
            result.entries_persisted = len(entries)

            stage = "tags"
            reconciliation = self.tags.reconcile(accumulator, aggregate.run.log_run_id)
            result.tags_created = len(reconciliation.created_tag_names)
            result.tag_links = len(reconciliation.links)

            stage = "commit"
            self.store.commit()
        except Exception as e:
            self.store.rollback()
            result.entries_persisted = 0
            result.tag_links = 0
            result.tags_created = 0
            result.status = BatchStatus.PARTIAL_SUCCESS
            result.errors.append({"stage": stage, "error": str(e)})
            result.ended_at = datetime.now(timezone.utc)
            log.error(f"Run {aggregate.run.log_run_id} persisted but {stage} failed: {e}")
            if isinstance(e, EntryPersistenceError):
                raise
            raise EntryPersistenceError(
                f"Stage {stage} failed for run {aggregate.run.log_run_id}: {e}"
            ) from e

        result.status = BatchStatus.SUCCESS
        result.ended_at = datetime.now(timezone.utc)
        log.info(
            f"Batch done: {result.entries_persisted} entries, "
            f"{result.tag_links} tag links in {result.duration_seconds:.3f}s"
        )
        return result

    def close(self, wait: bool = True) -> None:
        """Wait for background enrichment, then close the foreground store."""
        self.scheduler.shutdown(wait=wait)
        self.store.close()


def build_pipeline(settings: Settings, options: PipelineOptions) -> LogBatchPipeline:
    """Wire a pipeline against PostgreSQL and the configured status endpoint."""
    store = PostgresLogStore.connect(settings)
    scheduler = EnrichmentScheduler(
        store=store,
        options=options,
        store_factory=lambda: PostgresLogStore.connect(settings),
        client_factory=lambda: ReleaseStatusClient.from_settings(settings),
    )
    return LogBatchPipeline(store, scheduler)
