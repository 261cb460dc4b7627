"""
Run (aggregate) normalization.

Every batch produces or updates exactly one LogRun, keyed on the transaction
id. The first event of the batch is the template for all run-level fields;
events of one batch are assumed to share them.
"""

import logging
from concurrent.futures import Future
from dataclasses import dataclass
from typing import List, Optional

from runlog.ingestion.enrichment import EnrichmentScheduler
from runlog.ingestion.errors import RunPersistenceError
from runlog.ingestion.persist import LogStore
from runlog.schemas.log_event import (
    RUN_CONTEXT_FIELDS,
    EnrichmentState,
    LogRun,
    RawEvent,
    ReleaseInfo,
)

logger = logging.getLogger(__name__)


def build_log_run(events: List[RawEvent]) -> LogRun:
    """
    Build the run for a batch from its first event.

    Raises:
        ValueError: If the batch is empty
    """
    if not events:
        raise ValueError("Cannot build a run from an empty batch")

    template = events[0]
    strays = {e.transaction_id for e in events[1:]} - {template.transaction_id}
    if strays:
        logger.warning(
            f"Batch for transaction {template.transaction_id} contains events of "
            f"{sorted(strays)}; run context is taken from the first event only"
        )

    return LogRun(
        transaction_id=template.transaction_id,
        parent_transaction_id=template.parent_transaction_id,
        context={f: getattr(template, f) for f in RUN_CONTEXT_FIELDS},
    )


@dataclass
class AggregateResult:
    """The persisted run and what happened to its enrichment."""

    run: LogRun
    created: bool
    used_cached_release: bool = False
    enrichment_state: EnrichmentState = EnrichmentState.UNENRICHED
    enrichment_job: Optional[Future] = None


class AggregateNormalizer:
    """Builds, enriches from cache and upserts the run of a batch."""

    def __init__(self, store: LogStore, scheduler: EnrichmentScheduler):
        self.store = store
        self.scheduler = scheduler

    def normalize(self, events: List[RawEvent]) -> AggregateResult:
        """
        Produce or update the run for `events` and commit it.

        Cached release info is applied before the upsert. Only a newly created
        run without cached release info goes through the scheduling gate.

        Raises:
            RunPersistenceError: If the upsert fails; nothing else of the batch
                should be written
        """
        run = build_log_run(events)

        cached = self._find_cached_release()
        if cached is not None:
            run.apply_release(cached)

        try:
            log_run_id, created = self.store.upsert_log_run(run)
            self.store.commit()
        except Exception as e:
            self.store.rollback()
            raise RunPersistenceError(
                f"Failed to upsert run for transaction {run.transaction_id}: {e}"
            ) from e

        run.log_run_id = log_run_id
        result = AggregateResult(run=run, created=created, used_cached_release=cached is not None)

        if run.is_enriched:
            result.enrichment_state = EnrichmentState.ENRICHED
        elif created:
            result.enrichment_job = self._schedule_enrichment()
            if result.enrichment_job is not None:
                result.enrichment_state = EnrichmentState.ENRICHMENT_REQUESTED

        logger.info(
            f"Run {log_run_id} ({run.transaction_id}) {'created' if created else 'updated'}, "
            f"enrichment {result.enrichment_state.value}"
        )
        return result

    # Enrichment is best-effort; its failures never abort the batch

    def _find_cached_release(self) -> Optional[ReleaseInfo]:
        try:
            return self.scheduler.find_cached_release()
        except Exception as e:
            self.store.rollback()
            logger.warning(f"Recent release lookup failed, continuing without it: {e}")
            return None

    def _schedule_enrichment(self) -> Optional[Future]:
        try:
            return self.scheduler.maybe_schedule()
        except Exception as e:
            self.store.rollback()
            logger.error(f"Could not schedule release enrichment: {e}")
            return None
