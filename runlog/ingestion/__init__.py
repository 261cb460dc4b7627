"""
Ingestion layer for run logs.

Key Components:
- AggregateNormalizer: one LogRun per transaction, upserted by transaction id
- EntryNormalizer: one LogEntry per event, bulk inserted
- TagReconciler: tag registry reconciliation and deduplicated linking
- EnrichmentScheduler: cached or background release enrichment
- LogBatchPipeline: runs the stages above for a delivered batch
"""
