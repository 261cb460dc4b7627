#!/usr/bin/env python3
"""Command-line interface for the run log pipeline.

Commands:
  - runlog init-db : Create the PostgreSQL schema
  - runlog ingest  : Process a JSON Lines file of log events, one batch per transaction
  - runlog enrich  : Run release enrichment now, in the foreground

Typical usage:
  runlog init-db
  runlog ingest --file events.jsonl
  runlog enrich
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from runlog import __version__
from runlog.configs.config import Config, PipelineOptions
from runlog.configs.settings import get_settings
from runlog.ingestion.errors import RunLogError
from runlog.ingestion.schema import create_schema
from runlog.monitoring.logging import LoggingOptions, setup_logging
from runlog.schemas.log_event import RawEvent

logger = logging.getLogger("runlog.cli")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="runlog", description="Run log ingestion CLI")
    p.add_argument("--version", action="store_true", help="Print version and exit")
    p.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    p.add_argument("--json-logs", action="store_true", help="Emit JSON logs")
    p.add_argument("--config", "-c", default=None, help="Path to pipeline.yaml")
    sub = p.add_subparsers(dest="cmd")

    sub.add_parser("init-db", help="Create tables and indexes")

    pi = sub.add_parser("ingest", help="Process a JSON Lines file of log events")
    pi.add_argument("--file", "-f", required=True, help="Path to events (.jsonl)")
    pi.add_argument(
        "--no-enrichment",
        action="store_true",
        help="Do not schedule release enrichment (no network calls)",
    )

    sub.add_parser("enrich", help="Fetch release info and back-fill today's runs now")

    return p


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    return _build_parser().parse_args(argv)


def read_events(path: Path) -> list[RawEvent]:
    """Read one RawEvent per non-empty line."""
    events = []
    with open(path, encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                events.append(RawEvent.model_validate(json.loads(line)))
            except (json.JSONDecodeError, ValidationError) as e:
                raise ValueError(f"{path}:{lineno}: invalid event: {e}") from e
    return events


def group_batches(events: Iterable[RawEvent]) -> list[list[RawEvent]]:
    """Group events by transaction id, keeping first-seen and in-batch order."""
    batches: dict[str, list[RawEvent]] = {}
    for event in events:
        batches.setdefault(event.transaction_id, []).append(event)
    return list(batches.values())


def _cmd_init_db() -> int:
    from runlog.ingestion.persist import get_connection

    conn = get_connection(get_settings())
    try:
        create_schema(conn)
    finally:
        conn.close()
    print("Schema created")
    return 0


def _cmd_ingest(args: argparse.Namespace, options: PipelineOptions) -> int:
    from runlog.ingestion.pipeline import build_pipeline

    if args.no_enrichment:
        options = replace(options, enrichment_enabled=False)

    batches = group_batches(read_events(Path(args.file)))
    pipeline = build_pipeline(get_settings(), options)
    failed = 0
    try:
        for batch in batches:
            try:
                pipeline.process(batch)
            except (RunLogError, ValueError) as e:
                failed += 1
                logger.error(f"Batch {batch[0].transaction_id} failed: {e}")
    finally:
        pipeline.close(wait=True)

    total_entries = sum(r.entries_persisted for r in pipeline.history)
    print(
        f"Processed {len(batches)} batch(es): {len(batches) - failed} ok, {failed} failed, "
        f"{total_entries} entries"
    )
    return 1 if failed else 0


def _cmd_enrich(options: PipelineOptions) -> int:
    from runlog.ingestion.enrichment import EnrichmentScheduler, ReleaseStatusClient
    from runlog.ingestion.persist import PostgresLogStore

    settings = get_settings()
    if not options.enrichment_enabled:
        print("Release enrichment is disabled")
        return 0

    store = PostgresLogStore.connect(settings)
    scheduler = EnrichmentScheduler(
        store=store,
        options=options,
        store_factory=lambda: PostgresLogStore.connect(settings),
        client_factory=lambda: ReleaseStatusClient.from_settings(settings),
    )
    try:
        job_id = scheduler.claim_job()
        if job_id is None:
            print("Another enrichment job is in flight")
            return 0
        updated = scheduler.run_enrichment(job_id)
    except RunLogError as e:
        print(f"Enrichment failed: {e}", file=sys.stderr)
        return 1
    finally:
        scheduler.shutdown()
        store.close()

    print(f"Enriched {updated} run(s)")
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    if args.version:
        print(__version__)
        return 0
    if not args.cmd:
        _build_parser().print_help()
        return 2

    settings = get_settings()
    setup_logging(
        LoggingOptions(
            level=args.log_level or settings.LOG_LEVEL,
            json_logs=args.json_logs or settings.JSON_LOGS,
        )
    )

    if args.cmd == "init-db":
        return _cmd_init_db()

    options = Config.load_pipeline_options(Path(args.config) if args.config else None, settings)
    if args.cmd == "ingest":
        return _cmd_ingest(args, options)
    if args.cmd == "enrich":
        return _cmd_enrich(options)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
