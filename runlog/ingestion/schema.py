"""
PostgreSQL schema for run log records.

Column names of log_runs and log_entries follow RUN_CONTEXT_FIELDS and
ENTRY_PAYLOAD_FIELDS so the store can map models to rows by name.
"""

import logging

from runlog.schemas.log_event import GOVERNOR_LIMITS, RUN_CONTEXT_FIELDS

logger = logging.getLogger(__name__)

_INTEGER_CONTEXT_FIELDS = {"user_logging_level_ordinal"}

_RUN_CONTEXT_DDL = ",\n    ".join(
    f"{c} {'INTEGER' if c in _INTEGER_CONTEXT_FIELDS else 'TEXT'}" for c in RUN_CONTEXT_FIELDS
)
_LIMITS_DDL = ",\n    ".join(
    f"limits_{name}_{kind} INTEGER" for name in GOVERNOR_LIMITS for kind in ("max", "used")
)

SCHEMA_DDL = f"""
CREATE TABLE IF NOT EXISTS log_runs (
    log_run_id BIGSERIAL PRIMARY KEY,
    transaction_id TEXT NOT NULL UNIQUE,
    parent_transaction_id TEXT,
    {_RUN_CONTEXT_DDL},
    release_number TEXT,
    release_version TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS ix_log_runs_created_at ON log_runs (created_at);
CREATE INDEX IF NOT EXISTS ix_log_runs_parent_transaction_id
    ON log_runs (parent_transaction_id);

CREATE TABLE IF NOT EXISTS log_entries (
    log_entry_id BIGSERIAL PRIMARY KEY,
    log_run_id BIGINT NOT NULL REFERENCES log_runs (log_run_id),
    timestamp TIMESTAMPTZ NOT NULL,
    transaction_entry_number INTEGER,
    request_id TEXT,
    message TEXT,
    message_truncated BOOLEAN NOT NULL DEFAULT FALSE,
    logging_level TEXT,
    logging_level_ordinal INTEGER,
    origin_type TEXT,
    origin_location TEXT,
    exception_type TEXT,
    exception_message TEXT,
    exception_stack_trace TEXT,
    stack_trace TEXT,
    related_record_id TEXT,
    record_json TEXT,
    record_sobject_type TEXT,
    trigger_operation_type TEXT,
    trigger_sobject_type TEXT,
    trigger_is_executing BOOLEAN NOT NULL DEFAULT FALSE,
    {_LIMITS_DDL}
);

CREATE INDEX IF NOT EXISTS ix_log_entries_log_run_id ON log_entries (log_run_id);

CREATE TABLE IF NOT EXISTS tags (
    tag_id BIGSERIAL PRIMARY KEY,
    name TEXT NOT NULL UNIQUE
);

CREATE TABLE IF NOT EXISTS tag_links (
    entity_type TEXT NOT NULL CHECK (entity_type IN ('log_run', 'log_entry')),
    entity_id BIGINT NOT NULL,
    tag_id BIGINT NOT NULL REFERENCES tags (tag_id),
    PRIMARY KEY (entity_type, entity_id, tag_id)
);

CREATE TABLE IF NOT EXISTS enrichment_jobs (
    job_id BIGSERIAL PRIMARY KEY,
    task_name TEXT NOT NULL,
    status TEXT NOT NULL,
    error_message TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    finished_at TIMESTAMPTZ
);

-- At most one pending/active job per task
CREATE UNIQUE INDEX IF NOT EXISTS ux_enrichment_jobs_in_flight
    ON enrichment_jobs (task_name)
    WHERE status IN ('pending', 'active');
"""


def create_schema(conn) -> None:
    """Create all tables and indexes if they do not exist, then commit."""
    with conn.cursor() as cur:
        cur.execute(SCHEMA_DDL)
    conn.commit()
    logger.info("Run log schema is up to date")
