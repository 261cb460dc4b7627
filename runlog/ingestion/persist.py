# Persistence layer for normalized log records
"""
Persistence Layer for Run Log Ingestion.

Defines the store interface used by the normalizers and the enrichment task,
and its PostgreSQL implementation. Writes go through upserts keyed on the
natural unique keys (transaction_id, tag name, link triple) so re-delivered
batches never duplicate rows.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple

import psycopg2
from psycopg2.extras import execute_values

from runlog.configs.settings import Settings, get_settings
from runlog.schemas.log_event import (
    ENTRY_PAYLOAD_FIELDS,
    RUN_CONTEXT_FIELDS,
    LogEntry,
    LogRun,
    ReleaseInfo,
    Tag,
    TagLink,
)

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    """Lifecycle of an enrichment job row."""

    PENDING = "pending"
    ACTIVE = "active"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    EXPIRED = "expired"


IN_FLIGHT_STATUSES = (JobStatus.PENDING, JobStatus.ACTIVE)


def get_connection(settings: Optional[Settings] = None) -> "psycopg2.extensions.connection":
    """
    Create a PostgreSQL connection using DATABASE_URL.

    Returns
    -------
    psycopg2.extensions.connection
        Active database connection.
    """
    settings = settings or get_settings()
    return psycopg2.connect(**settings.get_psycopg2_params())


class LogStore(ABC):
    """
    Transactional store for runs, entries, tags and enrichment jobs.

    Writes are not committed until commit() is called.
    """

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    # Runs and entries ---------------------------------------------------

    @abstractmethod
    def upsert_log_run(self, run: LogRun) -> Tuple[int, bool]:
        """
        Insert or update the run keyed on transaction_id.

        Release fields already present on the stored row are kept.

        Returns:
            (log_run_id, created) where created is False when the row existed
        """
        pass

    @abstractmethod
    def insert_log_entries(self, entries: List[LogEntry]) -> List[int]:
        """Insert all entries in one statement; returns ids in input order."""
        pass

    # Tags ---------------------------------------------------------------

    @abstractmethod
    def find_tags_by_name(self, names: Iterable[str]) -> Dict[str, Tag]:
        """Return existing tags keyed by exact name."""
        pass

    @abstractmethod
    def create_tags(self, names: Iterable[str]) -> Dict[str, Tag]:
        """Create tags that do not exist yet (create-if-missing); return all keyed by name."""
        pass

    @abstractmethod
    def insert_tag_links(self, links: Set[TagLink]) -> int:
        """Insert links, ignoring ones already stored; returns the number inserted."""
        pass

    # Enrichment ---------------------------------------------------------

    @abstractmethod
    def find_recent_enriched_run(self, since: datetime) -> Optional[LogRun]:
        """Most recently created run since `since` with both release fields set."""
        pass

    @abstractmethod
    def backfill_release(self, release: ReleaseInfo, since: datetime, limit: int) -> int:
        """
        Set release fields on unenriched runs created since `since`.

        At most `limit` runs are updated, oldest first, in one statement.
        """
        pass

    @abstractmethod
    def count_in_flight_jobs(self, task_name: str) -> int:
        pass

    @abstractmethod
    def claim_enrichment_job(self, task_name: str, stale_before: datetime) -> Optional[int]:
        """
        Claim the single in-flight slot for `task_name`.

        In-flight jobs last updated before `stale_before` are expired first.

        Returns:
            The new job id, or None when another job holds the slot
        """
        pass

    @abstractmethod
    def update_job_status(
        self, job_id: int, status: JobStatus, error_message: Optional[str] = None
    ) -> None:
        pass


# ----------------------------------------------------------------------
# PostgreSQL
# ----------------------------------------------------------------------

_RUN_COLUMNS = (
    ("transaction_id", "parent_transaction_id")
    + RUN_CONTEXT_FIELDS
    + ("release_number", "release_version", "created_at")
)
_RUN_UPDATE_COLUMNS = ("parent_transaction_id",) + RUN_CONTEXT_FIELDS
_ENTRY_COLUMNS = ("log_run_id", "timestamp") + ENTRY_PAYLOAD_FIELDS

_UPSERT_RUN_SQL = f"""
    INSERT INTO log_runs ({", ".join(_RUN_COLUMNS)})
    VALUES ({", ".join(["%s"] * len(_RUN_COLUMNS))})
    ON CONFLICT (transaction_id) DO UPDATE SET
        {", ".join(f"{c} = EXCLUDED.{c}" for c in _RUN_UPDATE_COLUMNS)},
        release_number = COALESCE(log_runs.release_number, EXCLUDED.release_number),
        release_version = COALESCE(log_runs.release_version, EXCLUDED.release_version),
        updated_at = NOW()
    RETURNING log_run_id, (xmax = 0) AS created;
"""

_INSERT_ENTRIES_SQL = f"""
    INSERT INTO log_entries ({", ".join(_ENTRY_COLUMNS)}) VALUES %s
    RETURNING log_entry_id;
"""


class PostgresLogStore(LogStore):
    """
    LogStore backed by a psycopg2 connection.

    Implements the 'Data Mapper' pattern between the log record models and
    the relational schema created by runlog.ingestion.schema.
    """

    def __init__(self, db_connection) -> None:
        """Initialize with an active psycopg2 connection."""
        self.conn = db_connection

    @classmethod
    def connect(cls, settings: Optional[Settings] = None) -> "PostgresLogStore":
        """Open a new connection and wrap it."""
        return cls(get_connection(settings))

    def commit(self) -> None:
        self.conn.commit()

    def rollback(self) -> None:
        self.conn.rollback()

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # Runs and entries
    # ------------------------------------------------------------------

    def upsert_log_run(self, run: LogRun) -> Tuple[int, bool]:
        values = (
            [run.transaction_id, run.parent_transaction_id]
            + [run.context.get(c) for c in RUN_CONTEXT_FIELDS]
            + [run.release_number, run.release_version, run.created_at]
        )
        with self.conn.cursor() as cur:
            cur.execute(_UPSERT_RUN_SQL, values)
            log_run_id, created = cur.fetchone()
        return log_run_id, bool(created)

    def insert_log_entries(self, entries: List[LogEntry]) -> List[int]:
        if not entries:
            return []

        rows = [
            tuple([e.log_run_id, e.timestamp] + [e.payload.get(c) for c in ENTRY_PAYLOAD_FIELDS])
            for e in entries
        ]
        with self.conn.cursor() as cur:
            # Single page so the whole batch is one statement
            result = execute_values(
                cur, _INSERT_ENTRIES_SQL, rows, page_size=len(rows), fetch=True
            )
        return [row[0] for row in result]

    # ------------------------------------------------------------------
    # Tags
    # ------------------------------------------------------------------

    def find_tags_by_name(self, names: Iterable[str]) -> Dict[str, Tag]:
        names = list(names)
        if not names:
            return {}
        with self.conn.cursor() as cur:
            cur.execute("SELECT tag_id, name FROM tags WHERE name = ANY(%s);", (names,))
            return {name: Tag(tag_id=tag_id, name=name) for tag_id, name in cur.fetchall()}

    def create_tags(self, names: Iterable[str]) -> Dict[str, Tag]:
        tag_data = [(n,) for n in sorted(set(names))]
        if not tag_data:
            return {}

        # DO UPDATE instead of DO NOTHING so RETURNING yields ids for rows
        # another batch created concurrently.
        with self.conn.cursor() as cur:
            result = execute_values(
                cur,
                """
                INSERT INTO tags (name) VALUES %s
                ON CONFLICT (name) DO UPDATE SET name = EXCLUDED.name
                RETURNING tag_id, name;
                """,
                tag_data,
                page_size=len(tag_data),
                fetch=True,
            )
        return {name: Tag(tag_id=tag_id, name=name) for tag_id, name in result}

    def insert_tag_links(self, links: Set[TagLink]) -> int:
        if not links:
            return 0

        rel_data = sorted(
            (link.entity_type.value, link.entity_id, link.tag_id) for link in links
        )
        with self.conn.cursor() as cur:
            execute_values(
                cur,
                """
                INSERT INTO tag_links (entity_type, entity_id, tag_id) VALUES %s
                ON CONFLICT DO NOTHING;
                """,
                rel_data,
                page_size=len(rel_data),
            )
            return cur.rowcount

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    def find_recent_enriched_run(self, since: datetime) -> Optional[LogRun]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT log_run_id, transaction_id, parent_transaction_id,
                       release_number, release_version, created_at
                FROM log_runs
                WHERE created_at >= %s
                  AND release_number IS NOT NULL
                  AND release_version IS NOT NULL
                ORDER BY created_at DESC
                LIMIT 1;
                """,
                (since,),
            )
            row = cur.fetchone()

        if not row:
            return None
        return LogRun(
            log_run_id=row[0],
            transaction_id=row[1],
            parent_transaction_id=row[2],
            release_number=row[3],
            release_version=row[4],
            created_at=row[5],
        )

    def backfill_release(self, release: ReleaseInfo, since: datetime, limit: int) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE log_runs
                SET release_number = %s, release_version = %s, updated_at = NOW()
                WHERE log_run_id IN (
                    SELECT log_run_id FROM log_runs
                    WHERE created_at >= %s
                      AND (release_number IS NULL OR release_version IS NULL)
                    ORDER BY created_at ASC
                    LIMIT %s
                    FOR UPDATE SKIP LOCKED
                );
                """,
                (release.release_number, release.release_version, since, limit),
            )
            return cur.rowcount

    def count_in_flight_jobs(self, task_name: str) -> int:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                SELECT COUNT(*) FROM enrichment_jobs
                WHERE task_name = %s AND status = ANY(%s);
                """,
                (task_name, [s.value for s in IN_FLIGHT_STATUSES]),
            )
            return cur.fetchone()[0]

    def claim_enrichment_job(self, task_name: str, stale_before: datetime) -> Optional[int]:
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE enrichment_jobs
                SET status = 'expired', finished_at = NOW(), updated_at = NOW()
                WHERE task_name = %s
                  AND status IN ('pending', 'active')
                  AND updated_at < %s;
                """,
                (task_name, stale_before),
            )
            if cur.rowcount:
                logger.warning(f"Expired {cur.rowcount} stale enrichment job(s) for {task_name}")

            # The partial unique index on task_name admits one in-flight row
            cur.execute(
                """
                INSERT INTO enrichment_jobs (task_name, status)
                VALUES (%s, 'pending')
                ON CONFLICT (task_name) WHERE status IN ('pending', 'active')
                DO NOTHING
                RETURNING job_id;
                """,
                (task_name,),
            )
            row = cur.fetchone()
        return row[0] if row else None

    def update_job_status(
        self, job_id: int, status: JobStatus, error_message: Optional[str] = None
    ) -> None:
        finished = status not in IN_FLIGHT_STATUSES
        with self.conn.cursor() as cur:
            cur.execute(
                """
                UPDATE enrichment_jobs
                SET status = %s,
                    error_message = %s,
                    updated_at = NOW(),
                    finished_at = CASE WHEN %s THEN NOW() ELSE finished_at END
                WHERE job_id = %s;
                """,
                (status.value, error_message, finished, job_id),
            )
