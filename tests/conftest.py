"""
Shared pytest fixtures for the run log test suite.

Provides a RawEvent factory, an in-memory LogStore and an executor that runs
submitted jobs inline.
"""

import itertools
from concurrent.futures import Executor, Future
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set, Tuple

import pytest

from runlog.configs.config import PipelineOptions
from runlog.ingestion.persist import IN_FLIGHT_STATUSES, JobStatus, LogStore
from runlog.schemas.log_event import LogEntry, LogRun, RawEvent, ReleaseInfo, Tag, TagLink


class FakeDatabase:
    """Shared state behind FakeLogStore connections."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.runs: Dict[int, LogRun] = {}
        self.entries: Dict[int, LogEntry] = {}
        self.tags: Dict[str, Tag] = {}
        self.links: Set[TagLink] = set()
        self.jobs: Dict[int, dict] = {}
        self.entry_insert_calls = 0
        # Method names that raise RuntimeError when called
        self.fail_on: Set[str] = set()

    def next_id(self) -> int:
        return next(self._ids)

    def run_by_transaction(self, transaction_id: str) -> Optional[LogRun]:
        for run in self.runs.values():
            if run.transaction_id == transaction_id:
                return run
        return None


class FakeLogStore(LogStore):
    """In-memory LogStore; writes are visible immediately."""

    def __init__(self, db: FakeDatabase, clock=None):
        self.db = db
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def _check(self, name: str) -> None:
        if name in self.db.fail_on:
            raise RuntimeError(f"{name} failed")

    def commit(self) -> None:
        self.commits += 1

    def rollback(self) -> None:
        self.rollbacks += 1

    def close(self) -> None:
        self.closed = True

    def upsert_log_run(self, run: LogRun) -> Tuple[int, bool]:
        self._check("upsert_log_run")
        existing = self.db.run_by_transaction(run.transaction_id)
        if existing is not None:
            existing.parent_transaction_id = run.parent_transaction_id
            existing.context = dict(run.context)
            existing.release_number = existing.release_number or run.release_number
            existing.release_version = existing.release_version or run.release_version
            return existing.log_run_id, False

        stored = run.model_copy(deep=True)
        stored.log_run_id = self.db.next_id()
        self.db.runs[stored.log_run_id] = stored
        return stored.log_run_id, True

    def insert_log_entries(self, entries: List[LogEntry]) -> List[int]:
        self._check("insert_log_entries")
        self.db.entry_insert_calls += 1
        ids = []
        for entry in entries:
            stored = entry.model_copy(deep=True)
            stored.log_entry_id = self.db.next_id()
            self.db.entries[stored.log_entry_id] = stored
            ids.append(stored.log_entry_id)
        return ids

    def find_tags_by_name(self, names: Iterable[str]) -> Dict[str, Tag]:
        self._check("find_tags_by_name")
        return {n: self.db.tags[n] for n in names if n in self.db.tags}

    def create_tags(self, names: Iterable[str]) -> Dict[str, Tag]:
        self._check("create_tags")
        for name in names:
            if name not in self.db.tags:
                self.db.tags[name] = Tag(tag_id=self.db.next_id(), name=name)
        return {n: self.db.tags[n] for n in names}

    def insert_tag_links(self, links: Set[TagLink]) -> int:
        self._check("insert_tag_links")
        new = links - self.db.links
        self.db.links |= new
        return len(new)

    def find_recent_enriched_run(self, since: datetime) -> Optional[LogRun]:
        self._check("find_recent_enriched_run")
        candidates = [r for r in self.db.runs.values() if r.created_at >= since and r.is_enriched]
        return max(candidates, key=lambda r: r.created_at, default=None)

    def backfill_release(self, release: ReleaseInfo, since: datetime, limit: int) -> int:
        self._check("backfill_release")
        pending = sorted(
            (r for r in self.db.runs.values() if r.created_at >= since and not r.is_enriched),
            key=lambda r: r.created_at,
        )[:limit]
        for run in pending:
            run.apply_release(release)
        return len(pending)

    def count_in_flight_jobs(self, task_name: str) -> int:
        self._check("count_in_flight_jobs")
        return sum(
            1
            for job in self.db.jobs.values()
            if job["task_name"] == task_name and job["status"] in IN_FLIGHT_STATUSES
        )

    def claim_enrichment_job(self, task_name: str, stale_before: datetime) -> Optional[int]:
        self._check("claim_enrichment_job")
        for job in self.db.jobs.values():
            if (
                job["task_name"] == task_name
                and job["status"] in IN_FLIGHT_STATUSES
                and job["updated_at"] < stale_before
            ):
                job["status"] = JobStatus.EXPIRED
        if self.count_in_flight_jobs(task_name):
            return None
        job_id = self.db.next_id()
        self.db.jobs[job_id] = {
            "task_name": task_name,
            "status": JobStatus.PENDING,
            "error_message": None,
            "updated_at": self.clock(),
        }
        return job_id

    def update_job_status(
        self, job_id: int, status: JobStatus, error_message: Optional[str] = None
    ) -> None:
        self._check("update_job_status")
        job = self.db.jobs[job_id]
        job["status"] = status
        job["error_message"] = error_message
        job["updated_at"] = self.clock()


class ImmediateExecutor(Executor):
    """Runs submitted callables inline and returns a completed Future."""

    def __init__(self):
        self.submitted = 0

    def submit(self, fn, *args, **kwargs):
        self.submitted += 1
        future: Future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future


@pytest.fixture
def fake_db():
    """Fresh in-memory database."""
    return FakeDatabase()


@pytest.fixture
def fake_store(fake_db):
    """Foreground connection to the in-memory database."""
    return FakeLogStore(fake_db)


@pytest.fixture
def immediate_executor():
    """Executor that runs background jobs inline."""
    return ImmediateExecutor()


@pytest.fixture
def pipeline_options():
    """Pipeline options with enrichment enabled and default limits."""
    return PipelineOptions(enrichment_enabled=True, cache_window_hours=4, backfill_row_limit=100)


@pytest.fixture
def create_event():
    """
    Return a function that creates RawEvent objects with sensible defaults.

    All defaults can be overridden via keyword arguments.

    Example:
        event = create_event(transaction_id="T1", tags="a,b")
    """

    def _create_event(
        transaction_id: str = "T1",
        message: str = "Test message",
        timestamp: Optional[datetime] = None,
        **kwargs,
    ) -> RawEvent:
        if timestamp is None:
            timestamp = datetime(2024, 6, 15, 20, 0, tzinfo=timezone.utc)

        defaults = {
            "transaction_id": transaction_id,
            "message": message,
            "timestamp": timestamp,
            "logging_level": "INFO",
            "logging_level_ordinal": 5,
            "logged_by_id": "005000000000001",
            "logged_by_username": "test.user@example.com",
            "organization_id": "00D000000000001",
            "organization_name": "Test Org",
            "organization_instance_name": "NA1",
            "session_type": "Aura",
            "limits_cpu_time_max": 10000,
            "limits_cpu_time_used": 42,
            "limits_queries_max": 100,
            "limits_queries_used": 3,
        }
        defaults.update(kwargs)
        return RawEvent(**defaults)

    return _create_event
