"""
Release enrichment for runs.

Runs carry the release number and version of the instance that produced
them. Both come from a remote status endpoint, which is called as rarely as
possible:

1. A new run first copies release info from a run enriched recently (same
   day, within the cache window). No call is made.
2. Otherwise, a background job is scheduled, unless enrichment is disabled or
   another job for the task is already pending or active. The single in-flight
   slot is claimed through a uniquely indexed job row before launching.
3. The job calls the endpoint once and back-fills every run created today
   that still lacks release info.

Failures of the job are logged and recorded on the job row; they never reach
the batch that triggered it.
"""

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

import requests

from runlog.configs.config import PipelineOptions
from runlog.configs.settings import Settings
from runlog.ingestion.errors import EnrichmentError
from runlog.ingestion.persist import JobStatus, LogStore
from runlog.monitoring.logging import with_context
from runlog.schemas.log_event import ReleaseInfo

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def start_of_day(now: datetime) -> datetime:
    """Midnight UTC of the day containing `now`."""
    now = now.astimezone(timezone.utc)
    return datetime(now.year, now.month, now.day, tzinfo=timezone.utc)


def cache_window_start(now: datetime, window_hours: float) -> datetime:
    """Start of the recent-run cache window, never before today."""
    return max(now - timedelta(hours=window_hours), start_of_day(now))


class ReleaseStatusClient:
    """HTTP client for the instance status endpoint."""

    def __init__(
        self,
        endpoint: str,
        timeout: float = 10.0,
        token: Optional[str] = None,
    ):
        """
        Initialize the client.

        Args:
            endpoint: Full status URL, https://<host>/v1/instances/<instance>/status
            timeout: Request timeout in seconds
            token: Optional bearer token
        """
        self.endpoint = endpoint
        self.timeout = timeout
        self.token = token
        self._session: Optional[requests.Session] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReleaseStatusClient":
        endpoint = settings.status_endpoint()
        if not endpoint:
            raise EnrichmentError("INSTANCE_NAME is not configured; cannot build status endpoint")
        token = settings.STATUS_API_TOKEN.get_secret_value() if settings.STATUS_API_TOKEN else None
        return cls(endpoint, timeout=settings.REQUEST_TIMEOUT_SECONDS, token=token)

    def _get_session(self) -> requests.Session:
        """Get or create HTTP session."""
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"Accept": "application/json"})
            if self.token:
                self._session.headers["Authorization"] = f"Bearer {self.token}"
        return self._session

    def fetch_release(self) -> ReleaseInfo:
        """
        Fetch the current release of the instance.

        Raises:
            EnrichmentError: On transport errors, status >= 400 or a body
                without string releaseNumber/releaseVersion
        """
        try:
            response = self._get_session().get(self.endpoint, timeout=self.timeout)
        except requests.RequestException as e:
            raise EnrichmentError(f"Status request to {self.endpoint} failed: {e}") from e

        if response.status_code >= 400:
            raise EnrichmentError(
                f"Status request to {self.endpoint} returned {response.status_code}",
                status_code=response.status_code,
            )

        # requests' JSONDecodeError and pydantic's ValidationError are both ValueErrors
        try:
            return ReleaseInfo.model_validate(response.json())
        except ValueError as e:
            raise EnrichmentError(
                f"Unparsable status response from {self.endpoint}: {e}",
                status_code=response.status_code,
            ) from e

    def close(self) -> None:
        """Close HTTP session."""
        if self._session:
            self._session.close()
            self._session = None


class EnrichmentScheduler:
    """
    Decides when to enrich runs and runs the enrichment job.

    The foreground store is used for the cache lookup and the job claim.
    The background job opens its own store through `store_factory`.
    """

    def __init__(
        self,
        store: LogStore,
        options: PipelineOptions,
        store_factory: Callable[[], LogStore],
        client_factory: Callable[[], ReleaseStatusClient],
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = _utc_now,
        job_lease: timedelta = timedelta(minutes=30),
    ):
        self.store = store
        self.options = options
        self.store_factory = store_factory
        self.client_factory = client_factory
        self.clock = clock
        self.job_lease = job_lease
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=options.max_background_workers,
            thread_name_prefix="runlog-enrichment",
        )

    # ------------------------------------------------------------------
    # Foreground
    # ------------------------------------------------------------------

    def find_cached_release(self) -> Optional[ReleaseInfo]:
        """Release info of the latest run enriched within the cache window, if any."""
        since = cache_window_start(self.clock(), self.options.cache_window_hours)
        recent = self.store.find_recent_enriched_run(since)
        if recent is None or not recent.is_enriched:
            return None

        logger.debug(f"Reusing release info of run {recent.transaction_id}")
        return ReleaseInfo(
            release_number=recent.release_number,
            release_version=recent.release_version,
        )

    def maybe_schedule(self) -> Optional[Future]:
        """
        Schedule the enrichment job unless disabled or already in flight.

        Commits the foreground store once a job row is claimed.

        Returns:
            Handle of the submitted job, or None when declined
        """
        task_name = self.options.task_name
        if not self.options.enrichment_enabled:
            logger.debug("Release enrichment disabled, not scheduling")
            return None

        in_flight = self.store.count_in_flight_jobs(task_name)
        if in_flight:
            logger.info(f"{in_flight} enrichment job(s) already in flight for {task_name}")
            return None

        job_id = self.claim_job()
        if job_id is None:
            return None

        try:
            future = self.executor.submit(self.run_enrichment, job_id)
        except RuntimeError as e:
            # Executor already shut down
            logger.error(f"Could not submit enrichment job {job_id}: {e}")
            self.store.update_job_status(job_id, JobStatus.FAILED, str(e))
            self.store.commit()
            return None

        logger.info(f"Scheduled enrichment job {job_id} for {task_name}")
        return future

    def claim_job(self) -> Optional[int]:
        """Claim the in-flight slot for this task and commit the claim."""
        stale_before = self.clock() - self.job_lease
        job_id = self.store.claim_enrichment_job(self.options.task_name, stale_before)
        self.store.commit()
        if job_id is None:
            logger.info(f"Enrichment slot for {self.options.task_name} is held by another job")
        return job_id

    # ------------------------------------------------------------------
    # Background
    # ------------------------------------------------------------------

    def run_enrichment(self, job_id: int) -> int:
        """
        Fetch release info and back-fill today's unenriched runs.

        Returns:
            Number of runs updated

        Raises:
            EnrichmentError: If the status call fails; the job is marked failed
                and no run is updated
        """
        log = with_context(logger, stage="enrichment", job_id=job_id)
        store = self.store_factory()
        try:
            store.update_job_status(job_id, JobStatus.ACTIVE)
            store.commit()

            try:
                client = self.client_factory()
                try:
                    release = client.fetch_release()
                finally:
                    client.close()

                since = start_of_day(self.clock())
                updated = store.backfill_release(release, since, self.options.backfill_row_limit)
                store.update_job_status(job_id, JobStatus.SUCCEEDED)
                store.commit()
            except Exception as e:
                store.rollback()
                log.error(f"Enrichment job failed: {e}")
                store.update_job_status(job_id, JobStatus.FAILED, str(e))
                store.commit()
                raise

            log.info(
                f"Release {release.release_number} "
                f"({release.release_version}) applied to {updated} run(s)"
            )
            return updated
        finally:
            store.close()

    def shutdown(self, wait: bool = True) -> None:
        """Shut down the executor if this scheduler created it."""
        if self._owns_executor:
            self.executor.shutdown(wait=wait)
