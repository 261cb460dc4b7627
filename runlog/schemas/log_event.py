"""
Schemas for transaction log events and the records built from them.

A RawEvent is delivered by the event feed, one per log statement. All events
of one transaction are normalized into a single LogRun (the shared context of
the transaction) and one LogEntry per event. Tags parsed from the events are
kept in a registry (Tag) and associated with runs and entries (TagLink).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, StrictStr, field_validator


def _utc_now() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


# ============================================================================
# GOVERNOR LIMITS
# ============================================================================

# Each resource has a declared maximum and a used counter, captured when the
# event was emitted: limits_<name>_max / limits_<name>_used.
GOVERNOR_LIMITS = (
    "aggregate_queries",
    "async_calls",
    "callouts",
    "cpu_time",
    "dml_rows",
    "dml_statements",
    "email_invocations",
    "future_calls",
    "heap_size",
    "mobile_push_apex_calls",
    "publish_immediate_dml",
    "queries",
    "query_locator_rows",
    "query_rows",
    "queueable_jobs",
    "sosl_searches",
)


# ============================================================================
# RAW EVENT
# ============================================================================


class RawEvent(BaseModel):
    """
    One log event as delivered by the event feed.

    Events are immutable. Run-level context (user, org, session, network) is
    repeated on every event of a transaction; only the first event of a batch
    is used to build the run.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    # Transaction identity
    transaction_id: str = Field(..., min_length=1)
    parent_transaction_id: Optional[str] = None
    transaction_entry_number: Optional[int] = None
    request_id: Optional[str] = None

    # Timestamp, in two encodings. The string one is authoritative when set.
    timestamp: Optional[datetime] = None
    timestamp_string: Optional[str] = None

    # Comma-delimited free-text tags
    tags: Optional[str] = None

    # Entry payload
    message: Optional[str] = None
    message_truncated: bool = False
    logging_level: Optional[str] = None
    logging_level_ordinal: Optional[int] = None
    origin_type: Optional[str] = None
    origin_location: Optional[str] = None
    exception_type: Optional[str] = None
    exception_message: Optional[str] = None
    exception_stack_trace: Optional[str] = None
    stack_trace: Optional[str] = None
    related_record_id: Optional[str] = None
    record_json: Optional[str] = None
    record_sobject_type: Optional[str] = None
    trigger_operation_type: Optional[str] = None
    trigger_sobject_type: Optional[str] = None
    trigger_is_executing: bool = False

    # Governor limits
    limits_aggregate_queries_max: Optional[int] = None
    limits_aggregate_queries_used: Optional[int] = None
    limits_async_calls_max: Optional[int] = None
    limits_async_calls_used: Optional[int] = None
    limits_callouts_max: Optional[int] = None
    limits_callouts_used: Optional[int] = None
    limits_cpu_time_max: Optional[int] = None
    limits_cpu_time_used: Optional[int] = None
    limits_dml_rows_max: Optional[int] = None
    limits_dml_rows_used: Optional[int] = None
    limits_dml_statements_max: Optional[int] = None
    limits_dml_statements_used: Optional[int] = None
    limits_email_invocations_max: Optional[int] = None
    limits_email_invocations_used: Optional[int] = None
    limits_future_calls_max: Optional[int] = None
    limits_future_calls_used: Optional[int] = None
    limits_heap_size_max: Optional[int] = None
    limits_heap_size_used: Optional[int] = None
    limits_mobile_push_apex_calls_max: Optional[int] = None
    limits_mobile_push_apex_calls_used: Optional[int] = None
    limits_publish_immediate_dml_max: Optional[int] = None
    limits_publish_immediate_dml_used: Optional[int] = None
    limits_queries_max: Optional[int] = None
    limits_queries_used: Optional[int] = None
    limits_query_locator_rows_max: Optional[int] = None
    limits_query_locator_rows_used: Optional[int] = None
    limits_query_rows_max: Optional[int] = None
    limits_query_rows_used: Optional[int] = None
    limits_queueable_jobs_max: Optional[int] = None
    limits_queueable_jobs_used: Optional[int] = None
    limits_sosl_searches_max: Optional[int] = None
    limits_sosl_searches_used: Optional[int] = None

    # User context
    logged_by_id: Optional[str] = None
    logged_by_username: Optional[str] = None
    user_type: Optional[str] = None
    user_logging_level: Optional[str] = None
    user_logging_level_ordinal: Optional[int] = None
    profile_id: Optional[str] = None
    profile_name: Optional[str] = None
    user_role_id: Optional[str] = None
    user_role_name: Optional[str] = None
    user_license_id: Optional[str] = None
    user_license_name: Optional[str] = None
    user_license_definition_key: Optional[str] = None
    locale: Optional[str] = None
    time_zone_id: Optional[str] = None
    time_zone_name: Optional[str] = None
    system_mode: Optional[str] = None

    # Organization context
    organization_id: Optional[str] = None
    organization_name: Optional[str] = None
    organization_namespace_prefix: Optional[str] = None
    organization_type: Optional[str] = None
    organization_instance_name: Optional[str] = None
    organization_domain_url: Optional[str] = None
    organization_environment_type: Optional[str] = None
    organization_api_version: Optional[str] = None

    # Session context
    session_id: Optional[str] = None
    session_type: Optional[str] = None
    session_security_level: Optional[str] = None
    source_ip: Optional[str] = None
    login_history_id: Optional[str] = None
    login_application: Optional[str] = None
    login_browser: Optional[str] = None
    login_platform: Optional[str] = None
    login_type: Optional[str] = None
    logout_url: Optional[str] = None

    # Network (community) context
    network_id: Optional[str] = None
    network_name: Optional[str] = None
    network_url: Optional[str] = None
    network_login_url: Optional[str] = None
    network_logout_url: Optional[str] = None
    network_self_registration_url: Optional[str] = None

    @field_validator("parent_transaction_id", "timestamp_string", "tags", mode="before")
    @classmethod
    def blank_to_none(cls, v: Any) -> Any:
        """Treat blank strings as missing."""
        if isinstance(v, str) and not v.strip():
            return None
        return v


# Fields copied from the first event of a batch onto its LogRun
RUN_CONTEXT_FIELDS = (
    "logged_by_id",
    "logged_by_username",
    "user_type",
    "user_logging_level",
    "user_logging_level_ordinal",
    "profile_id",
    "profile_name",
    "user_role_id",
    "user_role_name",
    "user_license_id",
    "user_license_name",
    "user_license_definition_key",
    "locale",
    "time_zone_id",
    "time_zone_name",
    "system_mode",
    "organization_id",
    "organization_name",
    "organization_namespace_prefix",
    "organization_type",
    "organization_instance_name",
    "organization_domain_url",
    "organization_environment_type",
    "organization_api_version",
    "session_id",
    "session_type",
    "session_security_level",
    "source_ip",
    "login_history_id",
    "login_application",
    "login_browser",
    "login_platform",
    "login_type",
    "logout_url",
    "network_id",
    "network_name",
    "network_url",
    "network_login_url",
    "network_logout_url",
    "network_self_registration_url",
)

# Fields copied verbatim from every event onto its LogEntry
ENTRY_PAYLOAD_FIELDS = (
    "transaction_entry_number",
    "request_id",
    "message",
    "message_truncated",
    "logging_level",
    "logging_level_ordinal",
    "origin_type",
    "origin_location",
    "exception_type",
    "exception_message",
    "exception_stack_trace",
    "stack_trace",
    "related_record_id",
    "record_json",
    "record_sobject_type",
    "trigger_operation_type",
    "trigger_sobject_type",
    "trigger_is_executing",
) + tuple(f"limits_{name}_{kind}" for name in GOVERNOR_LIMITS for kind in ("max", "used"))


# ============================================================================
# NORMALIZED RECORDS
# ============================================================================


class EnrichmentState(str, Enum):
    """Release enrichment state of a run."""

    UNENRICHED = "unenriched"
    ENRICHMENT_REQUESTED = "enrichment_requested"
    ENRICHED = "enriched"


class ReleaseInfo(BaseModel):
    """Release metadata returned by the status endpoint."""

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    release_number: StrictStr = Field(..., alias="releaseNumber", min_length=1)
    release_version: StrictStr = Field(..., alias="releaseVersion", min_length=1)


class LogRun(BaseModel):
    """
    Aggregate record for one transaction.

    `parent_transaction_id` is a weak link: the parent run may not exist yet,
    or ever. Release fields stay empty until enrichment fills them.
    """

    log_run_id: Optional[int] = None
    transaction_id: str = Field(..., min_length=1)
    parent_transaction_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    release_number: Optional[str] = None
    release_version: Optional[str] = None
    created_at: datetime = Field(default_factory=_utc_now)

    @property
    def is_enriched(self) -> bool:
        return bool(self.release_number and self.release_version)

    def apply_release(self, release: ReleaseInfo) -> None:
        """Copy release fields onto this run."""
        self.release_number = release.release_number
        self.release_version = release.release_version


class LogEntry(BaseModel):
    """Detail record for one event, owned by its LogRun."""

    log_entry_id: Optional[int] = None
    log_run_id: int
    timestamp: datetime
    payload: Dict[str, Any] = Field(default_factory=dict)
    # Tag tokens parsed from the event; used for linking, not stored on the row
    tag_names: List[str] = Field(default_factory=list)


class Tag(BaseModel):
    """A tag registry entry, unique by exact (case-sensitive) name."""

    model_config = ConfigDict(frozen=True)

    tag_id: int
    name: str


class TagEntityType(str, Enum):
    """Kinds of records a tag can be linked to."""

    LOG_RUN = "log_run"
    LOG_ENTRY = "log_entry"


class TagLink(BaseModel):
    """An (entity, tag) association. Hashable so links dedupe as a set."""

    model_config = ConfigDict(frozen=True)

    entity_type: TagEntityType
    entity_id: int
    tag_id: int
