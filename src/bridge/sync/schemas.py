"""Pydantic schemas for sync processes, mappings and vendor configuration.

Sync processes carry three nested documents:
- context: where the run is (sync kind, object type, page/cursor, timestamps)
- results: what the run achieved (aggregate counters and page counters)
- version: optimistic concurrency token bumped on every write

Mappings link one external identity (CRM id, phone number or inbound
event id) to one target-platform identity.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.bridge.config import get_settings


# ── Enums ───────────────────────────────────────────────────────────────────


class ProcessState(str, Enum):
    """Lifecycle states of a sync process."""

    INITIALIZING = "INITIALIZING"
    FETCHING_TOTAL = "FETCHING_TOTAL"
    QUEUING_PAGES = "QUEUING_PAGES"
    FETCHING_PAGE = "FETCHING_PAGE"
    PROCESSING_BATCHES = "PROCESSING_BATCHES"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


class SyncType(str, Enum):
    INITIAL = "INITIAL"
    ONGOING = "ONGOING"
    WEBHOOK = "WEBHOOK"


class PaginationType(str, Enum):
    """Whether the vendor list API reports a total (pages) or only a cursor."""

    PAGE_BASED = "PAGE_BASED"
    CURSOR_BASED = "CURSOR_BASED"


class EntityType(str, Enum):
    person = "person"
    activity = "activity"


class KeyType(str, Enum):
    external_id = "external_id"
    phone = "phone"
    event = "event"


class SyncMethod(str, Enum):
    bulk = "bulk"
    webhook = "webhook"


class MappingAction(str, Enum):
    created = "created"
    updated = "updated"
    deleted = "deleted"
    conflict_resolved = "conflict_resolved"
    backfill = "backfill"


class TaskAction(str, Enum):
    """Queue task types understood by the worker."""

    FETCH_PERSON_PAGE = "FETCH_PERSON_PAGE"
    PROCESS_PERSON_BATCH = "PROCESS_PERSON_BATCH"
    COMPLETE_SYNC = "COMPLETE_SYNC"
    POST_CREATE_SETUP = "POST_CREATE_SETUP"
    CRM_RECORD_EVENT = "CRM_RECORD_EVENT"
    LOG_CALL = "LOG_CALL"
    LOG_MESSAGE = "LOG_MESSAGE"


class RecordEvent(str, Enum):
    created = "created"
    updated = "updated"
    deleted = "deleted"


TERMINAL_STATES = frozenset({ProcessState.COMPLETED, ProcessState.ERROR})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_PHONE_STRIP = re.compile(r"[^\d+]")


def normalize_phone(phone: str | None) -> str | None:
    """Normalize a phone number to ``+<digits>`` form for mapping keys.

    Spaces, dashes, dots and parentheses are dropped. Ten-digit numbers
    without a country code are treated as North American.
    """
    if not phone:
        return None
    digits = _PHONE_STRIP.sub("", phone.strip())
    if not digits:
        return None
    if digits.startswith("+"):
        return "+" + digits[1:].replace("+", "")
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


# ── Sync Process ────────────────────────────────────────────────────────────


class Pagination(BaseModel):
    """Pagination bookkeeping for one sync run."""

    page_size: int
    current_cursor: str | None = None
    next_page: int = 0
    has_more: bool = True


class ProcessContext(BaseModel):
    """Where a sync run is. Patched through ProcessManager.update_state.

    Vendor-specific keys are tolerated (``extra="allow"``) so a context
    patch can carry provenance the core does not interpret.
    """

    model_config = ConfigDict(extra="allow")

    sync_type: SyncType
    object_type: str
    total_records: int = 0
    processed_records: int = 0
    current_page: int = 0
    pagination: Pagination
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = None
    estimated_completion: datetime | None = None
    last_synced_timestamp: datetime | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    # Set by handle_error
    error: str | None = None
    error_stack: str | None = None
    error_timestamp: datetime | None = None


class AggregateData(BaseModel):
    total_synced: int = 0
    total_failed: int = 0
    duration: float = 0.0
    records_per_second: float = 0.0
    errors: list[dict[str, Any]] = Field(default_factory=list)


class PageCounters(BaseModel):
    total_pages: int = 0
    processed_pages: int = 0
    failed_pages: int = 0
    reported_pages: list[int] = Field(default_factory=list)


class ProcessResults(BaseModel):
    aggregate_data: AggregateData = Field(default_factory=AggregateData)
    pages: PageCounters = Field(default_factory=PageCounters)


class SyncProcess(BaseModel):
    """One synchronization run for one (integration, object type) pair."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    integration_id: str
    user_id: str
    name: str
    type: str = "CRM_SYNC"
    state: ProcessState = ProcessState.INITIALIZING
    context: ProcessContext
    results: ProcessResults = Field(default_factory=ProcessResults)
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


# ── Mapping ─────────────────────────────────────────────────────────────────


class Mapping(BaseModel):
    """Link between one external identity and one target-platform identity.

    Keyed by (integration_id, source_key). ``source_key`` is the CRM id,
    the normalized phone number, or the inbound event id depending on
    ``key_type``.
    """

    integration_id: str
    source_key: str
    key_type: KeyType = KeyType.external_id
    external_id: str | None = None
    target_id: str | None = None
    entity_type: EntityType = EntityType.person
    phone_number: str | None = None
    last_synced_at: datetime = Field(default_factory=utcnow)
    sync_method: SyncMethod = SyncMethod.bulk
    action: MappingAction = MappingAction.created
    data: dict[str, Any] = Field(default_factory=dict)


# ── Vendor / Driver Values ──────────────────────────────────────────────────


class FetchPageResult(BaseModel):
    """One page from a vendor list API.

    Page-based vendors set ``total`` (None when the API did not report it).
    Cursor-based vendors set ``next_cursor`` and ``has_more``.
    """

    records: list[dict[str, Any]] = Field(default_factory=list)
    total: int | None = None
    next_cursor: str | None = None
    has_more: bool = False


class BulkUpsertResult(BaseModel):
    success_count: int = 0
    error_count: int = 0
    errors: list[dict[str, Any]] = Field(default_factory=list)


class TargetContact(BaseModel):
    """Contact payload in the target platform's shape."""

    model_config = ConfigDict(extra="allow")

    external_id: str
    source: str | None = None
    default_fields: dict[str, Any] = Field(default_factory=dict)
    custom_fields: list[dict[str, Any]] = Field(default_factory=list)

    @property
    def phone_numbers(self) -> list[str]:
        """Raw phone values listed under ``default_fields.phoneNumbers``."""
        return [
            p.get("value")
            for p in self.default_fields.get("phoneNumbers", [])
            if p.get("value")
        ]


class SyncConfig(BaseModel):
    """Per-vendor sync behaviour, passed to the driver at construction."""

    pagination_type: PaginationType = PaginationType.PAGE_BASED
    person_object_types: list[str] = Field(default_factory=lambda: ["contacts"])
    initial_batch_size: int = 100
    ongoing_batch_size: int = 50
    reverse_chronological: bool = True
    return_full_records: bool = False
    supports_webhooks: bool = True
    bulk_confirm_delay_seconds: float = Field(
        default_factory=lambda: get_settings().BULK_CONFIRM_DELAY_SECONDS
    )
    voicemail_delay_seconds: int = Field(
        default_factory=lambda: get_settings().VOICEMAIL_DELAY_SECONDS
    )
    complete_sync_settle_seconds: int = Field(
        default_factory=lambda: get_settings().COMPLETE_SYNC_SETTLE_SECONDS
    )
    complete_sync_max_attempts: int = Field(
        default_factory=lambda: get_settings().COMPLETE_SYNC_MAX_ATTEMPTS
    )


class QueueConfig(BaseModel):
    """Per-vendor worker pool limits."""

    max_workers: int = Field(default_factory=lambda: get_settings().QUEUE_MAX_WORKERS)
    task_timeout_seconds: int = Field(
        default_factory=lambda: get_settings().QUEUE_TASK_TIMEOUT_SECONDS
    )
    max_retries: int = Field(default_factory=lambda: get_settings().QUEUE_MAX_RETRIES)


class VendorConfig(BaseModel):
    name: str
    sync: SyncConfig = Field(default_factory=SyncConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)


class IntegrationContext(BaseModel):
    """The integration a worker serves.

    Attributes:
        integration_id: Integration identifier (queue and mapping scope).
        user_id: Owning user, stamped on every sync process.
        vendor: Registry name of the CRM vendor.
        phone_numbers: The integration's own target-platform numbers. Call
            participants matching one of these are not external contacts.
        webhooks_enabled: Whether POST_CREATE_SETUP registers webhooks.
        settings: Vendor credentials/options, opaque to the core.
    """

    integration_id: str
    user_id: str
    vendor: str
    phone_numbers: list[str] = Field(default_factory=list)
    webhooks_enabled: bool = True
    settings: dict[str, Any] = Field(default_factory=dict)

    def is_own_number(self, phone: str | None) -> bool:
        normalized = normalize_phone(phone)
        return normalized is not None and normalized in {
            normalize_phone(p) for p in self.phone_numbers
        }
