"""CRM vendor capability interface -- the five operations every CRM implements.

The sync engine drives every CRM through this ABC. A vendor is picked by
name from the static registry when the worker is built; its sync and
queue behaviour comes from ``default_config()`` and is handed to the
driver as an explicit value.

Required:
    fetch_page: List one page of person records (page- or cursor-addressed).
    transform_record: Map one CRM record to the target contact shape.
    log_message_activity: Record an SMS/message on a CRM contact.
    log_call_activity: Record a call on a CRM contact.
    setup_webhooks: Register the CRM-side webhook for record changes.

Optional (defaults provided):
    transform_records, fetch_records_by_ids, find_contact_by_phone.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.bridge.sync.errors import PhoneLookupUnsupportedError
from src.bridge.sync.schemas import (
    FetchPageResult,
    IntegrationContext,
    TargetContact,
    VendorConfig,
)


class ActivityRecord(BaseModel):
    """A call or message ready to be written to a CRM contact.

    Attributes:
        contact_id: CRM id of the contact the activity belongs to.
        direction: ``inbound`` or ``outbound``.
        title: One-line summary.
        body: Plain-text content.
        occurred_at: When the call/message happened.
        event_id: Target-platform id of the call/message.
        duration: Call length in seconds (calls only).
        voicemail_url: Voicemail recording link, if any (calls only).
    """

    contact_id: str
    direction: str
    title: str
    body: str = ""
    occurred_at: datetime | None = None
    event_id: str
    duration: int | None = None
    voicemail_url: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class CRMVendor(ABC):
    """Abstract interface for a CRM the bridge syncs from.

    Args:
        integration: The integration this vendor instance serves
            (credentials live in ``integration.settings``).
    """

    name: str = ""

    def __init__(self, integration: IntegrationContext) -> None:
        self.integration = integration

    @classmethod
    def default_config(cls) -> VendorConfig:
        """Sync and queue behaviour for this vendor."""
        return VendorConfig(name=cls.name)

    # ── Required ────────────────────────────────────────────────────────────

    @abstractmethod
    async def fetch_page(
        self,
        object_type: str,
        limit: int,
        page: int | None = None,
        cursor: str | None = None,
        modified_since: datetime | None = None,
        sort_desc: bool = True,
    ) -> FetchPageResult:
        """List one page of records. Must be a pure read.

        Raises:
            TransientVendorError: Rate limited or timed out.
        """
        ...

    @abstractmethod
    def transform_record(self, record: dict[str, Any]) -> TargetContact:
        """Map one CRM record to a target contact. Must be deterministic."""
        ...

    @abstractmethod
    async def log_message_activity(self, activity: ActivityRecord) -> str:
        """Write a message activity to the CRM, return the CRM activity id."""
        ...

    @abstractmethod
    async def log_call_activity(self, activity: ActivityRecord) -> str:
        """Write a call activity to the CRM, return the CRM activity id."""
        ...

    @abstractmethod
    async def setup_webhooks(self) -> dict[str, Any]:
        """Register the CRM record-change webhook pointing back at the bridge."""
        ...

    # ── Optional ────────────────────────────────────────────────────────────

    def transform_records(self, records: list[dict[str, Any]]) -> list[TargetContact]:
        return [self.transform_record(record) for record in records]

    async def fetch_records_by_ids(
        self, object_type: str, ids: list[str]
    ) -> list[dict[str, Any]]:
        """Fetch full records for ``ids`` when list pages carry only summaries."""
        raise NotImplementedError(f"{type(self).__name__} cannot fetch records by id")

    async def find_contact_by_phone(self, phone_number: str) -> dict[str, Any] | None:
        """Search the CRM for a contact with this phone number.

        Returns:
            A dict with at least ``id``, or None when nothing matches.
        """
        raise PhoneLookupUnsupportedError(
            f"{type(self).__name__} has no phone search"
        )
