"""Synthetic CRM for load testing and local runs.

Generates deterministic contacts on the fly: record ``i`` (zero-based)
has id ``i + 1``, first name ``Test{i}`` and phone ``+1555{i:07d}``. No
network calls are made. ``synthetic`` pages by number and reports a
total; ``synthetic-cursor`` pages by an opaque offset cursor and never
reports a total.

Integration settings:
    total_records: Size of the fake CRM (default 10000).
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import structlog

from src.bridge.sync.schemas import (
    FetchPageResult,
    PaginationType,
    QueueConfig,
    SyncConfig,
    TargetContact,
    VendorConfig,
)
from src.bridge.vendors.base import ActivityRecord, CRMVendor

logger = structlog.get_logger(__name__)

DEFAULT_TOTAL_RECORDS = 10000
_EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def generate_contact(index: int) -> dict[str, Any]:
    """Deterministic CRM record for zero-based ``index``."""
    return {
        "id": index + 1,
        "first_name": f"Test{index}",
        "last_name": f"Contact{index}",
        "company": f"Company {index // 10}",
        "emails": [{"type": "work", "address": f"test{index}@example.com", "primary": True}],
        "phones": [{"type": "work", "number": f"+1555{index:07d}", "primary": True}],
        "updated_at": (_EPOCH + timedelta(minutes=index)).isoformat(),
    }


class SyntheticVendor(CRMVendor):
    """Page-based synthetic CRM."""

    name = "synthetic"

    @classmethod
    def default_config(cls) -> VendorConfig:
        return VendorConfig(
            name=cls.name,
            sync=SyncConfig(
                pagination_type=PaginationType.PAGE_BASED,
                initial_batch_size=500,
                ongoing_batch_size=250,
                return_full_records=True,
            ),
            queue=QueueConfig(max_workers=100, task_timeout_seconds=300),
        )

    @property
    def total_records(self) -> int:
        return int(self.integration.settings.get("total_records", DEFAULT_TOTAL_RECORDS))

    def _slice(self, offset: int, limit: int) -> list[dict[str, Any]]:
        end = min(offset + limit, self.total_records)
        return [generate_contact(i) for i in range(max(offset, 0), end)]

    async def fetch_page(
        self,
        object_type: str,
        limit: int,
        page: int | None = None,
        cursor: str | None = None,
        modified_since: datetime | None = None,
        sort_desc: bool = True,
    ) -> FetchPageResult:
        offset = (page or 0) * limit
        records = self._slice(offset, limit)
        return FetchPageResult(
            records=records,
            total=self.total_records,
            has_more=offset + len(records) < self.total_records,
        )

    def transform_record(self, record: dict[str, Any]) -> TargetContact:
        return TargetContact(
            external_id=str(record["id"]),
            source=self.name,
            default_fields={
                "firstName": record.get("first_name"),
                "lastName": record.get("last_name"),
                "company": record.get("company"),
                "phoneNumbers": [
                    {"name": p["type"], "value": p["number"]} for p in record.get("phones", [])
                ],
                "emails": [
                    {"name": e["type"], "value": e["address"]} for e in record.get("emails", [])
                ],
            },
        )

    async def fetch_records_by_ids(
        self, object_type: str, ids: list[str]
    ) -> list[dict[str, Any]]:
        records = []
        for record_id in ids:
            index = int(record_id) - 1
            if 0 <= index < self.total_records:
                records.append(generate_contact(index))
        return records

    async def find_contact_by_phone(self, phone_number: str) -> dict[str, Any] | None:
        digits = phone_number.lstrip("+")
        if not digits.startswith("1555") or not digits[4:].isdigit():
            return None
        index = int(digits[4:])
        if index >= self.total_records:
            return None
        return generate_contact(index)

    async def log_message_activity(self, activity: ActivityRecord) -> str:
        logger.info(
            "synthetic.message_logged",
            contact_id=activity.contact_id,
            event_id=activity.event_id,
        )
        return f"synthetic-note-{activity.event_id}"

    async def log_call_activity(self, activity: ActivityRecord) -> str:
        logger.info(
            "synthetic.call_logged",
            contact_id=activity.contact_id,
            event_id=activity.event_id,
        )
        return f"synthetic-call-{activity.event_id}-{activity.contact_id}"

    async def setup_webhooks(self) -> dict[str, Any]:
        logger.info("synthetic.webhooks_configured", integration_id=self.integration.integration_id)
        return {"status": "configured", "webhook_id": f"synthetic-{self.integration.integration_id}"}


class SyntheticCursorVendor(SyntheticVendor):
    """Cursor-based synthetic CRM: the cursor is the next offset, no total."""

    name = "synthetic-cursor"

    @classmethod
    def default_config(cls) -> VendorConfig:
        config = super().default_config()
        config.name = cls.name
        config.sync.pagination_type = PaginationType.CURSOR_BASED
        return config

    async def fetch_page(
        self,
        object_type: str,
        limit: int,
        page: int | None = None,
        cursor: str | None = None,
        modified_since: datetime | None = None,
        sort_desc: bool = True,
    ) -> FetchPageResult:
        offset = int(cursor) if cursor else 0
        records = self._slice(offset, limit)
        next_offset = offset + len(records)
        has_more = next_offset < self.total_records
        return FetchPageResult(
            records=records,
            next_cursor=str(next_offset) if has_more else None,
            has_more=has_more,
        )
