"""High-level sync workflows: initial, ongoing, webhook and post-create setup.

SyncOrchestrator is stateless. It creates processes through
ProcessManager and queues the first unit of work through QueueManager;
everything after that is driven by queue handlers.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any

import structlog

from src.bridge.config import get_settings
from src.bridge.sync.process_manager import ProcessManager
from src.bridge.sync.queue_manager import QueueManager
from src.bridge.sync.repository import ProcessRepository
from src.bridge.sync.schemas import (
    IntegrationContext,
    PaginationType,
    ProcessState,
    SyncConfig,
    SyncType,
    TaskAction,
    utcnow,
)
from src.bridge.target.client import TargetPlatformClient
from src.bridge.vendors.base import CRMVendor

logger = structlog.get_logger(__name__)

TARGET_WEBHOOK_EVENTS = [
    "call.completed",
    "call.recording.completed",
    "message.received",
    "message.delivered",
]


class SyncOrchestrator:
    """Start sync runs and the one-shot integration setup.

    Args:
        integration: The integration being synced.
        vendor: CRM vendor (webhook registration).
        target: Target platform client (webhook registration).
        process_manager: ProcessManager for creating processes.
        queue_manager: QueueManager for queuing the first page.
        processes: ProcessRepository for history queries.
        sync_config: Vendor sync configuration.
    """

    def __init__(
        self,
        integration: IntegrationContext,
        vendor: CRMVendor,
        target: TargetPlatformClient,
        process_manager: ProcessManager,
        queue_manager: QueueManager,
        processes: ProcessRepository,
        sync_config: SyncConfig,
    ) -> None:
        self._integration = integration
        self._vendor = vendor
        self._target = target
        self._process_manager = process_manager
        self._queue_manager = queue_manager
        self._processes = processes
        self._config = sync_config

    @property
    def integration_id(self) -> str:
        return self._integration.integration_id

    def _object_types(self, object_types: list[str] | None) -> list[str]:
        types = object_types if object_types is not None else self._config.person_object_types
        if not types:
            msg = "No person object types configured for sync"
            raise ValueError(msg)
        if not self._integration.user_id:
            msg = f"Cannot start sync: user_id not available on integration {self.integration_id}"
            raise ValueError(msg)
        return list(types)

    async def _queue_first_page(
        self,
        process_id: str,
        object_type: str,
        limit: int,
        modified_since: datetime | None,
        sort_desc: bool,
    ) -> None:
        cursor_based = self._config.pagination_type == PaginationType.CURSOR_BASED
        await self._queue_manager.queue_fetch_person_page(
            process_id,
            object_type,
            limit=limit,
            page=None if cursor_based else 0,
            cursor=None,
            modified_since=modified_since,
            sort_desc=sort_desc,
        )

    # ── Sync Workflows ──────────────────────────────────────────────────────

    async def start_initial_sync(self, object_types: list[str] | None = None) -> dict[str, Any]:
        """Full sync of every person object type, newest first when configured."""
        types = self._object_types(object_types)
        limit = self._config.initial_batch_size
        process_ids: list[str] = []

        for object_type in types:
            process = await self._process_manager.create_sync_process(
                self.integration_id,
                self._integration.user_id,
                SyncType.INITIAL,
                object_type,
                page_size=limit,
            )
            process_ids.append(process.id)
            await self._queue_first_page(
                process.id,
                object_type,
                limit=limit,
                modified_since=None,
                sort_desc=self._config.reverse_chronological,
            )

        logger.info(
            "orchestrator.initial_sync_started",
            integration_id=self.integration_id,
            object_types=types,
            process_ids=process_ids,
        )
        return {
            "message": f"Initial sync started for {len(types)} person type(s)",
            "process_ids": process_ids,
            "object_types": types,
            "estimated_completion": (utcnow() + timedelta(minutes=10)).isoformat(),
        }

    async def start_ongoing_sync(
        self,
        object_types: list[str] | None = None,
        last_sync_time: datetime | None = None,
    ) -> dict[str, Any]:
        """Delta sync of records modified since each type's last full or delta run.

        An explicit ``last_sync_time`` applies to every object type.
        """
        types = self._object_types(object_types)
        limit = self._config.ongoing_batch_size
        process_ids: list[str] = []
        watermarks: dict[str, str | None] = {}

        for object_type in types:
            since = last_sync_time or await self.get_last_sync_time(object_type)
            watermarks[object_type] = since.isoformat() if since else None
            process = await self._process_manager.create_sync_process(
                self.integration_id,
                self._integration.user_id,
                SyncType.ONGOING,
                object_type,
                page_size=limit,
                last_synced_timestamp=since,
            )
            process_ids.append(process.id)
            await self._queue_first_page(
                process.id,
                object_type,
                limit=limit,
                modified_since=since,
                sort_desc=False,
            )

        logger.info(
            "orchestrator.ongoing_sync_started",
            integration_id=self.integration_id,
            object_types=types,
            last_sync_times=watermarks,
        )
        return {
            "message": "Ongoing sync started",
            "process_ids": process_ids,
            "last_sync_times": watermarks,
        }

    async def handle_webhook(
        self,
        records: list[dict[str, Any]] | dict[str, Any] | None,
        object_type: str | None = None,
    ) -> dict[str, Any]:
        """Queue a one-batch WEBHOOK process for records pushed by the CRM."""
        if not records:
            return {"status": "skipped", "message": "No data in webhook", "count": 0}

        batch = records if isinstance(records, list) else [records]
        object_type = object_type or self._object_types(None)[0]

        process = await self._process_manager.create_sync_process(
            self.integration_id,
            self._integration.user_id,
            SyncType.WEBHOOK,
            object_type,
            total_records=len(batch),
        )
        await self._process_manager.update_state(process.id, ProcessState.PROCESSING_BATCHES)
        await self._process_manager.update_total(process.id, len(batch), 1)
        await self._queue_manager.queue_process_person_batch(
            process.id,
            [str(record["id"]) for record in batch],
            is_webhook=True,
        )

        logger.info(
            "orchestrator.webhook_queued",
            integration_id=self.integration_id,
            process_id=process.id,
            count=len(batch),
        )
        return {"status": "queued", "process_id": process.id, "count": len(batch)}

    # ── History ─────────────────────────────────────────────────────────────

    async def get_last_sync_time(self, object_type: str | None = None) -> datetime | None:
        """End time of the most recent completed INITIAL or ONGOING sync.

        WEBHOOK runs only cover the records that were pushed, so they never
        move the delta watermark.
        """
        process = await self._processes.find_latest_completed(
            self.integration_id,
            object_type,
            sync_types=(SyncType.INITIAL, SyncType.ONGOING),
        )
        if process is None:
            return None
        return process.context.end_time

    async def has_active_syncs(self) -> bool:
        return bool(await self._processes.find_active(self.integration_id))

    # ── Integration Setup ───────────────────────────────────────────────────

    async def schedule_post_create_setup(self) -> None:
        """Queue POST_CREATE_SETUP so the CRM finishes provisioning first."""
        await self._queue_manager.queue_message(
            TaskAction.POST_CREATE_SETUP,
            {"integration_id": self.integration_id},
            delay_seconds=self._integration.settings.get(
                "on_create_delay_seconds", get_settings().ON_CREATE_DELAY_SECONDS
            ),
        )

    async def setup_webhooks(self) -> dict[str, Any]:
        """Register the CRM and target-platform webhooks side by side.

        One side failing is recorded as a warning and never prevents the
        other registration.
        """
        webhook_url = self._integration.settings.get("target_webhook_url")
        target_call = (
            self._target.create_webhook({
                "url": webhook_url,
                "events": TARGET_WEBHOOK_EVENTS,
                "label": f"crm-bridge-{self.integration_id}",
            })
            if webhook_url
            else _missing_webhook_url()
        )
        crm_result, target_result = await asyncio.gather(
            self._vendor.setup_webhooks(),
            target_call,
            return_exceptions=True,
        )

        warnings: list[str] = []
        results: dict[str, Any] = {}
        for side, outcome in (("crm", crm_result), ("target", target_result)):
            if isinstance(outcome, BaseException):
                logger.warning(
                    "orchestrator.webhook_setup_failed",
                    integration_id=self.integration_id,
                    side=side,
                    error=str(outcome),
                )
                warnings.append(f"{side}: {outcome}")
                results[side] = {"status": "failed", "error": str(outcome)}
            else:
                results[side] = {"status": "configured", **(outcome or {})}

        failed = len(warnings)
        results["overall_status"] = "success" if failed == 0 else "partial" if failed == 1 else "failed"
        results["warnings"] = warnings
        return results

    async def post_create_setup(self) -> dict[str, Any]:
        """Webhook registration then initial sync; each step fails on its own."""
        result: dict[str, Any] = {}

        if self._integration.webhooks_enabled and self._config.supports_webhooks:
            try:
                result["webhooks"] = await self.setup_webhooks()
            except Exception as exc:
                logger.error(
                    "orchestrator.webhook_setup_error",
                    integration_id=self.integration_id,
                    error=str(exc),
                )
                result["webhooks"] = {"status": "failed", "error": str(exc)}
        else:
            result["webhooks"] = {"status": "skipped"}

        try:
            result["initial_sync"] = await self.start_initial_sync()
        except Exception as exc:
            logger.error(
                "orchestrator.initial_sync_error",
                integration_id=self.integration_id,
                error=str(exc),
            )
            result["initial_sync"] = {"status": "failed", "error": str(exc)}

        logger.info(
            "orchestrator.post_create_setup_done",
            integration_id=self.integration_id,
            webhooks=result["webhooks"].get("overall_status", result["webhooks"].get("status")),
        )
        return result


async def _missing_webhook_url() -> dict[str, Any]:
    msg = "target_webhook_url is not set in integration settings"
    raise ValueError(msg)
