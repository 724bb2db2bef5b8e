"""Pagination driver -- turns page-fetch tasks into fan-out, batches and completion.

Two strategies, chosen by ``SyncConfig.pagination_type``:

Page-based (the vendor reports a total):
    Page 0 learns the total, fans out pages 1..N-1 in one enqueue and
    moves the process to PROCESSING_BATCHES. Every page queues a
    PROCESS_PERSON_BATCH for its ids. The last page (or any underfull
    page after page 0) queues COMPLETE_SYNC. Without a total the driver
    walks pages sequentially instead.

Cursor-based (the vendor only hands back a next cursor):
    Each page is processed inline, its counters accumulate in
    ``context.metadata`` and the next cursor is queued until the vendor
    reports no more pages, which queues COMPLETE_SYNC exactly once.

Every handler loads the process first and does nothing for a process
that is already COMPLETED or ERROR, which is how a failed sync stops
its fan-out. TransientVendorError propagates untouched for redelivery;
any other failure marks the process ERROR and propagates to the
dead-letter path.
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any

import structlog

from src.bridge.sync.errors import (
    NonRetryableTaskError,
    ProcessFailedError,
    ProcessNotFoundError,
    ProcessTerminalError,
    TransientVendorError,
)
from src.bridge.sync.mappings import MappingService
from src.bridge.sync.process_manager import ProcessManager
from src.bridge.sync.queue_manager import QueueManager
from src.bridge.sync.schemas import (
    BulkUpsertResult,
    PaginationType,
    ProcessState,
    SyncConfig,
    SyncProcess,
)
from src.bridge.vendors.base import CRMVendor

logger = structlog.get_logger(__name__)

# Forward progress order; FETCHING_TOTAL and FETCHING_PAGE are the two
# strategies' fetch states.
_STATE_RANK = {
    ProcessState.INITIALIZING: 0,
    ProcessState.FETCHING_TOTAL: 1,
    ProcessState.FETCHING_PAGE: 1,
    ProcessState.QUEUING_PAGES: 2,
    ProcessState.PROCESSING_BATCHES: 3,
}


def _parse_since(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SyncDriver:
    """Handle FETCH_PERSON_PAGE, PROCESS_PERSON_BATCH and COMPLETE_SYNC tasks.

    Args:
        vendor: CRM vendor the pages come from.
        process_manager: ProcessManager for state, totals and metrics.
        queue_manager: QueueManager for continuations.
        mappings: MappingService performing the bulk upsert.
        sync_config: Pagination strategy and batch tuning for the vendor.
    """

    def __init__(
        self,
        vendor: CRMVendor,
        process_manager: ProcessManager,
        queue_manager: QueueManager,
        mappings: MappingService,
        sync_config: SyncConfig,
    ) -> None:
        self._vendor = vendor
        self._processes = process_manager
        self._queue = queue_manager
        self._mappings = mappings
        self._config = sync_config

    # ── Shared Helpers ──────────────────────────────────────────────────────

    async def _load(self, process_id: str) -> SyncProcess | None:
        """Fetch the process; None means it is terminal and the task is skipped."""
        process = await self._processes.get_process(process_id)
        if process is None:
            raise ProcessNotFoundError(process_id)
        if process.is_terminal:
            logger.info(
                "driver.task_skipped_terminal",
                process_id=process_id,
                state=process.state.value,
            )
            return None
        return process

    async def _advance(
        self,
        process: SyncProcess,
        state: ProcessState,
        context_patch: dict[str, Any] | None = None,
    ) -> SyncProcess:
        """Move forward to ``state``; a redelivered task never moves the process back."""
        if _STATE_RANK[state] < _STATE_RANK[process.state]:
            return process
        return await self._processes.update_state(process.id, state, context_patch)

    async def _sync_records(
        self, object_type: str, records: list[dict[str, Any]], fetch_full: bool
    ) -> BulkUpsertResult:
        if fetch_full:
            ids = [str(r["id"]) for r in records]
            records = await self._vendor.fetch_records_by_ids(object_type, ids)
        contacts = self._vendor.transform_records(records)
        return await self._mappings.bulk_upsert_to_target(contacts)

    # ── FETCH_PERSON_PAGE ───────────────────────────────────────────────────

    async def fetch_person_page(self, payload: dict[str, Any]) -> None:
        """Route a page fetch to the configured pagination strategy."""
        process_id = payload["process_id"]
        try:
            if self._config.pagination_type == PaginationType.CURSOR_BASED:
                await self._handle_cursor_page(payload)
            else:
                await self._handle_numbered_page(payload)
        except ProcessTerminalError:
            logger.info("driver.process_finished_concurrently", process_id=process_id)
        except Exception as exc:
            logger.error(
                "driver.page_failed",
                process_id=process_id,
                page=payload.get("page"),
                cursor=payload.get("cursor"),
                error=str(exc),
                transient=isinstance(exc, TransientVendorError),
            )
            if isinstance(exc, (TransientVendorError, ProcessNotFoundError)):
                raise
            await self._processes.handle_error(process_id, exc)
            raise ProcessFailedError(process_id, exc) from exc

    async def _handle_numbered_page(self, payload: dict[str, Any]) -> None:
        process_id = payload["process_id"]
        object_type = payload["object_type"]
        page = int(payload.get("page") or 0)
        limit = int(payload["limit"])
        sort_desc = payload.get("sort_desc", True)
        modified_since = payload.get("modified_since")

        process = await self._load(process_id)
        if process is None:
            return

        if page == 0:
            process = await self._advance(
                process, ProcessState.FETCHING_TOTAL, {"current_page": 0}
            )

        result = await self._vendor.fetch_page(
            object_type,
            limit=limit,
            page=page,
            modified_since=_parse_since(modified_since),
            sort_desc=sort_desc,
        )
        records = result.records

        logger.info(
            "driver.page_fetched",
            process_id=process_id,
            page=page,
            count=len(records),
            total=result.total,
        )

        if page == 0:
            if result.total is not None:
                await self._handle_first_page_total(process, payload, result.total, records)
                return
            process = await self._advance(process, ProcessState.PROCESSING_BATCHES)

        sequential = process.results.pages.total_pages == 0 or (
            page == 0 and result.total is None
        )
        await self._processes.update_pagination(
            process_id,
            page=page,
            has_more=len(records) >= limit if sequential else None,
        )
        if records:
            await self._queue.queue_process_person_batch(
                process_id, [str(r["id"]) for r in records], page=page
            )
        elif not sequential:
            # No batch will report this page
            await self._processes.record_page(process_id, page=page)

        if sequential:
            await self._continue_sequential(process_id, payload, page, records)
            return

        total_pages = process.results.pages.total_pages
        if page >= total_pages - 1 or (page > 0 and len(records) < limit):
            await self._queue.queue_complete_sync(process_id)

    async def _handle_first_page_total(
        self,
        process: SyncProcess,
        payload: dict[str, Any],
        total: int,
        records: list[dict[str, Any]],
    ) -> None:
        process_id = process.id
        limit = int(payload["limit"])
        total_pages = math.ceil(total / limit) if total > 0 else 0

        await self._processes.update_total(process_id, total, total_pages)
        await self._processes.update_pagination(process_id, page=0, has_more=total_pages > 1)

        fanned_out = _STATE_RANK[process.state] >= _STATE_RANK[ProcessState.PROCESSING_BATCHES]
        if total_pages > 1 and not fanned_out:
            process = await self._advance(process, ProcessState.QUEUING_PAGES)
            await self._queue.fan_out_pages(
                process_id,
                payload["object_type"],
                total_pages=total_pages,
                limit=limit,
                start_page=1,
                modified_since=payload.get("modified_since"),
                sort_desc=payload.get("sort_desc", True),
            )
        process = await self._advance(process, ProcessState.PROCESSING_BATCHES)

        if records:
            await self._queue.queue_process_person_batch(
                process_id, [str(r["id"]) for r in records], page=0
            )
        elif total_pages > 0:
            await self._processes.record_page(process_id, page=0)

        if total_pages <= 1:
            await self._queue.queue_complete_sync(process_id)

    async def _continue_sequential(
        self,
        process_id: str,
        payload: dict[str, Any],
        page: int,
        records: list[dict[str, Any]],
    ) -> None:
        """No total from the vendor: a full page asks for the next one."""
        limit = int(payload["limit"])
        if len(records) >= limit:
            await self._queue.queue_fetch_person_page(
                process_id,
                payload["object_type"],
                limit=limit,
                page=page + 1,
                modified_since=payload.get("modified_since"),
                sort_desc=payload.get("sort_desc", True),
            )
            return

        pages_with_records = page + (1 if records else 0)
        await self._processes.update_total(
            process_id, page * limit + len(records), pages_with_records
        )
        await self._queue.queue_complete_sync(process_id)

    async def _handle_cursor_page(self, payload: dict[str, Any]) -> None:
        process_id = payload["process_id"]
        object_type = payload["object_type"]
        cursor = payload.get("cursor")
        limit = int(payload["limit"])
        first_page = cursor is None

        process = await self._load(process_id)
        if process is None:
            return

        if first_page:
            process = await self._advance(process, ProcessState.FETCHING_PAGE)

        result = await self._vendor.fetch_page(
            object_type,
            limit=limit,
            cursor=cursor,
            modified_since=_parse_since(payload.get("modified_since")),
            sort_desc=payload.get("sort_desc", True),
        )
        records = result.records

        if first_page and not records:
            logger.info("driver.cursor_sync_empty", process_id=process_id)
            await self._processes.update_total(process_id, 0, 0)
            await self._processes.update_pagination(process_id, page=0, has_more=False)
            await self._queue.queue_complete_sync(process_id)
            return

        updated = await self._processes.increment_metadata(
            process_id,
            {"total_fetched": len(records), "page_count": 1},
            {"last_cursor": cursor},
        )
        total_fetched = updated.context.metadata["total_fetched"]
        page_count = updated.context.metadata["page_count"]
        await self._processes.update_total(process_id, total_fetched, page_count)
        await self._processes.update_pagination(
            process_id,
            page=page_count - 1,
            cursor=result.next_cursor,
            has_more=bool(result.has_more and result.next_cursor),
        )

        if first_page:
            process = await self._advance(process, ProcessState.PROCESSING_BATCHES)

        logger.info(
            "driver.cursor_page_fetched",
            process_id=process_id,
            count=len(records),
            total_fetched=total_fetched,
            page_count=page_count,
            has_more=result.has_more,
        )

        page_failed = False
        if records:
            try:
                synced = await self._sync_records(
                    object_type, records, fetch_full=not self._config.return_full_records
                )
                await self._processes.update_metrics(
                    process_id,
                    processed=len(records),
                    success=synced.success_count,
                    errors=synced.error_count,
                    error_details=synced.errors,
                )
            except (ProcessTerminalError, ProcessNotFoundError):
                raise
            except Exception as exc:
                page_failed = True
                logger.warning(
                    "driver.cursor_records_failed",
                    process_id=process_id,
                    cursor=cursor,
                    error=str(exc),
                )
                await self._processes.update_metrics(
                    process_id,
                    processed=0,
                    success=0,
                    errors=len(records),
                    error_details=[{"error": str(exc), "cursor": cursor}],
                )
        await self._processes.record_page(process_id, failed=page_failed)

        if result.has_more and result.next_cursor:
            await self._queue.queue_fetch_person_page(
                process_id,
                object_type,
                limit=limit,
                cursor=result.next_cursor,
                modified_since=payload.get("modified_since"),
                sort_desc=payload.get("sort_desc", True),
            )
        else:
            await self._queue.queue_complete_sync(process_id)

    # ── PROCESS_PERSON_BATCH ────────────────────────────────────────────────

    async def process_person_batch(self, payload: dict[str, Any]) -> None:
        """Fetch, transform and upsert one batch of CRM ids.

        Batch failures are recorded as metrics and never fail the process.
        Webhook mini-sync batches complete their own process.
        """
        process_id = payload["process_id"]
        ids = [str(i) for i in payload.get("crm_person_ids", [])]
        page = payload.get("page")

        process = await self._load(process_id)
        if process is None:
            return
        if page is not None and page in process.results.pages.reported_pages:
            logger.info("driver.batch_already_reported", process_id=process_id, page=page)
            return

        object_type = process.context.object_type
        try:
            records = await self._vendor.fetch_records_by_ids(object_type, ids)
            contacts = self._vendor.transform_records(records)
            synced = await self._mappings.bulk_upsert_to_target(contacts)
            missing = len(ids) - len(records)
            errors = list(synced.errors)
            if missing > 0:
                errors.append({"error": "Records not found in CRM", "count": missing, "batch": page})

            await self._processes.update_metrics(
                process_id,
                processed=len(ids),
                success=synced.success_count,
                errors=synced.error_count + max(missing, 0),
                error_details=errors,
            )
            await self._processes.record_page(process_id, page=page)
        except TransientVendorError:
            raise
        except ProcessTerminalError:
            logger.warning(
                "driver.batch_after_finish",
                process_id=process_id,
                page=page,
                count=len(ids),
            )
            return
        except NonRetryableTaskError:
            raise
        except Exception as exc:
            logger.error(
                "driver.batch_failed",
                process_id=process_id,
                page=page,
                count=len(ids),
                error=str(exc),
            )
            await self._processes.update_metrics(
                process_id,
                processed=0,
                success=0,
                errors=len(ids),
                error_details=[{"error": str(exc), "batch": page}],
            )
            await self._processes.record_page(process_id, page=page, failed=True)

        if payload.get("is_webhook"):
            await self._processes.complete_process(process_id)

    # ── COMPLETE_SYNC ───────────────────────────────────────────────────────

    async def complete_sync(self, payload: dict[str, Any]) -> None:
        """Complete the process once every page batch has reported.

        Idempotent: a terminal process is left alone. Outstanding batches
        re-schedule this task with a settle delay, up to
        ``complete_sync_max_attempts`` times.
        """
        process_id = payload["process_id"]
        attempt = int(payload.get("attempt") or 0)

        process = await self._load(process_id)
        if process is None:
            return

        pages = process.results.pages
        reported = pages.processed_pages + pages.failed_pages
        if reported < pages.total_pages:
            if attempt < self._config.complete_sync_max_attempts:
                await self._queue.queue_complete_sync(
                    process_id,
                    attempt=attempt + 1,
                    delay_seconds=self._config.complete_sync_settle_seconds,
                )
                logger.debug(
                    "driver.completion_deferred",
                    process_id=process_id,
                    reported=reported,
                    total_pages=pages.total_pages,
                    attempt=attempt + 1,
                )
                return
            logger.warning(
                "driver.completing_with_outstanding_pages",
                process_id=process_id,
                reported=reported,
                total_pages=pages.total_pages,
            )

        try:
            await self._processes.complete_process(process_id)
        except ProcessTerminalError:
            logger.info("driver.process_finished_concurrently", process_id=process_id)
