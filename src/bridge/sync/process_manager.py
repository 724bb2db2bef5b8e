"""Sync process lifecycle: creation, state transitions, metrics and totals.

ProcessManager is the only writer of sync processes. Every write is a
read-merge-write against ProcessRepository guarded by the process
``version``; a concurrent writer makes the repository raise
StaleProcessError and the write is replayed against a fresh read. Two
fanned-out pages finishing at the same moment therefore both land their
counters.
"""

from __future__ import annotations

import traceback
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import structlog

from src.bridge.sync.errors import (
    InvalidStateTransitionError,
    ProcessNotFoundError,
    ProcessTerminalError,
    StaleProcessError,
)
from src.bridge.sync.repository import ProcessRepository
from src.bridge.sync.schemas import (
    Pagination,
    ProcessContext,
    ProcessState,
    SyncConfig,
    SyncProcess,
    SyncType,
    utcnow,
)
from src.bridge.sync.transitions import can_transition

logger = structlog.get_logger(__name__)


def _elapsed_seconds(start: datetime, end: datetime | None = None) -> float:
    return max(((end or utcnow()) - start).total_seconds(), 0.0)


class ProcessManager:
    """CRUD and state-transition facade over the process store.

    Args:
        repository: ProcessRepository (or any object with get/create/update).
        sync_config: Supplies default page sizes per sync kind.
        max_write_retries: Optimistic-concurrency replays before giving up.
    """

    def __init__(
        self,
        repository: ProcessRepository,
        sync_config: SyncConfig | None = None,
        max_write_retries: int = 5,
    ) -> None:
        self._repository = repository
        self._sync_config = sync_config or SyncConfig()
        self._max_write_retries = max_write_retries

    # ── Creation / Reads ────────────────────────────────────────────────────

    async def create_sync_process(
        self,
        integration_id: str,
        user_id: str,
        sync_type: SyncType,
        object_type: str,
        page_size: int | None = None,
        last_synced_timestamp: datetime | None = None,
        total_records: int = 0,
    ) -> SyncProcess:
        """Persist a new INITIALIZING process with zeroed counters.

        ``page_size`` defaults to the initial batch size for INITIAL and
        WEBHOOK runs and to the ongoing batch size for ONGOING runs.
        """
        if page_size is None:
            page_size = (
                self._sync_config.ongoing_batch_size
                if sync_type == SyncType.ONGOING
                else self._sync_config.initial_batch_size
            )

        process = SyncProcess(
            integration_id=integration_id,
            user_id=user_id,
            name=f"{integration_id}-{object_type}-sync",
            state=ProcessState.INITIALIZING,
            context=ProcessContext(
                sync_type=sync_type,
                object_type=object_type,
                total_records=total_records,
                pagination=Pagination(page_size=page_size),
                last_synced_timestamp=last_synced_timestamp,
            ),
        )
        created = await self._repository.create(process)

        logger.info(
            "process.created",
            process_id=created.id,
            integration_id=integration_id,
            sync_type=sync_type.value,
            object_type=object_type,
            page_size=page_size,
        )
        return created

    async def get_process(self, process_id: str) -> SyncProcess | None:
        return await self._repository.get(process_id)

    async def _require(self, process_id: str) -> SyncProcess:
        process = await self._repository.get(process_id)
        if process is None:
            raise ProcessNotFoundError(process_id)
        return process

    # ── Write Core ──────────────────────────────────────────────────────────

    async def _mutate(
        self,
        process_id: str,
        apply: Callable[[SyncProcess], SyncProcess],
    ) -> SyncProcess:
        """Read, apply, compare-and-set; replay on a stale version.

        ``apply`` receives a fresh copy of the process and returns the
        desired new value. It may raise to abort the write.
        """
        attempt = 0
        while True:
            current = await self._require(process_id)
            if current.is_terminal:
                raise ProcessTerminalError(process_id, current.state.value)

            updated = apply(current.model_copy(deep=True))
            try:
                return await self._repository.update(updated, expected_version=current.version)
            except StaleProcessError:
                attempt += 1
                if attempt >= self._max_write_retries:
                    logger.error(
                        "process.write_conflict_exhausted",
                        process_id=process_id,
                        attempts=attempt,
                    )
                    raise
                logger.debug("process.write_conflict", process_id=process_id, attempt=attempt)

    # ── State ───────────────────────────────────────────────────────────────

    async def update_state(
        self,
        process_id: str,
        new_state: ProcessState,
        context_patch: dict[str, Any] | None = None,
    ) -> SyncProcess:
        """Move to ``new_state`` and shallow-merge ``context_patch`` into context.

        Raises:
            ProcessNotFoundError: Unknown process id.
            ProcessTerminalError: The process is COMPLETED or ERROR.
            InvalidStateTransitionError: ``new_state`` is not reachable.
        """
        patch = context_patch or {}

        def apply(process: SyncProcess) -> SyncProcess:
            if not can_transition(process.state, new_state):
                raise InvalidStateTransitionError(
                    process.id, process.state.value, new_state.value
                )
            context = ProcessContext.model_validate(
                {**process.context.model_dump(), **patch}
            )
            return process.model_copy(update={"state": new_state, "context": context})

        updated = await self._mutate(process_id, apply)
        logger.debug("process.state_updated", process_id=process_id, state=new_state.value)
        return updated

    async def handle_error(self, process_id: str, error: BaseException) -> SyncProcess | None:
        """Transition to ERROR capturing message, traceback and timestamp.

        A no-op when the process is already terminal.
        """
        process = await self._require(process_id)
        if process.is_terminal:
            logger.info(
                "process.error_ignored_terminal",
                process_id=process_id,
                state=process.state.value,
                error=str(error),
            )
            return process

        stack = "".join(
            traceback.format_exception(type(error), error, error.__traceback__)
        )
        try:
            updated = await self.update_state(
                process_id,
                ProcessState.ERROR,
                {
                    "error": str(error),
                    "error_stack": stack,
                    "error_timestamp": utcnow(),
                },
            )
        except ProcessTerminalError:
            # Finished concurrently between the read and the write
            return await self.get_process(process_id)

        logger.error("process.failed", process_id=process_id, error=str(error))
        return updated

    async def complete_process(self, process_id: str) -> SyncProcess:
        """Transition to COMPLETED, stamping end_time and the final duration."""

        def apply(process: SyncProcess) -> SyncProcess:
            if not can_transition(process.state, ProcessState.COMPLETED):
                raise InvalidStateTransitionError(
                    process.id, process.state.value, ProcessState.COMPLETED.value
                )
            end_time = utcnow()
            process.context.end_time = end_time
            aggregate = process.results.aggregate_data
            aggregate.duration = _elapsed_seconds(process.context.start_time, end_time)
            if aggregate.duration > 0:
                aggregate.records_per_second = aggregate.total_synced / aggregate.duration
            process.state = ProcessState.COMPLETED
            return process

        updated = await self._mutate(process_id, apply)
        aggregate = updated.results.aggregate_data
        logger.info(
            "process.completed",
            process_id=process_id,
            total_synced=aggregate.total_synced,
            total_failed=aggregate.total_failed,
            duration=round(aggregate.duration, 2),
        )
        return updated

    # ── Metrics / Totals ────────────────────────────────────────────────────

    async def update_metrics(
        self,
        process_id: str,
        processed: int = 0,
        success: int = 0,
        errors: int = 0,
        error_details: list[dict[str, Any]] | None = None,
    ) -> SyncProcess:
        """Add to the aggregate counters. Counters are cumulative, never overwritten."""
        details = list(error_details or [])

        def apply(process: SyncProcess) -> SyncProcess:
            context = process.context
            aggregate = process.results.aggregate_data
            aggregate.total_synced += success
            aggregate.total_failed += errors
            aggregate.errors.extend(details)
            context.processed_records += processed

            aggregate.duration = _elapsed_seconds(context.start_time)
            if aggregate.duration > 0:
                aggregate.records_per_second = aggregate.total_synced / aggregate.duration
            remaining = context.total_records - context.processed_records
            if aggregate.records_per_second > 0 and remaining > 0:
                context.estimated_completion = utcnow() + timedelta(
                    seconds=remaining / aggregate.records_per_second
                )
            return process

        return await self._mutate(process_id, apply)

    async def record_page(
        self, process_id: str, page: int | None = None, failed: bool = False
    ) -> SyncProcess:
        """Count one page batch as processed (or failed).

        A page index already in ``reported_pages`` is not counted again, so a
        redelivered page cannot stand in for one that is still outstanding.
        """

        def apply(process: SyncProcess) -> SyncProcess:
            pages = process.results.pages
            if page is not None:
                if page in pages.reported_pages:
                    return process
                pages.reported_pages.append(page)
            if failed:
                pages.failed_pages += 1
            else:
                pages.processed_pages += 1
            return process

        return await self._mutate(process_id, apply)

    async def update_pagination(
        self,
        process_id: str,
        page: int | None = None,
        cursor: str | None = None,
        has_more: bool | None = None,
    ) -> SyncProcess:
        """Record pagination progress after a page fetch.

        Page numbers only move forward, since fanned-out pages finish in any
        order. ``cursor`` is where the next fetch resumes. Without an explicit
        ``has_more`` it is derived from ``next_page`` and the known page total.
        """

        def apply(process: SyncProcess) -> SyncProcess:
            context = process.context
            pagination = context.pagination
            if page is not None:
                context.current_page = max(context.current_page, page)
                pagination.next_page = max(pagination.next_page, page + 1)
            if cursor is not None:
                pagination.current_cursor = cursor
            if has_more is not None:
                pagination.has_more = has_more
            elif process.results.pages.total_pages > 0:
                pagination.has_more = pagination.next_page < process.results.pages.total_pages
            return process

        return await self._mutate(process_id, apply)

    async def update_total(
        self, process_id: str, total_records: int, total_pages: int
    ) -> SyncProcess:
        """Set the record total and page total in one write."""

        def apply(process: SyncProcess) -> SyncProcess:
            process.context.total_records = total_records
            process.results.pages.total_pages = total_pages
            return process

        updated = await self._mutate(process_id, apply)
        logger.debug(
            "process.total_updated",
            process_id=process_id,
            total_records=total_records,
            total_pages=total_pages,
        )
        return updated

    # ── Metadata ────────────────────────────────────────────────────────────

    async def get_metadata(self, process_id: str) -> dict[str, Any]:
        process = await self._require(process_id)
        return dict(process.context.metadata)

    async def update_metadata(
        self, process_id: str, patch: dict[str, Any]
    ) -> SyncProcess:
        """Shallow-merge ``patch`` into ``context.metadata``."""

        def apply(process: SyncProcess) -> SyncProcess:
            process.context.metadata = {**process.context.metadata, **patch}
            return process

        return await self._mutate(process_id, apply)

    async def increment_metadata(
        self,
        process_id: str,
        increments: dict[str, int],
        assign: dict[str, Any] | None = None,
    ) -> SyncProcess:
        """Add to numeric metadata counters and assign plain keys in one write.

        Used by the cursor strategy so ``total_fetched``/``page_count`` are
        accumulated against the stored value rather than a stale read.
        """

        def apply(process: SyncProcess) -> SyncProcess:
            metadata = dict(process.context.metadata)
            for key, delta in increments.items():
                metadata[key] = int(metadata.get(key, 0)) + delta
            metadata.update(assign or {})
            process.context.metadata = metadata
            return process

        return await self._mutate(process_id, apply)
