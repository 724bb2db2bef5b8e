"""Tests for the pagination driver.

Covers:
- Page-based fan-out, single-page and empty syncs, redelivery of page 0
- Sequential fallback when the vendor reports no total
- Cursor-based inline processing, termination and empty first page
- Batch processing, batch failures and completion settling
- Task-boundary error policy (transient, fatal, terminal, unknown)
"""

from __future__ import annotations

from typing import Any

import pytest

from src.bridge.sync.errors import (
    ProcessFailedError,
    ProcessNotFoundError,
    TransientVendorError,
)
from src.bridge.sync.schemas import (
    FetchPageResult,
    PaginationType,
    ProcessState,
    SyncType,
    TaskAction,
)
from src.bridge.vendors.synthetic import (
    SyntheticCursorVendor,
    SyntheticVendor,
    generate_contact,
)
from tests.fakes import run_queue


# ── Helpers ────────────────────────────────────────────────────────────────


def _page_payload(process_id: str, page: int | None = 0, limit: int = 100) -> dict[str, Any]:
    return {
        "process_id": process_id,
        "object_type": "contacts",
        "page": page,
        "cursor": None,
        "limit": limit,
        "modified_since": None,
        "sort_desc": True,
    }


def _with_total(integration, total: int):
    return integration.model_copy(update={"settings": {"total_records": total}})


async def _drive(queue, driver) -> list[TaskAction]:
    """Run every queued task through ``driver``; return the actions run."""
    handlers = {
        TaskAction.FETCH_PERSON_PAGE: driver.fetch_person_page,
        TaskAction.PROCESS_PERSON_BATCH: driver.process_person_batch,
        TaskAction.COMPLETE_SYNC: driver.complete_sync,
    }
    actions: list[TaskAction] = []

    async def route(message):
        actions.append(message.action)
        await handlers[message.action](message.payload)

    await run_queue(queue, route)
    return actions


async def _new_process(process_manager, sync_type: SyncType = SyncType.INITIAL):
    return await process_manager.create_sync_process("int_test", "user_1", sync_type, "contacts")


class NoTotalVendor(SyntheticVendor):
    """Page-based vendor whose list API never reports a total."""

    async def fetch_page(self, object_type, limit, page=None, cursor=None,
                         modified_since=None, sort_desc=True):
        result = await super().fetch_page(object_type, limit, page=page)
        return result.model_copy(update={"total": None})


class ScriptedCursorVendor(SyntheticCursorVendor):
    """Cursor vendor returning predefined pages keyed by cursor."""

    def __init__(self, integration, pages: dict[str | None, FetchPageResult]) -> None:
        super().__init__(integration)
        self.pages = pages
        self.cursors_seen: list[str | None] = []

    async def fetch_page(self, object_type, limit, page=None, cursor=None,
                         modified_since=None, sort_desc=True):
        self.cursors_seen.append(cursor)
        return self.pages[cursor]


class FailingVendor(SyntheticVendor):
    """Vendor raising a configured error from fetch_page or fetch_records_by_ids."""

    def __init__(self, integration, page_error=None, ids_error=None) -> None:
        super().__init__(integration)
        self.page_error = page_error
        self.ids_error = ids_error

    async def fetch_page(self, *args, **kwargs):
        if self.page_error is not None:
            raise self.page_error
        return await super().fetch_page(*args, **kwargs)

    async def fetch_records_by_ids(self, object_type, ids):
        if self.ids_error is not None:
            raise self.ids_error
        return await super().fetch_records_by_ids(object_type, ids)


# ── Page-Based Strategy ─────────────────────────────────────────────────────


class TestPageBasedFanOut:
    """Tests for page 0 total discovery and fan-out."""

    @pytest.mark.asyncio
    async def test_first_page_fans_out_remaining_pages(
        self, driver, process_manager, task_queue
    ):
        process = await _new_process(process_manager)

        await driver.fetch_person_page(_page_payload(process.id))

        fetches = task_queue.of(TaskAction.FETCH_PERSON_PAGE)
        assert sorted(m.payload["page"] for m in fetches) == [1, 2]
        assert task_queue.batch_calls == 1

        (batch,) = task_queue.of(TaskAction.PROCESS_PERSON_BATCH)
        assert batch.payload["page"] == 0
        assert batch.payload["crm_person_ids"] == [str(i) for i in range(1, 101)]
        assert task_queue.of(TaskAction.COMPLETE_SYNC) == []

        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.PROCESSING_BATCHES
        assert stored.context.total_records == 250
        assert stored.results.pages.total_pages == 3

    @pytest.mark.asyncio
    async def test_full_sync_completes_with_every_record(
        self, driver, process_manager, task_queue, target, mapping_repo
    ):
        process = await _new_process(process_manager)
        await driver.fetch_person_page(_page_payload(process.id))

        actions = await _drive(task_queue, driver)

        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.COMPLETED
        assert stored.results.aggregate_data.total_synced == 250
        assert stored.results.aggregate_data.total_failed == 0
        assert stored.results.pages.processed_pages == 3
        assert actions.count(TaskAction.PROCESS_PERSON_BATCH) == 3
        assert stored.context.current_page == 2
        assert stored.context.pagination.next_page == 3
        assert stored.context.pagination.has_more is False
        assert len(target.contacts) == 250
        # external-id plus phone mapping per contact
        assert len(mapping_repo.rows) == 500

    @pytest.mark.asyncio
    async def test_redelivered_first_page_does_not_fan_out_again(
        self, driver, process_manager, task_queue
    ):
        process = await _new_process(process_manager)
        await driver.fetch_person_page(_page_payload(process.id))
        task_queue.pop_all()

        await driver.fetch_person_page(_page_payload(process.id))

        assert task_queue.of(TaskAction.FETCH_PERSON_PAGE) == []
        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.PROCESSING_BATCHES

    @pytest.mark.asyncio
    async def test_duplicate_first_page_batch_does_not_count_as_another_page(
        self, driver, process_manager, task_queue, target
    ):
        process = await _new_process(process_manager)
        await driver.fetch_person_page(_page_payload(process.id))
        await driver.fetch_person_page(_page_payload(process.id))

        batches = task_queue.of(TaskAction.PROCESS_PERSON_BATCH)
        assert [b.payload["page"] for b in batches] == [0, 0]
        fetches = task_queue.of(TaskAction.FETCH_PERSON_PAGE)
        task_queue.pop_all()
        for batch in batches:
            await driver.process_person_batch(batch.payload)
        for fetch in fetches:
            await driver.fetch_person_page(fetch.payload)

        by_page = {
            m.payload["page"]: m for m in task_queue.of(TaskAction.PROCESS_PERSON_BATCH)
        }
        await driver.process_person_batch(by_page[1].payload)
        await driver.complete_sync({"process_id": process.id})

        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.PROCESSING_BATCHES
        assert stored.results.pages.processed_pages == 2
        assert sorted(stored.results.pages.reported_pages) == [0, 1]

        await driver.process_person_batch(by_page[2].payload)
        await driver.complete_sync({"process_id": process.id})

        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.COMPLETED
        assert stored.results.aggregate_data.total_synced == 250
        assert len(target.contacts) == 250

    @pytest.mark.asyncio
    async def test_single_page_completes_from_page_zero(
        self, make_driver, integration, process_manager, task_queue
    ):
        driver = make_driver(SyntheticVendor(_with_total(integration, 80)))
        process = await _new_process(process_manager)

        await driver.fetch_person_page(_page_payload(process.id))

        assert task_queue.of(TaskAction.FETCH_PERSON_PAGE) == []
        assert len(task_queue.of(TaskAction.COMPLETE_SYNC)) == 1

        await _drive(task_queue, driver)
        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.COMPLETED
        assert stored.results.aggregate_data.total_synced == 80

    @pytest.mark.asyncio
    async def test_zero_total_completes_without_batches(
        self, make_driver, integration, process_manager, task_queue, target
    ):
        driver = make_driver(SyntheticVendor(_with_total(integration, 0)))
        process = await _new_process(process_manager)

        await driver.fetch_person_page(_page_payload(process.id))

        assert task_queue.of(TaskAction.PROCESS_PERSON_BATCH) == []
        await _drive(task_queue, driver)

        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.COMPLETED
        assert stored.context.total_records == 0
        assert target.contacts == {}

    @pytest.mark.asyncio
    async def test_last_page_queues_completion(self, driver, process_manager, task_queue):
        process = await _new_process(process_manager)
        await driver.fetch_person_page(_page_payload(process.id))
        task_queue.pop_all()

        await driver.fetch_person_page(_page_payload(process.id, page=2))

        (batch,) = task_queue.of(TaskAction.PROCESS_PERSON_BATCH)
        assert len(batch.payload["crm_person_ids"]) == 50
        assert len(task_queue.of(TaskAction.COMPLETE_SYNC)) == 1


class TestSequentialFallback:
    """Tests for page-based vendors that report no total."""

    @pytest.mark.asyncio
    async def test_full_page_queues_next_page(
        self, make_driver, integration, process_manager, task_queue
    ):
        driver = make_driver(NoTotalVendor(integration))
        process = await _new_process(process_manager)

        await driver.fetch_person_page(_page_payload(process.id))

        (next_fetch,) = task_queue.of(TaskAction.FETCH_PERSON_PAGE)
        assert next_fetch.payload["page"] == 1
        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.PROCESSING_BATCHES

    @pytest.mark.asyncio
    async def test_underfull_page_sets_total_and_completes(
        self, make_driver, integration, process_manager, task_queue
    ):
        driver = make_driver(NoTotalVendor(integration))
        process = await _new_process(process_manager)
        await driver.fetch_person_page(_page_payload(process.id))

        actions = await _drive(task_queue, driver)

        assert actions.count(TaskAction.FETCH_PERSON_PAGE) == 2
        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.COMPLETED
        assert stored.context.total_records == 250
        assert stored.results.pages.total_pages == 3
        assert stored.results.aggregate_data.total_synced == 250

    @pytest.mark.asyncio
    async def test_exact_multiple_ends_on_empty_page(
        self, make_driver, integration, process_manager, task_queue
    ):
        driver = make_driver(NoTotalVendor(_with_total(integration, 200)))
        process = await _new_process(process_manager)
        await driver.fetch_person_page(_page_payload(process.id))

        await _drive(task_queue, driver)

        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.COMPLETED
        assert stored.results.pages.total_pages == 2
        assert stored.results.pages.processed_pages == 2


# ── Cursor-Based Strategy ───────────────────────────────────────────────────


class TestCursorBased:
    """Tests for cursor pagination with inline processing."""

    @pytest.fixture
    def cursor_driver(self, make_driver, integration):
        return make_driver(
            SyntheticCursorVendor(integration),
            pagination_type=PaginationType.CURSOR_BASED,
        )

    @pytest.mark.asyncio
    async def test_first_page_processes_inline_and_queues_next_cursor(
        self, cursor_driver, process_manager, task_queue, target
    ):
        process = await _new_process(process_manager)

        await cursor_driver.fetch_person_page(_page_payload(process.id, page=None))

        (next_fetch,) = task_queue.of(TaskAction.FETCH_PERSON_PAGE)
        assert next_fetch.payload["cursor"] == "100"
        assert task_queue.of(TaskAction.PROCESS_PERSON_BATCH) == []
        assert len(target.contacts) == 100

        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.PROCESSING_BATCHES
        assert stored.context.metadata["total_fetched"] == 100
        assert stored.context.metadata["page_count"] == 1
        assert stored.context.pagination.current_cursor == "100"
        assert stored.context.pagination.has_more is True
        assert stored.results.aggregate_data.total_synced == 100

    @pytest.mark.asyncio
    async def test_queues_completion_exactly_once(
        self, cursor_driver, process_manager, task_queue
    ):
        process = await _new_process(process_manager)
        await cursor_driver.fetch_person_page(_page_payload(process.id, page=None))

        actions = await _drive(task_queue, cursor_driver)

        assert actions.count(TaskAction.COMPLETE_SYNC) == 1
        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.COMPLETED
        assert stored.context.total_records == 250
        assert stored.context.metadata["page_count"] == 3
        assert stored.results.pages.total_pages == 3
        assert stored.context.current_page == 2
        assert stored.context.pagination.has_more is False
        assert stored.results.aggregate_data.total_synced == 250

    @pytest.mark.asyncio
    async def test_empty_first_page_completes_without_processing(
        self, make_driver, integration, process_manager, task_queue, target
    ):
        driver = make_driver(
            SyntheticCursorVendor(_with_total(integration, 0)),
            pagination_type=PaginationType.CURSOR_BASED,
        )
        process = await _new_process(process_manager)

        await driver.fetch_person_page(_page_payload(process.id, page=None))

        assert [m.action for m in task_queue.messages] == [TaskAction.COMPLETE_SYNC]
        stored = await process_manager.get_process(process.id)
        assert stored.context.total_records == 0
        assert stored.results.pages.total_pages == 0
        assert target.contacts == {}

        await _drive(task_queue, driver)
        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.COMPLETED

    @pytest.mark.asyncio
    async def test_empty_page_with_more_still_advances_cursor(
        self, make_driver, integration, process_manager, task_queue
    ):
        vendor = ScriptedCursorVendor(integration, {
            None: FetchPageResult(
                records=[generate_contact(0), generate_contact(1)], next_cursor="a", has_more=True
            ),
            "a": FetchPageResult(records=[], next_cursor="b", has_more=True),
            "b": FetchPageResult(records=[generate_contact(2)], has_more=False),
        })
        driver = make_driver(vendor, pagination_type=PaginationType.CURSOR_BASED)
        process = await _new_process(process_manager)
        await driver.fetch_person_page(_page_payload(process.id, page=None))

        actions = await _drive(task_queue, driver)

        assert vendor.cursors_seen == [None, "a", "b"]
        assert actions.count(TaskAction.COMPLETE_SYNC) == 1
        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.COMPLETED
        assert stored.results.aggregate_data.total_synced == 3

    @pytest.mark.asyncio
    async def test_processing_error_becomes_metrics(
        self, make_driver, integration, process_manager, task_queue
    ):
        class BrokenIdsCursorVendor(SyntheticCursorVendor):
            async def fetch_records_by_ids(self, object_type, ids):
                raise RuntimeError("detail endpoint down")

        driver = make_driver(
            BrokenIdsCursorVendor(integration),
            pagination_type=PaginationType.CURSOR_BASED,
            return_full_records=False,
        )
        process = await _new_process(process_manager)

        await driver.fetch_person_page(_page_payload(process.id, page=None))

        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.PROCESSING_BATCHES
        assert stored.results.aggregate_data.total_failed == 100
        assert stored.results.aggregate_data.errors[0] == {
            "error": "detail endpoint down",
            "cursor": None,
        }
        assert stored.results.pages.failed_pages == 1
        assert len(task_queue.of(TaskAction.FETCH_PERSON_PAGE)) == 1


# ── Batches and Completion ──────────────────────────────────────────────────


class TestProcessPersonBatch:
    """Tests for PROCESS_PERSON_BATCH handling."""

    @pytest.mark.asyncio
    async def test_batch_updates_metrics_and_page_counter(
        self, driver, process_manager, target
    ):
        process = await _new_process(process_manager)

        await driver.process_person_batch(
            {"process_id": process.id, "crm_person_ids": ["1", "2", "3"], "page": 0}
        )

        stored = await process_manager.get_process(process.id)
        assert stored.results.aggregate_data.total_synced == 3
        assert stored.context.processed_records == 3
        assert stored.results.pages.processed_pages == 1
        assert len(target.contacts) == 3

    @pytest.mark.asyncio
    async def test_batch_failure_recorded_without_failing_process(
        self, make_driver, integration, process_manager
    ):
        driver = make_driver(FailingVendor(integration, ids_error=RuntimeError("CRM 500")))
        process = await _new_process(process_manager)

        await driver.process_person_batch(
            {"process_id": process.id, "crm_person_ids": ["1", "2"], "page": 4}
        )

        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.INITIALIZING
        assert stored.results.aggregate_data.total_failed == 2
        assert stored.results.aggregate_data.errors == [{"error": "CRM 500", "batch": 4}]
        assert stored.results.pages.failed_pages == 1

    @pytest.mark.asyncio
    async def test_transient_batch_error_is_reraised(
        self, make_driver, integration, process_manager
    ):
        driver = make_driver(
            FailingVendor(integration, ids_error=TransientVendorError("429", retry_after=30))
        )
        process = await _new_process(process_manager)

        with pytest.raises(TransientVendorError):
            await driver.process_person_batch(
                {"process_id": process.id, "crm_person_ids": ["1"], "page": 0}
            )

        stored = await process_manager.get_process(process.id)
        assert stored.results.pages.failed_pages == 0

    @pytest.mark.asyncio
    async def test_batch_for_terminal_process_is_skipped(self, driver, process_manager, target):
        process = await _new_process(process_manager)
        await process_manager.handle_error(process.id, RuntimeError("stopped"))

        await driver.process_person_batch(
            {"process_id": process.id, "crm_person_ids": ["1"], "page": 0}
        )

        assert target.contacts == {}


class TestCompleteSync:
    """Tests for COMPLETE_SYNC settling and idempotency."""

    async def _in_progress(self, process_manager, processed: int = 1):
        process = await _new_process(process_manager)
        await process_manager.update_state(process.id, ProcessState.PROCESSING_BATCHES)
        await process_manager.update_total(process.id, 250, 3)
        for _ in range(processed):
            await process_manager.record_page(process.id)
        return process

    @pytest.mark.asyncio
    async def test_outstanding_batches_defer_completion(
        self, driver, process_manager, task_queue
    ):
        process = await self._in_progress(process_manager)

        await driver.complete_sync({"process_id": process.id, "attempt": 0})

        (recheck,) = task_queue.of(TaskAction.COMPLETE_SYNC)
        assert recheck.payload["attempt"] == 1
        assert task_queue.delays[recheck.task_id] == 5
        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.PROCESSING_BATCHES

    @pytest.mark.asyncio
    async def test_completes_after_max_attempts(self, driver, process_manager, task_queue):
        process = await self._in_progress(process_manager)

        await driver.complete_sync({"process_id": process.id, "attempt": 3})

        assert task_queue.messages == []
        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.COMPLETED

    @pytest.mark.asyncio
    async def test_completion_is_idempotent(self, driver, process_manager, task_queue):
        process = await self._in_progress(process_manager, processed=3)

        await driver.complete_sync({"process_id": process.id})
        first = await process_manager.get_process(process.id)
        await driver.complete_sync({"process_id": process.id})
        second = await process_manager.get_process(process.id)

        assert second.state == ProcessState.COMPLETED
        assert second.context.end_time == first.context.end_time
        assert task_queue.messages == []


# ── Task-Boundary Errors ────────────────────────────────────────────────────


class TestTaskBoundaryErrors:
    """Tests for error propagation out of FETCH_PERSON_PAGE."""

    @pytest.mark.asyncio
    async def test_fatal_error_marks_process_error(
        self, make_driver, integration, process_manager
    ):
        driver = make_driver(FailingVendor(integration, page_error=RuntimeError("bad token")))
        process = await _new_process(process_manager)

        with pytest.raises(ProcessFailedError):
            await driver.fetch_person_page(_page_payload(process.id))

        stored = await process_manager.get_process(process.id)
        assert stored.state == ProcessState.ERROR
        assert stored.context.error == "bad token"

    @pytest.mark.asyncio
    async def test_transient_error_leaves_process_running(
        self, make_driver, integration, process_manager
    ):
        driver = make_driver(
            FailingVendor(integration, page_error=TransientVendorError("rate limited"))
        )
        process = await _new_process(process_manager)

        with pytest.raises(TransientVendorError):
            await driver.fetch_person_page(_page_payload(process.id))

        stored = await process_manager.get_process(process.id)
        assert stored.state != ProcessState.ERROR
        assert stored.context.error is None

    @pytest.mark.asyncio
    async def test_terminal_process_skips_without_continuation(
        self, driver, process_manager, task_queue
    ):
        process = await _new_process(process_manager)
        await process_manager.handle_error(process.id, RuntimeError("cancelled"))

        await driver.fetch_person_page(_page_payload(process.id))

        assert task_queue.messages == []

    @pytest.mark.asyncio
    async def test_unknown_process_raises_not_found(self, driver):
        with pytest.raises(ProcessNotFoundError):
            await driver.fetch_person_page(_page_payload("missing"))
