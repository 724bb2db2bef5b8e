"""Tests for SyncOrchestrator workflows and integration setup."""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from src.bridge.sync.orchestrator import SyncOrchestrator
from src.bridge.sync.schemas import PaginationType, ProcessState, SyncType, TaskAction
from tests.fakes import run_queue


class TestStartSyncs:
    """Tests for start_initial_sync() and start_ongoing_sync()."""

    @pytest.mark.asyncio
    async def test_initial_sync_creates_process_per_type(
        self, orchestrator, process_repo, task_queue, sync_config
    ):
        sync_config.person_object_types = ["contacts", "leads"]

        result = await orchestrator.start_initial_sync()

        assert len(result["process_ids"]) == 2
        assert result["object_types"] == ["contacts", "leads"]
        fetches = task_queue.of(TaskAction.FETCH_PERSON_PAGE)
        assert [m.payload["object_type"] for m in fetches] == ["contacts", "leads"]
        assert all(m.payload["page"] == 0 for m in fetches)
        assert all(m.payload["limit"] == 100 for m in fetches)
        assert all(m.payload["sort_desc"] is True for m in fetches)
        for process_id in result["process_ids"]:
            process = process_repo.rows[process_id]
            assert process.context.sync_type == SyncType.INITIAL
            assert process.state == ProcessState.INITIALIZING

    @pytest.mark.asyncio
    async def test_cursor_vendor_starts_without_page(
        self, integration, vendor, target, process_manager, queue_manager, process_repo,
        sync_config, task_queue,
    ):
        config = sync_config.model_copy(update={"pagination_type": PaginationType.CURSOR_BASED})
        orchestrator = SyncOrchestrator(
            integration, vendor, target, process_manager, queue_manager, process_repo, config
        )

        await orchestrator.start_initial_sync()

        (fetch,) = task_queue.messages
        assert fetch.payload["page"] is None
        assert fetch.payload["cursor"] is None

    @pytest.mark.asyncio
    async def test_ongoing_sync_uses_last_completed_end_time(
        self, orchestrator, process_manager, task_queue
    ):
        previous = await process_manager.create_sync_process(
            "int_test", "user_1", SyncType.INITIAL, "contacts"
        )
        await process_manager.update_state(previous.id, ProcessState.PROCESSING_BATCHES)
        completed = await process_manager.complete_process(previous.id)

        result = await orchestrator.start_ongoing_sync()

        assert result["last_sync_times"] == {"contacts": completed.context.end_time.isoformat()}
        (fetch,) = task_queue.messages
        assert fetch.payload["modified_since"] == completed.context.end_time.isoformat()
        assert fetch.payload["sort_desc"] is False
        assert fetch.payload["limit"] == 50

    @pytest.mark.asyncio
    async def test_webhook_run_does_not_advance_watermark(
        self, orchestrator, process_manager, task_queue
    ):
        async def run_to_completion(sync_type):
            process = await process_manager.create_sync_process(
                "int_test", "user_1", sync_type, "contacts"
            )
            await process_manager.update_state(process.id, ProcessState.PROCESSING_BATCHES)
            return await process_manager.complete_process(process.id)

        full = await run_to_completion(SyncType.INITIAL)
        webhook = await run_to_completion(SyncType.WEBHOOK)
        assert webhook.context.end_time >= full.context.end_time

        await orchestrator.start_ongoing_sync()

        (fetch,) = task_queue.messages
        assert fetch.payload["modified_since"] == full.context.end_time.isoformat()

    @pytest.mark.asyncio
    async def test_watermark_is_per_object_type(
        self, orchestrator, process_manager, task_queue
    ):
        contacts = await process_manager.create_sync_process(
            "int_test", "user_1", SyncType.INITIAL, "contacts"
        )
        await process_manager.update_state(contacts.id, ProcessState.PROCESSING_BATCHES)
        completed = await process_manager.complete_process(contacts.id)

        result = await orchestrator.start_ongoing_sync(["contacts", "companies"])

        assert result["last_sync_times"] == {
            "contacts": completed.context.end_time.isoformat(),
            "companies": None,
        }
        by_type = {m.payload["object_type"]: m.payload for m in task_queue.messages}
        assert by_type["companies"]["modified_since"] is None

    @pytest.mark.asyncio
    async def test_ongoing_sync_explicit_time(self, orchestrator, process_repo):
        since = datetime(2026, 5, 1, tzinfo=timezone.utc)

        result = await orchestrator.start_ongoing_sync(last_sync_time=since)

        process = process_repo.rows[result["process_ids"][0]]
        assert process.context.sync_type == SyncType.ONGOING
        assert process.context.last_synced_timestamp == since

    @pytest.mark.asyncio
    async def test_no_object_types_raises(self, orchestrator):
        with pytest.raises(ValueError, match="No person object types"):
            await orchestrator.start_initial_sync(object_types=[])

    @pytest.mark.asyncio
    async def test_full_initial_sync_through_router(
        self, orchestrator, router, process_repo, task_queue, target
    ):
        result = await orchestrator.start_initial_sync()

        await run_queue(task_queue, router)

        process = process_repo.rows[result["process_ids"][0]]
        assert process.state == ProcessState.COMPLETED
        assert process.results.aggregate_data.total_synced == 250
        assert len(target.contacts) == 250


class TestWebhookSync:
    """Tests for handle_webhook()."""

    @pytest.mark.asyncio
    async def test_empty_webhook_skipped(self, orchestrator, task_queue):
        assert await orchestrator.handle_webhook([]) == {
            "status": "skipped",
            "message": "No data in webhook",
            "count": 0,
        }
        assert task_queue.messages == []

    @pytest.mark.asyncio
    async def test_webhook_batch_completes_its_process(
        self, orchestrator, router, process_repo, task_queue, target
    ):
        result = await orchestrator.handle_webhook([{"id": 1}, {"id": 2}])

        assert result["status"] == "queued"
        assert result["count"] == 2
        (batch,) = task_queue.messages
        assert batch.payload["is_webhook"] is True
        assert batch.payload["crm_person_ids"] == ["1", "2"]

        await run_queue(task_queue, router)

        process = process_repo.rows[result["process_id"]]
        assert process.context.sync_type == SyncType.WEBHOOK
        assert process.state == ProcessState.COMPLETED
        assert process.results.aggregate_data.total_synced == 2
        assert len(target.contacts) == 2


class TestHistory:
    """Tests for get_last_sync_time() and has_active_syncs()."""

    @pytest.mark.asyncio
    async def test_no_history(self, orchestrator):
        assert await orchestrator.get_last_sync_time() is None
        assert await orchestrator.has_active_syncs() is False

    @pytest.mark.asyncio
    async def test_active_sync_detected(self, orchestrator):
        await orchestrator.start_initial_sync()
        assert await orchestrator.has_active_syncs() is True


class TestSetup:
    """Tests for webhook registration and POST_CREATE_SETUP."""

    @pytest.mark.asyncio
    async def test_setup_webhooks_success(self, orchestrator, target):
        result = await orchestrator.setup_webhooks()

        assert result["overall_status"] == "success"
        assert result["warnings"] == []
        assert result["crm"]["status"] == "configured"
        assert target.webhooks[0]["url"] == "https://bridge.test/hooks"

    @pytest.mark.asyncio
    async def test_one_side_failing_is_partial(self, orchestrator, vendor, target, monkeypatch):
        monkeypatch.setattr(
            vendor, "setup_webhooks", AsyncMock(side_effect=RuntimeError("CRM refused"))
        )

        result = await orchestrator.setup_webhooks()

        assert result["overall_status"] == "partial"
        assert result["crm"] == {"status": "failed", "error": "CRM refused"}
        assert result["target"]["status"] == "configured"
        assert len(target.webhooks) == 1

    @pytest.mark.asyncio
    async def test_both_sides_failing(self, orchestrator, vendor, target, monkeypatch):
        monkeypatch.setattr(vendor, "setup_webhooks", AsyncMock(side_effect=RuntimeError("a")))
        monkeypatch.setattr(target, "create_webhook", AsyncMock(side_effect=RuntimeError("b")))

        result = await orchestrator.setup_webhooks()

        assert result["overall_status"] == "failed"
        assert len(result["warnings"]) == 2

    @pytest.mark.asyncio
    async def test_post_create_setup_runs_initial_sync_after_webhook_failure(
        self, orchestrator, vendor, target, task_queue, monkeypatch
    ):
        monkeypatch.setattr(vendor, "setup_webhooks", AsyncMock(side_effect=RuntimeError("a")))
        monkeypatch.setattr(target, "create_webhook", AsyncMock(side_effect=RuntimeError("b")))

        result = await orchestrator.post_create_setup()

        assert result["webhooks"]["overall_status"] == "failed"
        assert len(result["initial_sync"]["process_ids"]) == 1
        assert len(task_queue.of(TaskAction.FETCH_PERSON_PAGE)) == 1

    @pytest.mark.asyncio
    async def test_post_create_setup_skips_disabled_webhooks(
        self, integration, vendor, target, process_manager, queue_manager, process_repo,
        sync_config,
    ):
        orchestrator = SyncOrchestrator(
            integration.model_copy(update={"webhooks_enabled": False}),
            vendor, target, process_manager, queue_manager, process_repo, sync_config,
        )

        result = await orchestrator.post_create_setup()

        assert result["webhooks"] == {"status": "skipped"}
        assert target.webhooks == []

    @pytest.mark.asyncio
    async def test_schedule_post_create_setup_is_delayed(self, orchestrator, task_queue):
        await orchestrator.schedule_post_create_setup()

        (message,) = task_queue.messages
        assert message.action == TaskAction.POST_CREATE_SETUP
        assert task_queue.delays[message.task_id] == 35
