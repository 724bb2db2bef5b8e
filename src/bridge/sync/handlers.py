"""Task routing: one TaskMessage in, one component call out.

TaskRouter is the handler the TaskWorker runs for every message. It only
dispatches; retry, timeout and dead-letter policy stay in the worker and
per-process error handling stays in the driver.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from src.bridge.queue.schemas import TaskMessage
from src.bridge.sync.activity import ActivityLogger
from src.bridge.sync.driver import SyncDriver
from src.bridge.sync.errors import NonRetryableTaskError
from src.bridge.sync.mappings import MappingService
from src.bridge.sync.orchestrator import SyncOrchestrator
from src.bridge.sync.schemas import RecordEvent, TaskAction
from src.bridge.vendors.base import CRMVendor

logger = structlog.get_logger(__name__)


class UnknownTaskError(NonRetryableTaskError):
    """No handler is registered for the task action."""


class TaskRouter:
    """Dispatch queued tasks to the driver, orchestrator and activity logger."""

    def __init__(
        self,
        driver: SyncDriver,
        orchestrator: SyncOrchestrator,
        activity: ActivityLogger,
        mappings: MappingService,
        vendor: CRMVendor,
    ) -> None:
        self._driver = driver
        self._orchestrator = orchestrator
        self._activity = activity
        self._mappings = mappings
        self._vendor = vendor
        self._routes: dict[TaskAction, Callable[[dict[str, Any]], Awaitable[Any]]] = {
            TaskAction.FETCH_PERSON_PAGE: driver.fetch_person_page,
            TaskAction.PROCESS_PERSON_BATCH: driver.process_person_batch,
            TaskAction.COMPLETE_SYNC: driver.complete_sync,
            TaskAction.POST_CREATE_SETUP: self._post_create_setup,
            TaskAction.CRM_RECORD_EVENT: self._crm_record_event,
            TaskAction.LOG_CALL: self._log_call,
            TaskAction.LOG_MESSAGE: self._log_message,
        }

    async def __call__(self, message: TaskMessage) -> None:
        route = self._routes.get(message.action)
        if route is None:
            raise UnknownTaskError(f"No handler for task action '{message.action.value}'")

        log = logger.bind(task_id=message.task_id, action=message.action.value)
        log.debug("task.dispatching")
        result = await route(message.payload)
        if isinstance(result, dict):
            summary = {k: v for k, v in result.items() if not isinstance(v, (dict, list))}
            log.info("task.result", **summary)

    async def _post_create_setup(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._orchestrator.post_create_setup()

    async def _log_call(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._activity.log_call(
            payload["call"], voicemail_checked=bool(payload.get("voicemail_checked"))
        )

    async def _log_message(self, payload: dict[str, Any]) -> dict[str, Any]:
        return await self._activity.log_message(payload["message"])

    async def _crm_record_event(self, payload: dict[str, Any]) -> None:
        """Mirror a CRM-side create/update/delete onto the target platform.

        Payload keys: ``event``, ``record_id`` and optionally ``record``
        (the full CRM record) and ``object_type``.
        """
        event = RecordEvent(payload["event"])
        record_id = str(payload["record_id"])

        if event == RecordEvent.deleted:
            await self._mappings.apply_record_event(event, record_id)
            return

        record = payload.get("record")
        if record is None:
            object_type = payload.get("object_type") or "contacts"
            fetched = await self._vendor.fetch_records_by_ids(object_type, [record_id])
            if not fetched:
                logger.warning(
                    "task.record_event_missing",
                    record_id=record_id,
                    record_event=event.value,
                )
                return
            record = fetched[0]

        contact = self._vendor.transform_record(record)
        await self._mappings.apply_record_event(event, record_id, contact)
