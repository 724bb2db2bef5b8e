"""Builds sync task messages and puts them on the integration queue.

Enqueue is fire-and-forget from the caller's point of view: delivery is
at-least-once and fanned-out pages run in no particular order.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog

from src.bridge.queue.bus import TaskQueue
from src.bridge.queue.schemas import TaskMessage
from src.bridge.sync.schemas import TaskAction

logger = structlog.get_logger(__name__)


def _iso(value: datetime | str | None) -> str | None:
    if value is None or isinstance(value, str):
        return value
    return value.isoformat()


class QueueManager:
    """Translate orchestration intents into queued TaskMessages.

    Args:
        queue: TaskQueue for the integration being synced.
    """

    def __init__(self, queue: TaskQueue) -> None:
        self._queue = queue

    def _message(self, action: TaskAction, payload: dict[str, Any]) -> TaskMessage:
        return TaskMessage(
            action=action,
            integration_id=self._queue.integration_id,
            payload=payload,
        )

    async def queue_fetch_person_page(
        self,
        process_id: str,
        object_type: str,
        limit: int,
        page: int | None = None,
        cursor: str | None = None,
        modified_since: datetime | str | None = None,
        sort_desc: bool = True,
    ) -> None:
        """Queue one page fetch, addressed by page number or cursor."""
        await self._queue.enqueue(
            self._message(
                TaskAction.FETCH_PERSON_PAGE,
                {
                    "process_id": process_id,
                    "object_type": object_type,
                    "page": page,
                    "cursor": cursor,
                    "limit": limit,
                    "modified_since": _iso(modified_since),
                    "sort_desc": sort_desc,
                },
            )
        )

    async def fan_out_pages(
        self,
        process_id: str,
        object_type: str,
        total_pages: int,
        limit: int,
        start_page: int = 1,
        modified_since: datetime | str | None = None,
        sort_desc: bool = True,
    ) -> int:
        """Queue one fetch per page in ``[start_page, total_pages)`` in one call.

        Pages are zero-based and page 0 is fetched by the caller, so the
        default start of 1 never re-emits it. No enqueue happens when the
        range is empty.

        Returns:
            Number of page tasks queued.
        """
        messages = [
            self._message(
                TaskAction.FETCH_PERSON_PAGE,
                {
                    "process_id": process_id,
                    "object_type": object_type,
                    "page": page,
                    "cursor": None,
                    "limit": limit,
                    "modified_since": _iso(modified_since),
                    "sort_desc": sort_desc,
                },
            )
            for page in range(start_page, total_pages)
        ]
        if messages:
            await self._queue.enqueue_many(messages)
            logger.info(
                "queue.pages_fanned_out",
                process_id=process_id,
                start_page=start_page,
                total_pages=total_pages,
                count=len(messages),
            )
        return len(messages)

    async def queue_process_person_batch(
        self,
        process_id: str,
        crm_person_ids: list[str],
        page: int | None = None,
        is_webhook: bool = False,
    ) -> None:
        await self._queue.enqueue(
            self._message(
                TaskAction.PROCESS_PERSON_BATCH,
                {
                    "process_id": process_id,
                    "crm_person_ids": list(crm_person_ids),
                    "page": page,
                    "total_in_page": len(crm_person_ids),
                    "is_webhook": is_webhook,
                },
            )
        )

    async def queue_multiple_batches(self, batches: list[dict[str, Any]]) -> int:
        """Queue several PROCESS_PERSON_BATCH tasks in one call.

        Each batch dict carries ``process_id`` and ``crm_person_ids`` and
        optionally ``page`` and ``is_webhook``.
        """
        messages = [
            self._message(
                TaskAction.PROCESS_PERSON_BATCH,
                {
                    "process_id": batch["process_id"],
                    "crm_person_ids": list(batch["crm_person_ids"]),
                    "page": batch.get("page"),
                    "total_in_page": len(batch["crm_person_ids"]),
                    "is_webhook": batch.get("is_webhook", False),
                },
            )
            for batch in batches
        ]
        if messages:
            await self._queue.enqueue_many(messages)
        return len(messages)

    async def queue_complete_sync(
        self,
        process_id: str,
        attempt: int = 0,
        delay_seconds: float | None = None,
    ) -> None:
        """Queue the completion signal, optionally as a delayed recheck."""
        await self._queue.enqueue(
            self._message(
                TaskAction.COMPLETE_SYNC,
                {"process_id": process_id, "attempt": attempt},
            ),
            delay_seconds=delay_seconds,
        )

    async def queue_message(
        self,
        action: TaskAction | str,
        payload: dict[str, Any] | None = None,
        delay_seconds: float | None = None,
    ) -> None:
        """Queue a one-shot task, optionally deferred.

        A ``delay_seconds`` key inside ``payload`` is lifted out and used as
        the delay when no explicit delay is given.

        Raises:
            ValueError: If ``action`` is empty.
        """
        if not action:
            msg = "action is required for queue_message"
            raise ValueError(msg)

        data = dict(payload or {})
        embedded_delay = data.pop("delay_seconds", None)
        if delay_seconds is None:
            delay_seconds = embedded_delay

        await self._queue.enqueue(
            self._message(TaskAction(action), data),
            delay_seconds=delay_seconds,
        )
        logger.debug(
            "queue.message_queued",
            action=TaskAction(action).value,
            delay_seconds=delay_seconds,
        )
