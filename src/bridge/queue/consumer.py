"""Bounded-concurrency task worker with retry and dead-lettering.

Reads tasks from an integration's stream through a consumer group and
runs each one in its own asyncio task, never holding more than
``max_workers`` handlers at once. The worker reads only as many messages
as it has free slots, so a fan-out burst waits in the stream instead of
being rejected.

Failed tasks are re-enqueued with a backoff delay (1s, 4s, 16s) through
the delayed set rather than slept on, and moved to the dead letter
stream after ``max_retries`` or immediately for NonRetryableTaskError.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog
from pydantic import ValidationError

from src.bridge.core.monitoring import tasks_dead_lettered_total, track_task
from src.bridge.queue.bus import TaskQueue
from src.bridge.queue.dlq import DeadLetterQueue
from src.bridge.queue.schemas import TaskMessage
from src.bridge.sync.errors import NonRetryableTaskError, TransientVendorError

logger = structlog.get_logger(__name__)

TaskHandler = Callable[[TaskMessage], Awaitable[None]]


class TaskWorker:
    """Consume tasks for one integration with bounded concurrency.

    Args:
        queue: TaskQueue for the integration.
        dlq: DeadLetterQueue for permanently failed tasks.
        handler: Async callable processing one TaskMessage. Must raise on
            failure for retry to engage.
        consumer_name: Unique consumer identifier within the group.
        group: Consumer group name.
        max_workers: Concurrent handler invocations.
        task_timeout_seconds: Per-task timeout; a timeout counts as a failure.
        reclaim_idle_ms: Pending idle time after which another consumer's
            task is taken over. Never below the task timeout, so a handler
            that is still running is not claimed by a peer.
        max_retries: Redeliveries before a task is dead-lettered.
    """

    RETRY_DELAYS: list[int] = [1, 4, 16]  # Exponential backoff: 1s, 4s, 16s

    def __init__(
        self,
        queue: TaskQueue,
        dlq: DeadLetterQueue,
        handler: TaskHandler,
        consumer_name: str,
        group: str = "bridge-workers",
        max_workers: int = 5,
        task_timeout_seconds: float = 600,
        max_retries: int = 3,
        block_ms: int = 1000,
        reclaim_idle_ms: int = 60000,
        reclaim_interval_seconds: float = 30.0,
    ) -> None:
        self._queue = queue
        self._dlq = dlq
        self._handler = handler
        self._consumer_name = consumer_name
        self._group = group
        self._max_workers = max_workers
        self._task_timeout = task_timeout_seconds
        self._max_retries = max_retries
        self._block_ms = block_ms
        self._reclaim_idle_ms = max(reclaim_idle_ms, int(task_timeout_seconds * 1000))
        self._reclaim_interval = reclaim_interval_seconds
        self._in_flight: set[asyncio.Task] = set()
        self._in_flight_ids: set[str] = set()
        self._running = False

    @property
    def free_slots(self) -> int:
        return self._max_workers - len(self._in_flight)

    # ── Loop ────────────────────────────────────────────────────────────────

    async def process_loop(self) -> None:
        """Promote due tasks, read up to the free slot count, dispatch, repeat.

        Returns after ``stop()`` once in-flight handlers have drained.
        """
        self._running = True
        await self._queue.ensure_group(self._group)
        logger.info(
            "worker.started",
            stream=self._queue.stream_key,
            group=self._group,
            consumer=self._consumer_name,
            max_workers=self._max_workers,
        )

        last_reclaim = time.monotonic()
        try:
            while self._running:
                await self._queue.promote_due()

                if self.free_slots <= 0:
                    await asyncio.wait(
                        set(self._in_flight),
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                    continue

                if time.monotonic() - last_reclaim >= self._reclaim_interval:
                    last_reclaim = time.monotonic()
                    for message_id, raw_data in await self.reclaim_abandoned():
                        self._dispatch(message_id, raw_data)
                    if self.free_slots <= 0:
                        continue

                messages = await self._queue.read(
                    self._group,
                    self._consumer_name,
                    count=self.free_slots,
                    block=self._block_ms,
                )
                for message_id, raw_data in messages:
                    self._dispatch(message_id, raw_data)
        finally:
            await self.drain()
            logger.info("worker.stopped", consumer=self._consumer_name)

    def _dispatch(self, message_id: str, raw_data: dict[str, str]) -> None:
        task = asyncio.create_task(self.process_message(message_id, raw_data))
        self._in_flight.add(task)
        self._in_flight_ids.add(message_id)
        task.add_done_callback(self._in_flight.discard)
        task.add_done_callback(lambda _: self._in_flight_ids.discard(message_id))

    async def drain(self) -> None:
        """Wait for every in-flight handler to finish."""
        if self._in_flight:
            await asyncio.gather(*self._in_flight, return_exceptions=True)

    def stop(self) -> None:
        """Signal the loop to stop after the current iteration."""
        self._running = False

    # ── One Message ─────────────────────────────────────────────────────────

    async def process_message(self, message_id: str, raw_data: dict[str, str]) -> None:
        """Run the handler for one message and ack, retry or dead-letter it."""
        retry_count = int(raw_data.get("_retry_count", "0"))
        action = raw_data.get("action", "unknown")

        try:
            message = TaskMessage.from_stream_dict(raw_data)
        except (ValidationError, KeyError, ValueError) as exc:
            # Malformed task, redelivery cannot fix it
            await self._dead_letter(message_id, raw_data, exc, retry_count)
            return

        try:
            async with track_task(self._queue.integration_id, action):
                await asyncio.wait_for(self._handler(message), timeout=self._task_timeout)
            await self._queue.ack(self._group, message_id)

            logger.debug(
                "task.processed",
                task_id=message.task_id,
                action=action,
                message_id=message_id,
            )

        except NonRetryableTaskError as exc:
            await self._dead_letter(message_id, raw_data, exc, retry_count)

        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.warning(
                "task.failed",
                message_id=message_id,
                action=action,
                retry_count=retry_count,
                error=error,
            )

            if retry_count >= self._max_retries:
                await self._dead_letter(message_id, raw_data, exc, retry_count)
                return

            delay: float = self.RETRY_DELAYS[min(retry_count, len(self.RETRY_DELAYS) - 1)]
            if isinstance(exc, TransientVendorError) and exc.retry_after:
                delay = max(delay, exc.retry_after)

            retry_data = dict(raw_data)
            retry_data["_retry_count"] = str(retry_count + 1)
            await self._queue.enqueue_raw(retry_data, delay_seconds=delay)
            await self._queue.ack(self._group, message_id)

            logger.info(
                "task.retried",
                message_id=message_id,
                action=action,
                retry_count=retry_count + 1,
                delay=delay,
            )

    async def _dead_letter(
        self,
        message_id: str,
        raw_data: dict[str, str],
        exc: BaseException,
        retry_count: int,
    ) -> None:
        error = str(exc) or type(exc).__name__
        await self._dlq.send_to_dlq(
            message_id=message_id,
            data=raw_data,
            error=error,
            retry_count=retry_count,
        )
        await self._queue.ack(self._group, message_id)
        tasks_dead_lettered_total.labels(
            integration_id=self._queue.integration_id,
            action=raw_data.get("action", "unknown"),
        ).inc()

        logger.error(
            "task.sent_to_dlq",
            message_id=message_id,
            action=raw_data.get("action"),
            retry_count=retry_count,
            error=error,
        )

    async def reclaim_abandoned(self) -> list[tuple[str, dict[str, str]]]:
        """Take over tasks stuck in the pending list of dead consumers.

        Claims at most as many messages as there are free slots. XAUTOCLAIM
        also returns this consumer's own pending entries; the ones a handler
        is still working on are skipped.
        """
        if self.free_slots <= 0:
            return []
        reclaimed = await self._queue.reclaim(
            self._group,
            self._consumer_name,
            idle_time_ms=self._reclaim_idle_ms,
            count=self.free_slots,
        )
        reclaimed = [
            (message_id, raw_data)
            for message_id, raw_data in reclaimed
            if message_id not in self._in_flight_ids
        ]
        if reclaimed:
            logger.info("worker.reclaimed", count=len(reclaimed), consumer=self._consumer_name)
        return reclaimed
