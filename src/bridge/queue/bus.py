"""Integration-scoped task queue using Redis Streams.

Immediate tasks are appended to the integration's stream and consumed
through a consumer group. Delayed tasks wait in a sorted set scored by
their due time and are promoted into the stream by the worker loop, so
a delay never holds a worker slot.

Key patterns:
    i:{integration_id}:tasks          stream
    i:{integration_id}:tasks:delayed  sorted set (member = JSON stream dict)
"""

from __future__ import annotations

import json
import time

import redis.asyncio as aioredis
import structlog

from src.bridge.queue.schemas import TaskMessage

logger = structlog.get_logger(__name__)


class TaskQueue:
    """Enqueue and consume tasks on one integration's stream.

    Args:
        redis: Raw async Redis client (``decode_responses=True``).
        integration_id: Integration identifier for key scoping.
        maxlen: Approximate stream length cap applied on XADD.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        integration_id: str,
        maxlen: int = 100_000,
    ) -> None:
        self._redis = redis
        self._integration_id = integration_id
        self._maxlen = maxlen

    @property
    def integration_id(self) -> str:
        return self._integration_id

    @property
    def stream_key(self) -> str:
        return f"i:{self._integration_id}:tasks"

    @property
    def delayed_key(self) -> str:
        return f"i:{self._integration_id}:tasks:delayed"

    # ── Producing ───────────────────────────────────────────────────────────

    def _check_scope(self, message: TaskMessage) -> None:
        if message.integration_id != self._integration_id:
            msg = (
                f"Task integration_id '{message.integration_id}' does not match "
                f"queue integration_id '{self._integration_id}'"
            )
            raise ValueError(msg)

    async def enqueue(
        self,
        message: TaskMessage,
        delay_seconds: float | None = None,
    ) -> str:
        """Append a task, or schedule it ``delay_seconds`` from now.

        Returns:
            The Redis message id, or the task id for delayed tasks.

        Raises:
            ValueError: If the task belongs to another integration.
        """
        self._check_scope(message)
        return await self.enqueue_raw(message.to_stream_dict(), delay_seconds)

    async def enqueue_raw(
        self,
        data: dict[str, str],
        delay_seconds: float | None = None,
    ) -> str:
        """Append (or schedule) an already-serialized stream dict."""
        if delay_seconds and delay_seconds > 0:
            due = time.time() + delay_seconds
            await self._redis.zadd(self.delayed_key, {json.dumps(data, sort_keys=True): due})
            logger.debug(
                "task.scheduled",
                stream=self.stream_key,
                action=data.get("action"),
                task_id=data.get("task_id"),
                delay_seconds=delay_seconds,
            )
            return data["task_id"]

        message_id = await self._redis.xadd(
            self.stream_key,
            data,
            maxlen=self._maxlen,
            approximate=True,
        )
        logger.debug(
            "task.enqueued",
            stream=self.stream_key,
            action=data.get("action"),
            task_id=data.get("task_id"),
            message_id=message_id,
        )
        return message_id

    async def enqueue_many(self, messages: list[TaskMessage]) -> list[str]:
        """Append several tasks in one pipelined round trip."""
        if not messages:
            return []
        for message in messages:
            self._check_scope(message)

        async with self._redis.pipeline(transaction=False) as pipe:
            for message in messages:
                pipe.xadd(
                    self.stream_key,
                    message.to_stream_dict(),
                    maxlen=self._maxlen,
                    approximate=True,
                )
            message_ids = await pipe.execute()

        logger.info(
            "task.batch_enqueued",
            stream=self.stream_key,
            count=len(messages),
            action=messages[0].action.value,
        )
        return list(message_ids)

    async def promote_due(self, limit: int = 100) -> int:
        """Move delayed tasks whose due time has passed into the stream.

        ZREM decides ownership so concurrent workers never promote the
        same member twice.

        Returns:
            Number of tasks promoted.
        """
        members = await self._redis.zrangebyscore(
            self.delayed_key, "-inf", time.time(), start=0, num=limit,
        )
        promoted = 0
        for member in members:
            if await self._redis.zrem(self.delayed_key, member):
                await self._redis.xadd(
                    self.stream_key,
                    json.loads(member),
                    maxlen=self._maxlen,
                    approximate=True,
                )
                promoted += 1
        if promoted:
            logger.debug("task.promoted", stream=self.stream_key, count=promoted)
        return promoted

    # ── Consuming ───────────────────────────────────────────────────────────

    async def ensure_group(self, group: str) -> None:
        """Create the consumer group if it does not already exist."""
        try:
            await self._redis.xgroup_create(
                self.stream_key, group, id="0", mkstream=True,
            )
        except aioredis.ResponseError:
            pass  # Group already exists

    async def read(
        self,
        group: str,
        consumer: str,
        count: int = 10,
        block: int = 1000,
    ) -> list[tuple[str, dict[str, str]]]:
        """Read up to ``count`` new tasks as ``consumer``.

        Returns:
            List of ``(message_id, data)`` tuples.
        """
        response = await self._redis.xreadgroup(
            groupname=group,
            consumername=consumer,
            streams={self.stream_key: ">"},
            count=count,
            block=block,
        )
        messages: list[tuple[str, dict[str, str]]] = []
        for _stream_key, stream_messages in response or []:
            messages.extend(stream_messages)
        return messages

    async def ack(self, group: str, message_id: str) -> None:
        await self._redis.xack(self.stream_key, group, message_id)

    async def reclaim(
        self,
        group: str,
        consumer: str,
        idle_time_ms: int,
        count: int = 10,
    ) -> list[tuple[str, dict[str, str]]]:
        """Take ownership of tasks idle in other consumers' pending lists."""
        result = await self._redis.xautoclaim(
            self.stream_key,
            group,
            consumer,
            min_idle_time=idle_time_ms,
            start_id="0",
            count=count,
        )
        # [next_start_id, messages, (deleted_ids on Redis >= 7)]
        return [(mid, data) for mid, data in result[1] if data]
