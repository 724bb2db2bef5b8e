"""Dead letter stream for tasks that failed permanently.

Tasks land here after exhausting their retries, or immediately when
redelivery cannot help (unknown process, illegal state transition,
malformed message). Each entry keeps the original stream fields plus
``_dlq_*`` failure fields, so a replay restores the task exactly.

DLQ key pattern: i:{integration_id}:tasks:dlq
"""

from __future__ import annotations

from datetime import datetime, timezone

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel

logger = structlog.get_logger(__name__)

_DLQ_PREFIX = "_dlq_"


class DeadLetter(BaseModel):
    """One dead-lettered task as stored in the DLQ stream."""

    dlq_id: str
    original_id: str | None = None
    action: str | None = None
    task_id: str | None = None
    error: str = ""
    retry_count: int = 0
    dead_lettered_at: datetime | None = None
    fields: dict[str, str]

    @classmethod
    def from_entry(cls, dlq_id: str, data: dict[str, str]) -> DeadLetter:
        timestamp = data.get("_dlq_timestamp")
        return cls(
            dlq_id=dlq_id,
            original_id=data.get("_dlq_original_id"),
            action=data.get("action"),
            task_id=data.get("task_id"),
            error=data.get("_dlq_error", ""),
            retry_count=int(data.get("_dlq_retry_count", "0")),
            dead_lettered_at=datetime.fromisoformat(timestamp) if timestamp else None,
            fields=data,
        )

    def replay_fields(self) -> dict[str, str]:
        """Original task fields with failure and retry bookkeeping removed."""
        return {
            key: value
            for key, value in self.fields.items()
            if not key.startswith(_DLQ_PREFIX) and key != "_retry_count"
        }


class DeadLetterQueue:
    """Store, inspect and replay dead-lettered tasks for one integration.

    Args:
        redis: Raw async Redis client.
        integration_id: Integration identifier for key scoping.
        maxlen: Approximate task stream cap applied on replay.
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
    def dlq_key(self) -> str:
        return f"i:{self._integration_id}:tasks:dlq"

    @property
    def stream_key(self) -> str:
        return f"i:{self._integration_id}:tasks"

    async def send_to_dlq(
        self,
        message_id: str,
        data: dict[str, str],
        error: str,
        retry_count: int,
    ) -> str:
        """Append a failed task with its failure fields.

        Returns:
            DLQ message ID assigned by XADD.
        """
        entry = {
            **data,
            "_dlq_original_id": message_id,
            "_dlq_error": error,
            "_dlq_retry_count": str(retry_count),
            "_dlq_timestamp": datetime.now(timezone.utc).isoformat(),
        }
        dlq_id = await self._redis.xadd(self.dlq_key, entry)

        logger.warning(
            "dlq.task_stored",
            dlq_id=dlq_id,
            action=data.get("action"),
            original_id=message_id,
            retry_count=retry_count,
        )
        return dlq_id

    async def size(self) -> int:
        return await self._redis.xlen(self.dlq_key)

    async def list_dlq_messages(self, count: int = 50) -> list[DeadLetter]:
        """Oldest ``count`` dead letters."""
        entries = await self._redis.xrange(self.dlq_key, count=count)
        return [DeadLetter.from_entry(dlq_id, data) for dlq_id, data in entries]

    async def get(self, dlq_id: str) -> DeadLetter | None:
        entries = await self._redis.xrange(self.dlq_key, min=dlq_id, max=dlq_id, count=1)
        if not entries:
            return None
        return DeadLetter.from_entry(*entries[0])

    async def replay_message(self, dlq_id: str) -> str:
        """Move a dead letter back onto the task stream with retries reset.

        Raises:
            ValueError: If ``dlq_id`` is not in the DLQ.
        """
        dead_letter = await self.get(dlq_id)
        if dead_letter is None:
            msg = f"DLQ message '{dlq_id}' not found in {self.dlq_key}"
            raise ValueError(msg)

        new_id = await self._redis.xadd(
            self.stream_key,
            dead_letter.replay_fields(),
            maxlen=self._maxlen,
            approximate=True,
        )
        await self._redis.xdel(self.dlq_key, dlq_id)

        logger.info(
            "dlq.task_replayed",
            dlq_id=dlq_id,
            new_message_id=new_id,
            action=dead_letter.action,
            previous_error=dead_letter.error,
        )
        return new_id
