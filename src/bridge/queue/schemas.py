"""Task message schema for the integration work queue.

Task messages serialize to flat string dicts for Redis Streams and
deserialize back losslessly. The payload is JSON-encoded; datetimes
inside it must already be ISO-8601 strings.

Stream key pattern: i:{integration_id}:tasks
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field

from src.bridge.sync.schemas import TaskAction


class TaskMessage(BaseModel):
    """One unit of queued work.

    Attributes:
        task_id: Unique identifier (auto-generated UUID4).
        action: What the worker should do with the payload.
        integration_id: Integration whose queue carries the task.
        payload: Action-specific arguments (process_id, page, cursor, ...).
        created_at: UTC creation time.
    """

    task_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: TaskAction
    integration_id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_stream_dict(self) -> dict[str, str]:
        """Serialize to a flat dict of strings suitable for XADD."""
        return {
            "task_id": self.task_id,
            "action": self.action.value,
            "integration_id": self.integration_id,
            "payload": json.dumps(self.payload),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, raw: dict[str, str]) -> TaskMessage:
        """Reverse ``to_stream_dict()``. Bookkeeping keys (``_retry_count``) are ignored."""
        return cls(
            task_id=raw["task_id"],
            action=TaskAction(raw["action"]),
            integration_id=raw["integration_id"],
            payload=json.loads(raw["payload"]) if raw.get("payload") else {},
            created_at=datetime.fromisoformat(raw["created_at"]),
        )
