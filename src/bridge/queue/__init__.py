"""Integration work queue on Redis Streams.

Provides integration-scoped streams with delayed scheduling, a
bounded-concurrency worker with exponential-backoff retry, and dead
letter handling.

Exports:
    TaskMessage: Queued unit of work.
    TaskQueue: Enqueue/consume on an integration's stream.
    TaskWorker: Bounded-concurrency consumer with retry and DLQ.
    DeadLetterQueue: DLQ listing and replay.
"""

from __future__ import annotations

from src.bridge.queue.schemas import TaskMessage

__all__ = [
    "DeadLetterQueue",
    "TaskMessage",
    "TaskQueue",
    "TaskWorker",
]


def __getattr__(name: str):  # noqa: N807
    """Lazy-load bus, worker, and DLQ so schemas import without redis."""
    if name == "TaskQueue":
        from src.bridge.queue.bus import TaskQueue

        return TaskQueue
    if name == "TaskWorker":
        from src.bridge.queue.consumer import TaskWorker

        return TaskWorker
    if name == "DeadLetterQueue":
        from src.bridge.queue.dlq import DeadLetterQueue

        return DeadLetterQueue
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
