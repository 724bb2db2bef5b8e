"""Prometheus metrics and Sentry integration for sync workers.

Provides:
- Task counters/histograms labelled by integration and action
- Record counters fed by the pagination driver
- track_task(): Context manager recording one task invocation
- init_sentry(): Initialize Sentry with integration-aware tagging
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import sentry_sdk
from prometheus_client import Counter, Gauge, Histogram

# ── Task Metrics ────────────────────────────────────────────────────────────

tasks_total = Counter(
    "bridge_tasks_total",
    "Queue task invocations by outcome",
    ["integration_id", "action", "status"],
)

task_duration_seconds = Histogram(
    "bridge_task_duration_seconds",
    "Queue task handler duration in seconds",
    ["integration_id", "action"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 300.0),
)

tasks_in_flight = Gauge(
    "bridge_tasks_in_flight",
    "Task handlers currently holding a worker slot",
    ["integration_id"],
)

tasks_dead_lettered_total = Counter(
    "bridge_tasks_dead_lettered_total",
    "Tasks moved to the dead letter stream",
    ["integration_id", "action"],
)

# ── Sync Metrics ────────────────────────────────────────────────────────────

records_synced_total = Counter(
    "bridge_records_synced_total",
    "Records written to the target platform",
    ["integration_id", "status"],
)

activities_logged_total = Counter(
    "bridge_activities_logged_total",
    "Call/message activities mirrored into the CRM",
    ["integration_id", "kind", "status"],
)


# ── Task Helper ─────────────────────────────────────────────────────────────


@asynccontextmanager
async def track_task(integration_id: str, action: str) -> AsyncGenerator[None, None]:
    """Record count, duration and in-flight gauge for one task invocation.

    Usage:
        async with track_task(integration_id, message.action.value):
            await handler(message)
    """
    start_time = time.perf_counter()
    status = "success"
    tasks_in_flight.labels(integration_id=integration_id).inc()

    try:
        yield
    except Exception:
        status = "error"
        raise
    finally:
        duration = time.perf_counter() - start_time
        tasks_in_flight.labels(integration_id=integration_id).dec()
        tasks_total.labels(
            integration_id=integration_id,
            action=action,
            status=status,
        ).inc()
        task_duration_seconds.labels(
            integration_id=integration_id,
            action=action,
        ).observe(duration)


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str, integration_id: str | None = None) -> None:
    """Initialize Sentry SDK for a worker process.

    Args:
        dsn: Sentry DSN string. Empty string disables Sentry.
        environment: Deployment environment (development, staging, production).
        integration_id: Tagged on every event when the worker serves one integration.
    """
    if not dsn:
        return

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Tag events with the integration the worker is serving."""
        if integration_id:
            event.setdefault("tags", {})["integration_id"] = integration_id
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        before_send=before_send,
    )
