#!/usr/bin/env python3
"""Worker entry point: one process per integration.

Usage:
    python -m src.bridge.worker run --integration-id int_123 --user-id user_1 \
        --vendor synthetic --phone-number +15550001111
    python -m src.bridge.worker initial-sync --integration-id int_123 ...
    python -m src.bridge.worker ongoing-sync --integration-id int_123 ...
    python -m src.bridge.worker setup --integration-id int_123 ...
    python -m src.bridge.worker dlq-list --integration-id int_123 ...
    python -m src.bridge.worker dlq-replay --integration-id int_123 ... --message-id 1-0

Integration settings (vendor credentials, target webhook URL) are read as
a JSON object from ``--settings``.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import socket
import sys
from dataclasses import dataclass

import structlog
from prometheus_client import start_http_server

from src.bridge.config import get_settings
from src.bridge.core.database import close_db, get_session, init_db
from src.bridge.core.logging import configure_structlog
from src.bridge.core.monitoring import init_sentry
from src.bridge.core.redis import close_redis, get_redis, ping_redis
from src.bridge.queue.bus import TaskQueue
from src.bridge.queue.consumer import TaskWorker
from src.bridge.queue.dlq import DeadLetterQueue
from src.bridge.sync.activity import ActivityLogger
from src.bridge.sync.driver import SyncDriver
from src.bridge.sync.handlers import TaskRouter
from src.bridge.sync.mappings import MappingService
from src.bridge.sync.orchestrator import SyncOrchestrator
from src.bridge.sync.process_manager import ProcessManager
from src.bridge.sync.queue_manager import QueueManager
from src.bridge.sync.repository import MappingRepository, ProcessRepository
from src.bridge.sync.schemas import IntegrationContext, VendorConfig
from src.bridge.target.client import HttpTargetClient
from src.bridge.vendors.registry import get_vendor_class

logger = structlog.get_logger(__name__)


@dataclass
class Bridge:
    """Wired dependency graph for one integration."""

    integration: IntegrationContext
    vendor_config: VendorConfig
    queue: TaskQueue
    dlq: DeadLetterQueue
    orchestrator: SyncOrchestrator
    router: TaskRouter


def build_bridge(integration: IntegrationContext) -> Bridge:
    settings = get_settings()
    vendor_class = get_vendor_class(integration.vendor)
    vendor_config = vendor_class.default_config()
    sync_config = vendor_config.sync
    vendor = vendor_class(integration)

    redis = get_redis()
    queue = TaskQueue(redis, integration.integration_id, maxlen=settings.QUEUE_STREAM_MAXLEN)
    dlq = DeadLetterQueue(redis, integration.integration_id, maxlen=settings.QUEUE_STREAM_MAXLEN)

    processes = ProcessRepository(get_session)
    process_manager = ProcessManager(processes, sync_config)
    queue_manager = QueueManager(queue)
    target = HttpTargetClient(
        api_key=settings.TARGET_API_KEY,
        base_url=settings.TARGET_API_BASE_URL,
        timeout=settings.TARGET_API_TIMEOUT,
    )
    mappings = MappingService(integration, target, MappingRepository(get_session), sync_config)

    driver = SyncDriver(vendor, process_manager, queue_manager, mappings, sync_config)
    orchestrator = SyncOrchestrator(
        integration, vendor, target, process_manager, queue_manager, processes, sync_config
    )
    activity = ActivityLogger(integration, vendor, target, mappings, queue_manager, sync_config)
    router = TaskRouter(driver, orchestrator, activity, mappings, vendor)

    return Bridge(
        integration=integration,
        vendor_config=vendor_config,
        queue=queue,
        dlq=dlq,
        orchestrator=orchestrator,
        router=router,
    )


async def run_worker(bridge: Bridge, consumer_name: str) -> None:
    queue_config = bridge.vendor_config.queue
    worker = TaskWorker(
        bridge.queue,
        bridge.dlq,
        bridge.router,
        consumer_name=consumer_name,
        max_workers=queue_config.max_workers,
        task_timeout_seconds=queue_config.task_timeout_seconds,
        max_retries=queue_config.max_retries,
    )

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    await worker.process_loop()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="CRM bridge sync worker")
    parser.add_argument(
        "command",
        choices=["run", "initial-sync", "ongoing-sync", "setup", "dlq-list", "dlq-replay"],
    )
    parser.add_argument("--integration-id", required=True)
    parser.add_argument("--user-id", required=True)
    parser.add_argument("--vendor", required=True, help="Registry name of the CRM vendor")
    parser.add_argument(
        "--phone-number",
        action="append",
        default=[],
        help="The integration's own number (repeatable)",
    )
    parser.add_argument("--settings", default="{}", help="Integration settings as JSON")
    parser.add_argument("--no-webhooks", action="store_true")
    parser.add_argument("--consumer-name", default=f"{socket.gethostname()}-worker")
    parser.add_argument("--metrics-port", type=int, default=0)
    parser.add_argument("--message-id", help="DLQ message id for dlq-replay")
    parser.add_argument("--init-db", action="store_true", help="Create tables before starting")
    return parser.parse_args(argv)


async def _main(args: argparse.Namespace) -> int:
    integration = IntegrationContext(
        integration_id=args.integration_id,
        user_id=args.user_id,
        vendor=args.vendor,
        phone_numbers=args.phone_number,
        webhooks_enabled=not args.no_webhooks,
        settings=json.loads(args.settings),
    )
    bridge = build_bridge(integration)

    try:
        if args.init_db:
            await init_db()

        if args.command == "run":
            await ping_redis()
            await run_worker(bridge, args.consumer_name)
        elif args.command == "initial-sync":
            result = await bridge.orchestrator.start_initial_sync()
            print(json.dumps(result, indent=2))
        elif args.command == "ongoing-sync":
            result = await bridge.orchestrator.start_ongoing_sync()
            print(json.dumps(result, indent=2))
        elif args.command == "setup":
            await bridge.orchestrator.schedule_post_create_setup()
            print("POST_CREATE_SETUP queued")
        elif args.command == "dlq-list":
            print(f"{await bridge.dlq.size()} dead-lettered task(s)")
            for dead_letter in await bridge.dlq.list_dlq_messages():
                print(
                    dead_letter.dlq_id,
                    dead_letter.action,
                    f"retries={dead_letter.retry_count}",
                    dead_letter.error,
                )
        elif args.command == "dlq-replay":
            if not args.message_id:
                print("--message-id is required for dlq-replay", file=sys.stderr)
                return 2
            new_id = await bridge.dlq.replay_message(args.message_id)
            print(f"Replayed {args.message_id} as {new_id}")
    finally:
        await close_db()
        await close_redis()
    return 0


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    configure_structlog(integration_id=args.integration_id)
    init_sentry(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT.value,
        integration_id=args.integration_id,
    )
    if args.metrics_port:
        start_http_server(args.metrics_port)
        logger.info("worker.metrics_listening", port=args.metrics_port)

    return asyncio.run(_main(args))


if __name__ == "__main__":
    sys.exit(main())
