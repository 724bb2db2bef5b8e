"""Shared fixtures for the sync engine tests.

Provides:
- An integration backed by the synthetic vendor (250 records)
- In-memory process/mapping stores, task queue and target platform
- Fully wired ProcessManager, QueueManager, MappingService, SyncDriver,
  SyncOrchestrator, ActivityLogger and TaskRouter
- make_driver(): build a driver for another vendor or pagination strategy
"""

from __future__ import annotations

import pytest

from src.bridge.sync.activity import ActivityLogger
from src.bridge.sync.driver import SyncDriver
from src.bridge.sync.handlers import TaskRouter
from src.bridge.sync.mappings import MappingService
from src.bridge.sync.orchestrator import SyncOrchestrator
from src.bridge.sync.process_manager import ProcessManager
from src.bridge.sync.queue_manager import QueueManager
from src.bridge.sync.schemas import IntegrationContext, SyncConfig
from src.bridge.vendors.synthetic import SyntheticVendor
from tests.fakes import (
    FakeMappingRepository,
    FakeProcessRepository,
    InMemoryTargetClient,
    RecordingQueue,
)

INTEGRATION_ID = "int_test"
OWN_NUMBER = "+15559990000"


@pytest.fixture
def integration() -> IntegrationContext:
    return IntegrationContext(
        integration_id=INTEGRATION_ID,
        user_id="user_1",
        vendor="synthetic",
        phone_numbers=[OWN_NUMBER],
        settings={"total_records": 250, "target_webhook_url": "https://bridge.test/hooks"},
    )


@pytest.fixture
def sync_config() -> SyncConfig:
    """Synthetic-vendor config with every wait set to zero or a small bound."""
    return SyncConfig(
        initial_batch_size=100,
        ongoing_batch_size=50,
        return_full_records=True,
        bulk_confirm_delay_seconds=0,
        voicemail_delay_seconds=3,
        complete_sync_settle_seconds=5,
        complete_sync_max_attempts=3,
    )


@pytest.fixture
def process_repo() -> FakeProcessRepository:
    return FakeProcessRepository()


@pytest.fixture
def mapping_repo() -> FakeMappingRepository:
    return FakeMappingRepository()


@pytest.fixture
def task_queue() -> RecordingQueue:
    return RecordingQueue(INTEGRATION_ID)


@pytest.fixture
def target() -> InMemoryTargetClient:
    return InMemoryTargetClient()


@pytest.fixture
def process_manager(process_repo, sync_config) -> ProcessManager:
    return ProcessManager(process_repo, sync_config)


@pytest.fixture
def queue_manager(task_queue) -> QueueManager:
    return QueueManager(task_queue)


@pytest.fixture
def vendor(integration) -> SyntheticVendor:
    return SyntheticVendor(integration)


@pytest.fixture
def mappings(integration, target, mapping_repo, sync_config) -> MappingService:
    return MappingService(integration, target, mapping_repo, sync_config)


@pytest.fixture
def make_driver(process_manager, queue_manager, mappings, sync_config):
    """Build a SyncDriver for any vendor, optionally overriding config fields."""

    def _make(vendor, **overrides) -> SyncDriver:
        config = sync_config.model_copy(update=overrides)
        return SyncDriver(vendor, process_manager, queue_manager, mappings, config)

    return _make


@pytest.fixture
def driver(make_driver, vendor) -> SyncDriver:
    return make_driver(vendor)


@pytest.fixture
def orchestrator(
    integration, vendor, target, process_manager, queue_manager, process_repo, sync_config
) -> SyncOrchestrator:
    return SyncOrchestrator(
        integration, vendor, target, process_manager, queue_manager, process_repo, sync_config
    )


@pytest.fixture
def activity(integration, vendor, target, mappings, queue_manager, sync_config) -> ActivityLogger:
    return ActivityLogger(integration, vendor, target, mappings, queue_manager, sync_config)


@pytest.fixture
def router(driver, orchestrator, activity, mappings, vendor) -> TaskRouter:
    return TaskRouter(driver, orchestrator, activity, mappings, vendor)
