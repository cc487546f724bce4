"""
Global pytest configuration and fixtures for event bus testing.

Storage runs on a per-test SQLite file and the broker is the in-process
in-memory broker, so no external services are needed.
"""

import pytest
import pytest_asyncio
from helpers import OrderBase

from hms_eventbus.config import EventBusSettings
from hms_eventbus.database import DatabaseManager, TransactionManager
from hms_eventbus.events import EventBus, EventTypeRegistry, IntegrationEventSerializer
from hms_eventbus.idempotency import IdempotencyGuard
from hms_eventbus.messaging import InMemoryBroker, InMemoryConnection
from hms_eventbus.outbox import EventOutbox
from hms_eventbus.resilience import RetryConfig


@pytest.fixture
def fast_retry() -> RetryConfig:
    """Five attempts without waiting between them."""
    return RetryConfig(max_attempts=5, base_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def broker() -> InMemoryBroker:
    return InMemoryBroker()


@pytest_asyncio.fixture
async def connection(broker, fast_retry):
    conn = InMemoryConnection(broker, retry_config=fast_retry)
    yield conn
    await conn.close()


@pytest.fixture
def event_types() -> EventTypeRegistry:
    """An isolated event type registry."""
    return EventTypeRegistry()


@pytest.fixture
def serializer(event_types) -> IntegrationEventSerializer:
    return IntegrationEventSerializer(event_types)


@pytest_asyncio.fixture
async def event_bus(connection, serializer, event_types):
    bus = EventBus(
        connection,
        "ordering",
        serializer=serializer,
        event_types=event_types,
        max_redelivery_count=3,
        reconnect_interval=0.01,
    )
    yield bus
    await bus.stop(timeout=2.0)


@pytest_asyncio.fixture
async def db_manager(tmp_path):
    manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'eventbus.db'}")
    await manager.create_tables()
    yield manager
    await manager.close()


@pytest.fixture
def transactions(db_manager) -> TransactionManager:
    return TransactionManager(db_manager)


@pytest.fixture
def outbox(db_manager, serializer) -> EventOutbox:
    return EventOutbox(db_manager, serializer=serializer, in_progress_timeout=60.0)


@pytest.fixture
def guard(transactions) -> IdempotencyGuard:
    return IdempotencyGuard(transactions)


@pytest.fixture
def settings(tmp_path, monkeypatch) -> EventBusSettings:
    """Settings isolated from the developer's environment and .env file."""
    monkeypatch.chdir(tmp_path)
    return EventBusSettings(
        service_name="ordering",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'eventbus.db'}",
        retry_initial_delay=0.0,
        retry_max_delay=0.0,
        outbox_poll_interval=0.05,
    )


@pytest_asyncio.fixture
async def orders_table(db_manager):
    """Create the business table used by transactional tests."""
    await db_manager.create_tables(metadata=OrderBase.metadata)
    return db_manager
