"""
Tests for the hms-eventbus operator CLI.
"""

import asyncio

import pytest
from click.testing import CliRunner

from hms_eventbus import cli
from hms_eventbus import host as host_module
from hms_eventbus.database import DatabaseManager, TransactionManager
from hms_eventbus.events import IntegrationEvent
from hms_eventbus.messaging import InMemoryBroker, InMemoryConnection
from hms_eventbus.outbox import EventOutbox, OutboxState


@pytest.fixture
def database_url(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)
    monkeypatch.setenv("EVENTBUS_RETRY_INITIAL_DELAY", "0")
    monkeypatch.setenv("EVENTBUS_RETRY_MAX_DELAY", "0")
    return f"sqlite+aiosqlite:///{tmp_path / 'eventbus.db'}"


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


def seed(database_url: str, created: int = 0, failed: int = 0, terminal: int = 0, published: int = 0):
    """Write outbox entries in the requested states and return their event ids by state."""

    async def write():
        db_manager = DatabaseManager(database_url)
        try:
            await db_manager.create_tables()
            outbox = EventOutbox(db_manager)
            transactions = TransactionManager(db_manager)
            ids = {"created": [], "failed": [], "terminal": [], "published": []}
            plan = [("created", created), ("failed", failed), ("terminal", terminal), ("published", published)]
            for state, count in plan:
                for i in range(count):
                    event = IntegrationEvent.create("OrderStarted", {"userId": f"{state}-{i}"})
                    async with transactions.transaction() as scope:
                        await outbox.enqueue(event, scope)
                    ids[state].append(event.id)
                    if state == "created":
                        continue
                    await outbox.mark_in_progress(event.id)
                    if state == "published":
                        await outbox.mark_published(event.id)
                    else:
                        await outbox.mark_failed(event.id, "broker down", terminal=state == "terminal")
            return ids
        finally:
            await db_manager.close()

    return asyncio.run(write())


def fetch(database_url: str, event_id: str):
    async def read():
        db_manager = DatabaseManager(database_url)
        try:
            return await EventOutbox(db_manager).get(event_id)
        finally:
            await db_manager.close()

    return asyncio.run(read())


@pytest.mark.unit
class TestOutboxCommands:
    """Test suite for outbox inspection commands."""

    def test_pending_on_empty_outbox(self, runner, database_url):
        result = runner.invoke(cli.main, ["--database-url", database_url, "outbox", "pending"])

        assert result.exit_code == 0, result.output
        assert "Nothing pending" in result.output

    def test_pending_lists_entries(self, runner, database_url):
        seed(database_url, created=2, published=1)

        result = runner.invoke(cli.main, ["--database-url", database_url, "outbox", "pending"])

        assert result.exit_code == 0, result.output
        assert "CREATED=2" in result.output
        assert "PUBLISHED=1" in result.output
        assert "Nothing pending" not in result.output

    def test_failed_terminal_only(self, runner, database_url):
        seed(database_url, failed=1)

        result = runner.invoke(
            cli.main, ["--database-url", database_url, "outbox", "failed", "--terminal-only"]
        )

        assert result.exit_code == 0, result.output
        assert "No failed entries" in result.output

    def test_requeue_terminal_entry(self, runner, database_url):
        ids = seed(database_url, terminal=1)
        event_id = ids["terminal"][0]

        result = runner.invoke(cli.main, ["--database-url", database_url, "outbox", "requeue", event_id])

        assert result.exit_code == 0, result.output
        assert "Requeued" in result.output
        entry = fetch(database_url, event_id)
        assert entry.state == OutboxState.PUBLISH_FAILED
        assert not entry.terminal

    def test_requeue_unknown_entry_fails(self, runner, database_url):
        result = runner.invoke(cli.main, ["--database-url", database_url, "outbox", "requeue", "missing"])

        assert result.exit_code == 1
        assert "missing" in result.output

    def test_cleanup(self, runner, database_url):
        ids = seed(database_url, created=1, published=2)

        result = runner.invoke(
            cli.main, ["--database-url", database_url, "outbox", "cleanup", "--older-than-days", "0"]
        )

        assert result.exit_code == 0, result.output
        assert "Deleted 2 published entries" in result.output
        assert fetch(database_url, ids["published"][0]) is None
        assert fetch(database_url, ids["created"][0]) is not None

    def test_invalid_log_level(self, runner, database_url):
        result = runner.invoke(
            cli.main, ["--database-url", database_url, "--log-level", "loud", "outbox", "pending"]
        )

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output


@pytest.mark.unit
class TestPublishPending:
    """Test suite for the publish-pending command."""

    @pytest.fixture
    def broker(self, monkeypatch):
        broker = InMemoryBroker()

        def create_connection(settings):
            return InMemoryConnection(broker, retry_config=settings.retry_config())

        monkeypatch.setattr(host_module, "create_connection", create_connection)
        return broker

    def test_publishes_pending_entries(self, runner, database_url, broker):
        ids = seed(database_url, created=2, failed=1)

        result = runner.invoke(cli.main, ["--database-url", database_url, "publish-pending"])

        assert result.exit_code == 0, result.output
        for event_id in ids["created"] + ids["failed"]:
            assert fetch(database_url, event_id).state == OutboxState.PUBLISHED
        assert [message.routing_key for _, message in broker.published] == ["OrderStarted"] * 3

    def test_exits_non_zero_when_broker_is_down(self, runner, database_url, broker):
        ids = seed(database_url, created=1)
        broker.go_down()

        result = runner.invoke(cli.main, ["--database-url", database_url, "publish-pending"])

        assert result.exit_code == 1
        entry = fetch(database_url, ids["created"][0])
        assert entry.state == OutboxState.PUBLISH_FAILED
        assert entry.publish_attempts == 1
