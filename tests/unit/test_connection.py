"""
Tests for the reconnecting broker connection.
"""

import asyncio

import pytest
from helpers import wait_for_condition

from hms_eventbus.exceptions import BrokerUnavailable
from hms_eventbus.messaging import InMemoryBroker, InMemoryConnection
from hms_eventbus.resilience import RetryConfig


def make_connection(broker: InMemoryBroker, retry_count: int = 5) -> InMemoryConnection:
    return InMemoryConnection(
        broker,
        retry_config=RetryConfig(max_attempts=retry_count, base_delay=0.0, max_delay=0.0, jitter=False),
    )


@pytest.mark.unit
@pytest.mark.asyncio
class TestBrokerConnection:
    """Test suite for BrokerConnection."""

    async def test_connects_lazily(self, broker):
        connection = make_connection(broker)
        assert not connection.is_connected
        assert broker.connect_attempts == 0

        await connection.ensure_connected()

        assert connection.is_connected
        assert broker.connect_attempts == 1

    async def test_ensure_connected_is_a_no_op_when_connected(self, broker):
        connection = make_connection(broker)
        first = await connection.ensure_connected()
        second = await connection.ensure_connected()

        assert first is second
        assert broker.connect_attempts == 1

    @pytest.mark.parametrize("failures", [0, 1, 2, 3, 4])
    async def test_recovers_from_fewer_failures_than_retry_count(self, broker, failures):
        broker.connect_failures = failures
        connection = make_connection(broker, retry_count=5)

        await connection.ensure_connected()

        assert connection.is_connected
        assert broker.connect_attempts == failures + 1

    @pytest.mark.parametrize("failures", [5, 8])
    async def test_raises_when_failures_reach_retry_count(self, broker, failures):
        broker.connect_failures = failures
        connection = make_connection(broker, retry_count=5)

        with pytest.raises(BrokerUnavailable) as exc_info:
            await connection.ensure_connected()

        assert broker.connect_attempts == 5
        assert isinstance(exc_info.value.cause, ConnectionError)
        assert not connection.is_connected

    async def test_concurrent_callers_share_one_reconnect(self, broker):
        connection = make_connection(broker)

        channels = await asyncio.gather(*(connection.ensure_connected() for _ in range(10)))

        assert len({id(channel) for channel in channels}) == 1
        assert broker.connect_attempts == 1

    async def test_mark_down_notifies_and_next_use_reconnects(self, broker):
        connection = make_connection(broker)
        lost = []
        connected = []

        async def on_connected(channel, reconnect):
            connected.append(reconnect)

        connection.on_connection_lost(lost.append)
        connection.on_connected(on_connected)

        await connection.ensure_connected()
        reason = ConnectionError("socket closed")
        connection.mark_down(reason)

        assert not connection.is_connected
        assert lost == [reason]

        await connection.ensure_connected()
        assert connected == [False, True]

    async def test_broker_side_drop_marks_connection_down(self, broker):
        connection = make_connection(broker)
        lost = []
        connection.on_connection_lost(lost.append)
        await connection.ensure_connected()

        broker.drop_connections()

        assert not connection.is_connected
        assert len(lost) == 1

    async def test_mark_down_closes_the_dropped_channel(self, broker):
        connection = make_connection(broker)
        dropped = await connection.ensure_connected()

        connection.mark_down(ConnectionError("publish failed"))

        assert await wait_for_condition(lambda: not dropped.is_open)
        assert await connection.ensure_connected() is not dropped

    async def test_late_close_of_a_replaced_channel_is_ignored(self, broker):
        connection = make_connection(broker)
        lost = []
        connection.on_connection_lost(lost.append)
        dropped = await connection.ensure_connected()
        first = ConnectionError("publish failed")
        connection.mark_down(first)
        current = await connection.ensure_connected()

        connection.mark_down(ConnectionError("connection closed"), dropped)

        assert connection.is_connected
        assert await connection.ensure_connected() is current
        assert lost == [first]

    async def test_failed_topology_declaration_raises_broker_unavailable(self, broker):
        connection = make_connection(broker)

        async def broken_topology(channel, reconnect):
            raise ConnectionError("exchange declare refused")

        connection.on_connected(broken_topology)

        with pytest.raises(BrokerUnavailable):
            await connection.ensure_connected()
        assert not connection.is_connected

    async def test_closed_connection_refuses_use(self, broker):
        connection = make_connection(broker)
        await connection.ensure_connected()
        await connection.close()

        with pytest.raises(BrokerUnavailable):
            await connection.ensure_connected()

    async def test_context_manager_connects_and_closes(self, broker):
        async with make_connection(broker) as connection:
            assert connection.is_connected
        assert not connection.is_connected
