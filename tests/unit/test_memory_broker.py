"""
Tests for the in-memory topic broker.
"""

import pytest
from helpers import wait_for_condition

from hms_eventbus.messaging import InMemoryBroker, OutgoingMessage, matches_topic


def message(routing_key: str, message_id: str = "m-1") -> OutgoingMessage:
    return OutgoingMessage(body=b"{}", routing_key=routing_key, message_id=message_id)


@pytest.mark.unit
@pytest.mark.parametrize(
    "routing_key,pattern,expected",
    [
        ("OrderStarted", "OrderStarted", True),
        ("OrderStarted", "OrderPaid", False),
        ("order.started", "order.*", True),
        ("order.started.eu", "order.*", False),
        ("order.started.eu", "order.#", True),
        ("order", "order.#", True),
        ("basket.checkout", "#", True),
        ("basket.checkout", "*.checkout", True),
    ],
)
def test_topic_matching(routing_key, pattern, expected):
    assert matches_topic(routing_key, pattern) is expected


@pytest.mark.unit
@pytest.mark.asyncio
class TestInMemoryBroker:
    """Test suite for InMemoryBroker routing and settlement."""

    async def test_routes_by_binding(self, broker: InMemoryBroker):
        channel = broker.connect()
        await channel.declare_exchange("hms_event_bus")
        await channel.declare_queue("ordering")
        await channel.bind("ordering", "hms_event_bus", "OrderStarted")

        await channel.publish("hms_event_bus", message("OrderStarted", "a"))
        await channel.publish("hms_event_bus", message("ProductPriceChanged", "b"))

        assert [m.message_id for m in broker.messages("ordering")] == ["a"]
        assert len(broker.published) == 2

    async def test_unbind_stops_routing(self, broker):
        channel = broker.connect()
        await channel.declare_exchange("hms_event_bus")
        await channel.declare_queue("ordering")
        await channel.bind("ordering", "hms_event_bus", "OrderStarted")
        await channel.unbind("ordering", "hms_event_bus", "OrderStarted")

        await channel.publish("hms_event_bus", message("OrderStarted"))

        assert broker.depth("ordering") == 0

    async def test_publish_to_undeclared_exchange_fails(self, broker):
        channel = broker.connect()
        with pytest.raises(ConnectionError):
            await channel.publish("missing", message("OrderStarted"))

    async def test_requeue_counts_deliveries_until_dead_lettered(self, broker):
        channel = broker.connect()
        await channel.declare_exchange("hms_event_bus")
        await channel.declare_dead_letter("hms_event_bus.dead-letter", "ordering.dead-letter")
        await channel.declare_queue(
            "ordering", dead_letter_exchange="hms_event_bus.dead-letter", delivery_limit=2
        )
        await channel.bind("ordering", "hms_event_bus", "OrderStarted")

        counts = []

        async def always_requeue(incoming):
            counts.append(incoming.delivery_count)
            await incoming.nack(requeue=True)

        await channel.consume("ordering", always_requeue)
        await channel.publish("hms_event_bus", message("OrderStarted"))
        await broker.wait_until_idle()

        assert counts == [1, 2, 3]
        assert broker.depth("ordering") == 0
        assert broker.depth("ordering.dead-letter") == 1

    async def test_reject_dead_letters_immediately(self, broker):
        channel = broker.connect()
        await channel.declare_exchange("hms_event_bus")
        await channel.declare_dead_letter("hms_event_bus.dead-letter", "ordering.dead-letter")
        await channel.declare_queue("ordering", dead_letter_exchange="hms_event_bus.dead-letter")
        await channel.bind("ordering", "hms_event_bus", "OrderStarted")

        async def reject(incoming):
            await incoming.reject()

        await channel.consume("ordering", reject)
        await channel.publish("hms_event_bus", message("OrderStarted", "poison"))
        await broker.wait_until_idle()

        assert [m.message_id for m in broker.messages("ordering.dead-letter")] == ["poison"]

    async def test_dropped_channel_returns_unacked_messages(self, broker):
        channel = broker.connect()
        await channel.declare_exchange("hms_event_bus")
        await channel.declare_queue("ordering")
        await channel.bind("ordering", "hms_event_bus", "OrderStarted")

        received = []

        async def hold(incoming):
            received.append(incoming)

        await channel.consume("ordering", hold)
        await channel.publish("hms_event_bus", message("OrderStarted"))
        assert await wait_for_condition(lambda: len(received) == 1)
        assert broker.depth("ordering") == 1

        broker.drop_connections()

        assert not channel.is_open
        [returned] = broker.messages("ordering")
        assert returned.message_id == "m-1"

        replacement = broker.connect()
        redelivered = []

        async def ack(incoming):
            redelivered.append(incoming)
            await incoming.ack()

        await replacement.consume("ordering", ack)
        await broker.wait_until_idle()

        assert redelivered[0].redelivered
        assert redelivered[0].delivery_count == 2
        assert broker.depth("ordering") == 0

    async def test_unavailable_broker_refuses_connections(self, broker):
        broker.go_down()
        with pytest.raises(ConnectionError):
            broker.connect()
        broker.come_up()
        assert broker.connect().is_open
