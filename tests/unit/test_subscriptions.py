"""
Tests for the subscription registry.
"""

import threading

import pytest

from hms_eventbus.events import Subscription, SubscriptionRegistry


@pytest.mark.unit
class TestSubscriptionRegistry:
    """Test suite for SubscriptionRegistry."""

    def test_first_subscription_for_a_type_is_reported(self):
        registry = SubscriptionRegistry()

        assert registry.subscribe("OrderStarted", "ordering.OrderStartedHandler") is True
        assert registry.subscribe("OrderStarted", "ordering.AuditHandler") is False
        assert registry.is_subscribed("OrderStarted")

    def test_handlers_keep_registration_order(self):
        registry = SubscriptionRegistry()
        registry.subscribe("OrderStarted", "b")
        registry.subscribe("OrderStarted", "a")
        registry.subscribe("OrderStarted", "b")

        assert registry.handlers_for("OrderStarted") == ["b", "a"]
        assert registry.handlers_for("Unknown") == []

    def test_removing_last_handler_notifies_once(self):
        registry = SubscriptionRegistry()
        removed = []
        registry.on_event_removed(removed.append)
        registry.subscribe("OrderStarted", "a")
        registry.subscribe("OrderStarted", "b")

        assert registry.unsubscribe("OrderStarted", "a") is True
        assert removed == []
        assert registry.unsubscribe("OrderStarted", "b") is True
        assert removed == ["OrderStarted"]
        assert not registry.is_subscribed("OrderStarted")
        assert registry.is_empty

    def test_unsubscribing_unknown_handler_is_a_no_op(self):
        registry = SubscriptionRegistry()
        registry.subscribe("OrderStarted", "a")

        assert registry.unsubscribe("OrderStarted", "missing") is False
        assert registry.unsubscribe("Unknown", "a") is False
        assert registry.handlers_for("OrderStarted") == ["a"]

    def test_subscriptions_snapshot(self):
        registry = SubscriptionRegistry()
        registry.subscribe("OrderStarted", "a")
        registry.subscribe("ProductPriceChanged", "b")

        assert registry.event_types() == ["OrderStarted", "ProductPriceChanged"]
        assert registry.subscriptions() == [
            Subscription("OrderStarted", "a"),
            Subscription("ProductPriceChanged", "b"),
        ]

    def test_clear_notifies_each_type(self):
        registry = SubscriptionRegistry()
        removed = []
        registry.on_event_removed(removed.append)
        registry.subscribe("OrderStarted", "a")
        registry.subscribe("ProductPriceChanged", "b")

        registry.clear()

        assert sorted(removed) == ["OrderStarted", "ProductPriceChanged"]
        assert registry.is_empty

    def test_failing_callback_does_not_block_others(self):
        registry = SubscriptionRegistry()
        removed = []

        def broken(event_type_name):
            raise RuntimeError("boom")

        registry.on_event_removed(broken)
        registry.on_event_removed(removed.append)
        registry.subscribe("OrderStarted", "a")
        registry.unsubscribe("OrderStarted", "a")

        assert removed == ["OrderStarted"]

    @pytest.mark.parametrize("event_type,identity", [("", "a"), ("OrderStarted", "")])
    def test_rejects_empty_arguments(self, event_type, identity):
        with pytest.raises(ValueError):
            SubscriptionRegistry().subscribe(event_type, identity)

    def test_concurrent_subscriptions_are_not_lost(self):
        registry = SubscriptionRegistry()

        def subscribe_many(prefix):
            for i in range(200):
                registry.subscribe("OrderStarted", f"{prefix}-{i}")

        threads = [threading.Thread(target=subscribe_many, args=(n,)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(registry.handlers_for("OrderStarted")) == 800
