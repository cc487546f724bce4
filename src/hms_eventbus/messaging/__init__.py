"""
Broker connectivity for the integration event bus.

This package provides:
- Broker-neutral message and channel contracts
- A reconnecting broker connection with bounded backoff
- RabbitMQ (aio-pika) and in-memory broker implementations
"""

from .connection import BrokerConnection
from .core import BrokerChannel, IncomingMessage, MessageCallback, OutgoingMessage
from .memory import InMemoryBroker, InMemoryConnection, matches_topic
from .rabbitmq import RabbitMQConnection, build_connection_url

__all__ = [
    "BrokerChannel",
    "BrokerConnection",
    "InMemoryBroker",
    "InMemoryConnection",
    "IncomingMessage",
    "MessageCallback",
    "OutgoingMessage",
    "RabbitMQConnection",
    "build_connection_url",
    "matches_topic",
]
