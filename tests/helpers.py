"""
Shared test helpers.
"""

import asyncio

from sqlalchemy import Column, Integer, String, func, select
from sqlalchemy.orm import DeclarativeBase

from hms_eventbus.messaging.core import IncomingMessage


async def wait_for_condition(condition_func, timeout: float = 5.0, interval: float = 0.01):
    """Wait for a condition to become true."""
    elapsed = 0.0
    while elapsed < timeout:
        if (
            await condition_func()
            if asyncio.iscoroutinefunction(condition_func)
            else condition_func()
        ):
            return True
        await asyncio.sleep(interval)
        elapsed += interval
    return False


class StubIncomingMessage(IncomingMessage):
    """Incoming message recording how it was settled."""

    def __init__(self, body: bytes, routing_key: str, headers: dict | None = None, message_id: str = "m-1"):
        self.body = body
        self.routing_key = routing_key
        self.message_id = message_id
        self.headers = dict(headers or {})
        self.redelivered = False
        self.settlements: list[str] = []

    async def ack(self) -> None:
        self.settlements.append("ack")

    async def nack(self, requeue: bool = True) -> None:
        self.settlements.append("requeue" if requeue else "nack")

    async def reject(self) -> None:
        self.settlements.append("reject")


class OrderBase(DeclarativeBase):
    pass


class OrderRecord(OrderBase):
    """Business table written alongside outbox entries and request records."""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, autoincrement=True)
    buyer_id = Column(String(64), nullable=False)
    status = Column(String(32), nullable=False, default="submitted")


async def count_orders(db_manager) -> int:
    async with db_manager.session() as session:
        return await session.scalar(select(func.count()).select_from(OrderRecord))
