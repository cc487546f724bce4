"""
Broker Connection

Owns the single physical broker connection of a service process. The
connection is opened lazily, marked down on transport failures and
re-established with bounded exponential backoff on the next use.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable

from ..exceptions import BrokerUnavailable
from ..resilience import RetryConfig, RetryError, RetryManager
from .core import BrokerChannel

logger = logging.getLogger(__name__)

ConnectionLostCallback = Callable[[Exception | None], None]
ConnectedCallback = Callable[[BrokerChannel, bool], Awaitable[None]]


class BrokerConnection(ABC):
    """Reconnecting broker connection handle.

    One instance is created per process and passed to the event bus and the
    outbox publisher. ``ensure_connected`` is the only routine that opens
    connections and it runs under a lock, so concurrent callers share one
    reconnect attempt.
    """

    def __init__(self, retry_config: RetryConfig | None = None, name: str = "broker"):
        self.name = name
        self.retry_config = retry_config or RetryConfig()
        self._retry = RetryManager(self.retry_config)
        self._channel: BrokerChannel | None = None
        self._lock = asyncio.Lock()
        self._lost_callbacks: list[ConnectionLostCallback] = []
        self._connected_callbacks: list[ConnectedCallback] = []
        self._closing: set[asyncio.Task] = set()
        self._has_connected = False
        self._closed = False

    @abstractmethod
    async def _open(self) -> BrokerChannel:
        """Open a physical connection and return a channel on it."""

    @property
    def is_connected(self) -> bool:
        """Report whether a live channel is available."""
        return self._channel is not None and self._channel.is_open

    def on_connection_lost(self, callback: ConnectionLostCallback) -> None:
        """Register a callback invoked when the connection goes down."""
        self._lost_callbacks.append(callback)

    def on_connected(self, callback: ConnectedCallback) -> None:
        """Register a coroutine run after every (re)connection.

        The callback receives the fresh channel and ``True`` when this is a
        reconnection. Topology declarations belong here.
        """
        self._connected_callbacks.append(callback)

    async def ensure_connected(self) -> BrokerChannel:
        """Return a usable channel, connecting if needed.

        Raises:
            BrokerUnavailable: If the broker cannot be reached within
                ``retry_config.max_attempts`` attempts.
        """
        channel = self._channel
        if channel is not None and channel.is_open:
            return channel

        async with self._lock:
            if self._channel is not None and self._channel.is_open:
                return self._channel
            if self._closed:
                raise BrokerUnavailable(f"Connection {self.name} is closed")

            self._channel = None
            try:
                channel = await self._retry.execute_async(self._open)
            except RetryError as e:
                logger.error(
                    "Broker %s unreachable after %d attempts: %s",
                    self.name,
                    e.attempts,
                    e.last_exception,
                )
                raise BrokerUnavailable(
                    f"Broker {self.name} unreachable after {e.attempts} attempts",
                    cause=e.last_exception,
                ) from e.last_exception

            reconnect = self._has_connected
            self._has_connected = True
            self._channel = channel
            logger.info("%s to broker %s", "Reconnected" if reconnect else "Connected", self.name)

            try:
                for callback in list(self._connected_callbacks):
                    await callback(channel, reconnect)
            except Exception as e:
                self._channel = None
                await self._close_quietly(channel)
                logger.error("Topology declaration on %s failed: %s", self.name, e)
                raise BrokerUnavailable(
                    f"Broker {self.name} connected but topology declaration failed",
                    cause=e,
                ) from e

            return channel

    def mark_down(self, reason: Exception | None = None, channel: BrokerChannel | None = None) -> None:
        """Record a transport-level failure; the next use reconnects.

        The dropped channel is closed in the background so consumers on it
        stop receiving deliveries. When ``channel`` is given the call is
        ignored unless it is still the current channel; close notifications
        from already replaced channels must not take down a fresh one.
        """
        if channel is not None and channel is not self._channel:
            return
        stale, self._channel = self._channel, None
        if stale is None:
            return
        logger.warning("Broker connection %s marked down: %s", self.name, reason)
        self._discard(stale)
        for callback in list(self._lost_callbacks):
            try:
                callback(reason)
            except Exception:
                logger.exception("Connection-lost callback failed")

    def _discard(self, channel: BrokerChannel) -> None:
        if not channel.is_open:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running loop to close stale channel on %s", self.name)
            return
        task = loop.create_task(self._close_quietly(channel))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def _close_quietly(self, channel: BrokerChannel) -> None:
        try:
            await channel.close()
            logger.debug("Closed stale channel on %s", self.name)
        except Exception as e:
            logger.warning("Could not close stale channel on %s: %s", self.name, e)

    async def close(self) -> None:
        """Close the connection; further use raises ``BrokerUnavailable``."""
        async with self._lock:
            self._closed = True
            channel, self._channel = self._channel, None
            if channel is not None:
                await channel.close()
                logger.info("Closed broker connection %s", self.name)
        if self._closing:
            await asyncio.gather(*list(self._closing))

    async def __aenter__(self) -> "BrokerConnection":
        await self.ensure_connected()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
