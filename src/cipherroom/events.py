"""Event bus for relay-to-participant delivery.

The relay publishes wire dictionaries addressed to a recipient (a username);
participants consume them in order. Delivery order per recipient is FIFO,
which is what carries the "membership update before any message encrypted
after it" contract.

Architecture:
    - EventBus ABC defines the interface (swappable for a socket transport)
    - InMemoryEventBus uses one asyncio.Queue per recipient
    - Events are plain dicts (the JSON the transport would carry); consumers
      parse them with protocol.parse_event
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

logger = logging.getLogger(__name__)


class EventBus(ABC):
    """Abstract per-recipient event delivery."""

    @abstractmethod
    async def publish(self, recipient: str, event: dict[str, Any]) -> None:
        """Queue an event for one recipient.

        Args:
            recipient: Username the event is addressed to
            event: Wire dictionary with a "type" key
        """

    @abstractmethod
    async def next_event(self, recipient: str, timeout: float = 30.0) -> dict[str, Any] | None:
        """Wait for the recipient's next event.

        Args:
            recipient: Username to receive for
            timeout: Max seconds to wait (0 = check and return immediately)

        Returns:
            The next event, or None if none arrived before the timeout
        """

    @abstractmethod
    async def stream(self, recipient: str) -> AsyncIterator[dict[str, Any]]:
        """Yield the recipient's events as they arrive."""
        yield {}  # pragma: no cover

    @abstractmethod
    def pending(self, recipient: str) -> int:
        """Number of events queued and not yet consumed."""

    @abstractmethod
    def discard(self, recipient: str) -> None:
        """Drop the recipient's queue (on disconnect)."""


class InMemoryEventBus(EventBus):
    """In-memory event bus using asyncio queues.

    Suitable for a single process. All operations run on one event loop, so
    the queues need no extra locking.
    """

    def __init__(self) -> None:
        self._queues: dict[str, asyncio.Queue[dict[str, Any]]] = {}

    def _get_queue(self, recipient: str) -> asyncio.Queue[dict[str, Any]]:
        if recipient not in self._queues:
            self._queues[recipient] = asyncio.Queue()
        return self._queues[recipient]

    async def publish(self, recipient: str, event: dict[str, Any]) -> None:
        await self._get_queue(recipient).put(event)
        logger.debug(f"Queued {event.get('type')} for {recipient}")

    async def next_event(self, recipient: str, timeout: float = 30.0) -> dict[str, Any] | None:
        queue = self._get_queue(recipient)
        if timeout <= 0:
            try:
                return queue.get_nowait()
            except asyncio.QueueEmpty:
                return None

        try:
            return await asyncio.wait_for(queue.get(), timeout=timeout)
        except asyncio.TimeoutError:
            return None

    async def stream(self, recipient: str) -> AsyncIterator[dict[str, Any]]:
        queue = self._get_queue(recipient)
        while True:
            yield await queue.get()

    def pending(self, recipient: str) -> int:
        queue = self._queues.get(recipient)
        return queue.qsize() if queue else 0

    def discard(self, recipient: str) -> None:
        self._queues.pop(recipient, None)


# --- Global singleton ---

_event_bus: EventBus | None = None


def get_event_bus() -> EventBus:
    """Get the global event bus instance.

    Creates an InMemoryEventBus on first call. Use set_event_bus()
    to swap in a different implementation.
    """
    global _event_bus
    if _event_bus is None:
        _event_bus = InMemoryEventBus()
    return _event_bus


def set_event_bus(bus: EventBus) -> None:
    """Replace the global event bus instance."""
    global _event_bus
    _event_bus = bus


def reset_event_bus() -> None:
    """Reset the global event bus (for testing)."""
    global _event_bus
    _event_bus = None
