"""Fan-out publish/subscribe channel for live state-change events.

Delivery goes to subscribers connected at publish time only. There is no
buffer for late subscribers: an observer that subscribes after an event
was published never sees it. ``publish`` never blocks: each subscription
owns a bounded queue that drops its oldest event when a slow reader lets
it fill, and listeners are plain callables invoked inline.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from typing import Any

from weighsync.models.events import EventType, LiveEvent

_logger = logging.getLogger(__name__)

Listener = Callable[[LiveEvent], None]

DEFAULT_QUEUE_SIZE = 1000


class Subscription:
    """A queue-backed observer; iterate with ``async for``."""

    def __init__(
        self,
        bus: EventBus,
        types: frozenset[EventType] | None,
        maxsize: int = DEFAULT_QUEUE_SIZE,
    ) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self._bus = bus
        self._types = types
        self._queue: asyncio.Queue[LiveEvent | None] = asyncio.Queue(maxsize=maxsize)
        self._closed = False
        self._dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    @property
    def dropped(self) -> int:
        """Events discarded because the reader fell behind."""
        return self._dropped

    def wants(self, event: LiveEvent) -> bool:
        return self._types is None or event.type in self._types

    def _deliver(self, event: LiveEvent) -> None:
        if self._closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self._dropped += 1
            _logger.debug(
                "Subscription full, dropped oldest event to queue %s (%d dropped so far)",
                event.type.value,
                self._dropped,
            )
        self._queue.put_nowait(event)

    async def get(self) -> LiveEvent:
        """Wait for the next event.

        Raises :class:`StopAsyncIteration` once the subscription is closed
        and drained.
        """
        event = await self._queue.get()
        if event is None:
            raise StopAsyncIteration
        return event

    def get_nowait(self) -> LiveEvent | None:
        try:
            event = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        return event

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._bus._detach(self)
        if self._queue.full():
            # end-of-stream marker must always fit
            self._queue.get_nowait()
            self._dropped += 1
        self._queue.put_nowait(None)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> LiveEvent:
        return await self.get()


class EventBus:
    """Fixed-vocabulary publish/subscribe fan-out."""

    def __init__(self, *, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue_size = queue_size
        self._subscriptions: list[Subscription] = []
        self._listeners: list[tuple[Listener, frozenset[EventType] | None]] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)

    def subscribe(
        self,
        types: Iterable[EventType] | None = None,
        *,
        maxsize: int | None = None,
    ) -> Subscription:
        """Open a queue-backed subscription, optionally filtered by type.

        *maxsize* bounds the queue (default: the bus queue size); once full,
        the oldest queued event makes room for the newest.
        """
        subscription = Subscription(
            self,
            frozenset(types) if types is not None else None,
            maxsize if maxsize is not None else self._queue_size,
        )
        self._subscriptions.append(subscription)
        return subscription

    def add_listener(
        self,
        listener: Listener,
        types: Iterable[EventType] | None = None,
    ) -> Callable[[], None]:
        """Register a callback; returns a function that removes it.

        Listeners run inline inside :meth:`publish` and must not block.
        """
        entry = (listener, frozenset(types) if types is not None else None)
        self._listeners.append(entry)

        def _remove() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return _remove

    def _detach(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(
        self,
        event_type: EventType,
        data: dict[str, Any] | None = None,
        *,
        origin: str = "station",
    ) -> LiveEvent:
        """Publish an event to everyone connected right now."""
        event = LiveEvent(type=event_type, data=data or {}, origin=origin)
        _logger.debug("Publishing %s from %s to %d observers", event.type.value, origin, self.subscriber_count)

        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                subscription._deliver(event)

        for listener, types in list(self._listeners):
            if types is not None and event.type not in types:
                continue
            try:
                listener(event)
            except Exception:
                _logger.warning("Event listener failed for %s", event.type.value, exc_info=True)
        return event

    def close(self) -> None:
        """Close every subscription; listeners are dropped."""
        for subscription in list(self._subscriptions):
            subscription.close()
        self._listeners.clear()
