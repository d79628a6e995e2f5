"""Async publish/subscribe bus for session and manager events.

Each Session and the SessionManager own one bus. Subscriptions are
explicit handles so whoever subscribes can remove exactly what it added;
listener_count() exposes what is left.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from .events import SessionEvent

logger = logging.getLogger(__name__)

E = TypeVar("E", bound=SessionEvent)

EventHandler = Callable[[Any], "Awaitable[None] | None"]


class Subscription:
    """Handle returned by EventBus.subscribe()."""

    __slots__ = ("_bus", "event_type", "handler", "active")

    def __init__(
        self, bus: EventBus, event_type: type[SessionEvent], handler: EventHandler,
    ) -> None:
        self._bus = bus
        self.event_type = event_type
        self.handler = handler
        self.active = True

    def unsubscribe(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    """Dispatches typed events to handlers registered per event class.

    Handlers may be plain functions or coroutines. A handler registered
    for a base class also receives its subclasses. Handler errors are
    logged and never propagate to the publisher.
    """

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._subscriptions: dict[type[SessionEvent], list[Subscription]] = {}
        self._queues: list[asyncio.Queue[SessionEvent]] = []

    def subscribe(
        self, event_type: type[E], handler: Callable[[E], Any],
    ) -> Subscription:
        sub = Subscription(self, event_type, handler)
        self._subscriptions.setdefault(event_type, []).append(sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        subs = self._subscriptions.get(subscription.event_type)
        if subs and subscription in subs:
            subs.remove(subscription)
            if not subs:
                del self._subscriptions[subscription.event_type]
        subscription.active = False

    def listener_count(self, event_type: type[SessionEvent] | None = None) -> int:
        """Number of live subscriptions, optionally for one event class."""
        if event_type is None:
            return sum(len(s) for s in self._subscriptions.values())
        return len(self._subscriptions.get(event_type, ()))

    async def publish(self, event: SessionEvent) -> None:
        """Deliver an event to every matching handler, in subscription order."""
        matching: list[Subscription] = []
        for cls in type(event).__mro__:
            matching.extend(self._subscriptions.get(cls, ()))

        for sub in matching:
            if not sub.active:
                # Removed by an earlier handler during this dispatch.
                continue
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # Never let subscriber errors break the engine
                logger.exception(
                    "Event handler failed for %s on bus %s",
                    event.event_type, self._name or "<anonymous>",
                )

        for queue in list(self._queues):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "Event stream full on bus %s, dropping %s",
                    self._name or "<anonymous>", event.event_type,
                )

    async def stream(self, maxsize: int = 1000) -> AsyncIterator[SessionEvent]:
        """Yield every event published from now on until the caller stops."""
        queue: asyncio.Queue[SessionEvent] = asyncio.Queue(maxsize=maxsize)
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)

    def clear(self) -> None:
        for subs in self._subscriptions.values():
            for sub in subs:
                sub.active = False
        self._subscriptions.clear()
