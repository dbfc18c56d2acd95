# orchestration/events.py
"""Non-blocking publish/subscribe channel for progress events."""

from __future__ import annotations

import asyncio

import structlog
from config import settings

from models import ProgressEvent

logger = structlog.get_logger(__name__)


class EventSubscription:
    """A bounded queue of events for one consumer."""

    def __init__(self, channel: EventChannel, maxsize: int) -> None:
        self._channel = channel
        self.queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def _offer(self, event: ProgressEvent) -> None:
        if self.queue.full():
            # Slow consumers lose the oldest events, the publisher never waits.
            self.queue.get_nowait()
            self.dropped += 1
        self.queue.put_nowait(event)

    async def get(self) -> ProgressEvent:
        return await self.queue.get()

    def drain(self) -> list[ProgressEvent]:
        events: list[ProgressEvent] = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events

    def close(self) -> None:
        self._channel.unsubscribe(self)


class EventChannel:
    """Fan-out of :class:`ProgressEvent` to every subscriber."""

    def __init__(self, buffer_size: int = settings.EVENT_CHANNEL_BUFFER_SIZE) -> None:
        self.buffer_size = buffer_size
        self._subscriptions: list[EventSubscription] = []

    def subscribe(self, buffer_size: int | None = None) -> EventSubscription:
        subscription = EventSubscription(self, buffer_size or self.buffer_size)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: EventSubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: ProgressEvent) -> None:
        for subscription in list(self._subscriptions):
            subscription._offer(event)
