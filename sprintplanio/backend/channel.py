"""Per-room replication channel fanning out row changes to subscribed sessions."""

from __future__ import annotations

import asyncio
from collections import defaultdict
import logging
from typing import AsyncIterator, Iterable

from sprintplanio.backend.models import TABLES, ChangeEvent

logger = logging.getLogger(__name__)

_CLOSED = object()


class Subscription:
    """One subscriber's ordered view of a room's changes."""

    def __init__(self, channel: "ReplicationChannel", room_id: str, tables: Iterable[str]) -> None:
        self._channel = channel
        self.room_id = room_id
        self.tables = frozenset(tables)
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        return not self.closed and event.room_id == self.room_id and event.table in self.tables

    def push(self, event: ChangeEvent) -> None:
        self._queue.put_nowait(event)

    def drain(self) -> list[ChangeEvent]:
        """Return every pending event without waiting."""
        events: list[ChangeEvent] = []
        while True:
            try:
                item = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return events
            if item is _CLOSED:
                return events
            events.append(item)

    async def next_event(self) -> ChangeEvent | None:
        """Wait for the next event; None once the subscription is closed."""
        if self.closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is _CLOSED:
            return None
        return item

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._channel.unsubscribe(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ChangeEvent]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ChangeEvent]:
        while True:
            event = await self.next_event()
            if event is None:
                return
            yield event


class ReplicationChannel:
    def __init__(self) -> None:
        self._subscriptions: dict[str, set[Subscription]] = defaultdict(set)

    def subscribe(self, room_id: str, tables: Iterable[str] | None = None) -> Subscription:
        subscription = Subscription(self, room_id=room_id, tables=tables if tables is not None else TABLES)
        self._subscriptions[room_id].add(subscription)
        logger.debug("subscribed to room %s (%d subscribers)", room_id, len(self._subscriptions[room_id]))
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        subscriptions = self._subscriptions.get(subscription.room_id)
        if subscriptions is None:
            return
        subscriptions.discard(subscription)
        if not subscriptions:
            self._subscriptions.pop(subscription.room_id, None)

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscriptions.get(event.room_id, set())):
            if subscription.matches(event):
                subscription.push(event)

    def subscriber_count(self, room_id: str) -> int:
        return len(self._subscriptions.get(room_id, set()))
