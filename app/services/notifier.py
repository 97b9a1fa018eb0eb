"""In-process publish/subscribe channel for row-level change events."""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable

from ..models import ChangeEvent

logger = logging.getLogger(__name__)


class Subscription:
    """A bounded queue of change events for one subscriber."""

    def __init__(self, key: str, tables: frozenset[str], maxsize: int):
        self.key = key
        self.tables = tables
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=maxsize)

    def offer(self, event: ChangeEvent) -> None:
        if self._queue.full():
            # Slow consumers lose their oldest events rather than block writers.
            self._queue.get_nowait()
            logger.debug("Dropped oldest event for subscriber on %s", self.key)
        self._queue.put_nowait(event)

    async def get(self, timeout: float | None = None) -> ChangeEvent | None:
        """Return the next event, or ``None`` if ``timeout`` elapses first."""

        if timeout is None:
            return await self._queue.get()
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None


class ChangeNotifier:
    """Fan out committed store changes to subscribers keyed by table and id."""

    def __init__(self, queue_size: int = 100):
        self._queue_size = queue_size
        self._subscribers: dict[tuple[str, str], set[Subscription]] = defaultdict(set)

    def publish(self, event: ChangeEvent) -> None:
        for subscription in list(self._subscribers.get((event.table, event.key), ())):
            subscription.offer(event)

    def subscriber_count(self, table: str, key: str) -> int:
        return len(self._subscribers.get((table, key), ()))

    @asynccontextmanager
    async def subscribe(
        self, key: str, tables: Iterable[str] = ("sessions",)
    ) -> AsyncIterator[Subscription]:
        """Register a subscriber on ``key`` for the lifetime of the context."""

        subscription = Subscription(key, frozenset(tables), self._queue_size)
        for table in subscription.tables:
            self._subscribers[(table, key)].add(subscription)
        try:
            yield subscription
        finally:
            for table in subscription.tables:
                subscribers = self._subscribers.get((table, key))
                if subscribers is None:
                    continue
                subscribers.discard(subscription)
                if not subscribers:
                    self._subscribers.pop((table, key), None)
