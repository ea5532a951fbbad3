"""
Realtime change feed

Row-level INSERT / UPDATE / DELETE events fanned out to subscribers.
A subscription is an async iterator bound to the event loop that created
it; publishers may run on any thread.
"""
import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

EVENTS = ("INSERT", "UPDATE", "DELETE")


@dataclass
class ChangeEvent:
    table: str
    event: str
    record: Optional[Dict[str, Any]] = None
    old_record: Optional[Dict[str, Any]] = None


def parse_filter(expr: Optional[str]):
    """Parse a `column=eq.value` filter expression into (column, value)."""
    if not expr:
        return None
    column, sep, rest = expr.partition("=")
    if not sep or not rest.startswith("eq."):
        raise ValueError(f"Unsupported filter expression: {expr}")
    return column.strip(), rest[3:]


class Subscription:
    def __init__(self, feed: "ChangeFeed", table: str, event: str, filter_expr: Optional[str] = None):
        if event != "*" and event not in EVENTS:
            raise ValueError(f"Unknown event type: {event}")
        self._feed = feed
        self.table = table
        self.event = event
        self.filter = parse_filter(filter_expr)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._loop = asyncio.get_running_loop()
        self.closed = False

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if self.event != "*" and change.event != self.event:
            return False
        if self.filter:
            column, value = self.filter
            row = change.record or change.old_record or {}
            return str(row.get(column)) == value
        return True

    def deliver(self, change: ChangeEvent):
        if self.closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, change)
        except RuntimeError:
            # loop already shut down
            self.closed = True

    def close(self):
        if self.closed:
            return
        self.closed = True
        self._feed.unsubscribe(self)
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, None)
        except RuntimeError:
            pass

    def __aiter__(self):
        return self

    async def __anext__(self) -> ChangeEvent:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        change = await self._queue.get()
        if change is None:
            raise StopAsyncIteration
        return change


class ChangeFeed:
    def __init__(self):
        self._lock = threading.Lock()
        self._subscriptions = []

    def subscribe(self, table: str, event: str = "*", filter_expr: Optional[str] = None) -> Subscription:
        sub = Subscription(self, table, event, filter_expr)
        with self._lock:
            self._subscriptions.append(sub)
        logger.debug("Subscribed to %s %s (%s)", table, event, filter_expr or "no filter")
        return sub

    def unsubscribe(self, sub: Subscription):
        with self._lock:
            if sub in self._subscriptions:
                self._subscriptions.remove(sub)

    def publish(self, table: str, event: str, record=None, old_record=None):
        change = ChangeEvent(table=table, event=event, record=record, old_record=old_record)
        with self._lock:
            targets = [s for s in self._subscriptions if s.matches(change)]
        for sub in targets:
            sub.deliver(change)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)


feed = ChangeFeed()
