"""
In-memory event log and snapshot store.

Both keep everything in process memory and copy values on the way in
and out, so reducers can never mutate stored state by reference. Useful
for tests, demos and single-process applications.
"""

from __future__ import annotations

import asyncio
import bisect
import copy
import logging
import time
from collections import defaultdict
from typing import Any

from ..protocol import (
    Event,
    EventCallback,
    EventLog,
    ReducerRecord,
    Snapshot,
    SnapshotStore,
    Timestamp,
    Unsubscribe,
)

logger = logging.getLogger(__name__)


class InMemoryEventLog(EventLog):
    """Per-channel event lists with synchronous ordering and async delivery.

    Timestamps are microseconds since the epoch, bumped where needed so
    they stay strictly increasing per channel. Subscribers are called via
    ``loop.call_soon`` so delivery never re-enters the appending coroutine.
    """

    def __init__(self) -> None:
        self._events: dict[str, list[Event]] = defaultdict(list)
        self._subscribers: dict[str, list[EventCallback]] = defaultdict(list)
        self._last_ts: dict[str, Timestamp] = {}

    def _next_ts(self, channel: str) -> Timestamp:
        now = time.time_ns() // 1000
        return max(now, self._last_ts.get(channel, 0) + 1)

    async def append(
        self,
        channel: str,
        value: Any,
        ts: Timestamp | None = None,
        correlation_id: str | None = None,
    ) -> Event:
        if ts is None:
            ts = self._next_ts(channel)
        event = Event(value=copy.deepcopy(value), ts=ts, id=correlation_id)
        self._last_ts[channel] = max(ts, self._last_ts.get(channel, 0))

        events = self._events[channel]
        events.insert(bisect.bisect_right([e.ts for e in events], ts), event)

        loop = asyncio.get_running_loop()
        for callback in list(self._subscribers[channel]):
            loop.call_soon(self._deliver, channel, callback, event)
        return event

    def _deliver(self, channel: str, callback: EventCallback, event: Event) -> None:
        # Unsubscribed between append and delivery
        if callback not in self._subscribers.get(channel, ()):
            return
        try:
            callback(event)
        except Exception:
            logger.exception(f"Subscriber of {channel} raised on ts={event.ts}")

    async def latest(self, channel: str) -> Event | None:
        events = self._events.get(channel)
        return events[-1] if events else None

    async def read_since(self, channel: str, after_ts: Timestamp | None = None) -> list[Event]:
        events = self._events.get(channel, [])
        if after_ts is None:
            return list(events)
        return [e for e in events if e.ts > after_ts]

    async def subscribe(self, channel: str, on_event: EventCallback) -> Unsubscribe:
        self._subscribers[channel].append(on_event)

        async def unsubscribe() -> None:
            subscribers = self._subscribers.get(channel, [])
            if on_event in subscribers:
                subscribers.remove(on_event)

        return unsubscribe

    def subscriber_count(self, channel: str) -> int:
        """Number of live subscriptions to a channel."""
        return len(self._subscribers.get(channel, ()))

    async def close(self) -> None:
        self._subscribers.clear()


class InMemorySnapshotStore(SnapshotStore):
    """Dict-backed snapshot store; writes keep the newer snapshot."""

    def __init__(self) -> None:
        self._snapshots: dict[str, Snapshot] = {}
        self._reducers: dict[str, ReducerRecord] = {}

    async def read(self, channel: str) -> Snapshot | None:
        snapshot = self._snapshots.get(channel)
        if snapshot is None:
            return None
        return Snapshot(copy.deepcopy(snapshot.value), snapshot.ts)

    async def write(self, channel: str, snapshot: Snapshot) -> None:
        current = self._snapshots.get(channel)
        if current is not None and current.ts > snapshot.ts:
            logger.debug(
                f"Ignoring stale snapshot for {channel}: ts={snapshot.ts} < {current.ts}"
            )
            return
        self._snapshots[channel] = Snapshot(copy.deepcopy(snapshot.value), snapshot.ts)

    async def read_reducer(self, channel: str) -> ReducerRecord | None:
        return self._reducers.get(channel)

    async def save_reducer(self, channel: str, record: ReducerRecord) -> None:
        self._reducers[channel] = ReducerRecord(record.version, copy.deepcopy(record.initial))
