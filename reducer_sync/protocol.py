"""
Core data types and backend contracts.

Defines the records exchanged between the engine and its backends,
the channel definition callers hand to the engine, and the abstract
Event Log and Snapshot Store interfaces every backend implements.

Wire formats:
    Event log record:   {"value": <payload>, "ts": <int>, "id": <correlation id | null>}
    Snapshot record:    {"value": <reduced state>, "ts": <int>}
    Reducer record:     {"version": <str | null>, "initial": <value>}
"""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

S = TypeVar("S")
A = TypeVar("A")

# Timestamps are positive integers assigned by the event log; 0 means
# "no event applied yet".
Timestamp = int

Resolve = Callable[[Any], None]
Reducer = Callable[[Any, Any, Resolve], Any]
EventCallback = Callable[["Event"], None]
Unsubscribe = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class Event:
    """A single action in a channel's event log.

    Attributes:
        value: Application-defined action payload
        ts: Server-assigned timestamp, strictly increasing per channel
        id: Correlation ID tying the action to its emitter, if any
    """

    value: Any
    ts: Timestamp
    id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"value": self.value, "ts": self.ts, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Event:
        """Create from dictionary."""
        return cls(value=data.get("value"), ts=int(data["ts"]), id=data.get("id"))


@dataclass(frozen=True)
class Snapshot:
    """A checkpointed reduced value and the timestamp it was computed at."""

    value: Any
    ts: Timestamp = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"value": self.value, "ts": self.ts}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Snapshot:
        """Create from dictionary."""
        return cls(value=data.get("value"), ts=int(data.get("ts") or 0))


@dataclass(frozen=True)
class ReducerRecord:
    """The reducer identity registered for a channel.

    Writers that register a different ``version`` under the same channel
    name are running a different reducer and must not share its state.
    """

    version: str | None
    initial: Any = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"version": self.version, "initial": self.initial}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ReducerRecord:
        """Create from dictionary."""
        return cls(version=data.get("version"), initial=data.get("initial"))


@dataclass
class ChannelDefinition(Generic[S, A]):
    """Everything the engine needs to run one channel.

    Attributes:
        name: Channel name, conventionally ``<domain>-<name>-<version>``
        reducer: ``reducer(state, action, resolve) -> state``
        initial: Baseline used when neither cache nor snapshot has a value.
            A plain value, an awaitable, or a zero-argument callable
            returning either. Callables can be retried; awaitables cannot.
        loading: Placeholder value shown until a baseline is known
        version: Reducer identity; a different version already registered
            for this channel puts the channel into the mismatch state
    """

    name: str
    reducer: Callable[[S, A, Resolve], S]
    initial: Any = None
    loading: Any = None
    version: str | None = None

    _initial_task: asyncio.Future | None = field(default=None, init=False, repr=False)

    @property
    def reloadable(self) -> bool:
        """Whether the initial value can be loaded again after a failure."""
        return callable(self.initial)

    async def load_initial(self) -> Any:
        """Resolve the initial value to a plain value."""
        value = self.initial
        if callable(value):
            value = value()
        if inspect.isawaitable(value):
            if value is self.initial:
                # A bare awaitable can only be consumed once; share it so a
                # re-created machine sees the same result.
                if self._initial_task is None:
                    self._initial_task = asyncio.ensure_future(value)
                value = asyncio.shield(self._initial_task)
            value = await value
        return value


class EventLog(ABC):
    """Append-only, per-channel ordered event store.

    Implementations must assign timestamps at write time, strictly
    increasing per channel, and deliver events to subscribers in
    timestamp order.
    """

    @abstractmethod
    async def append(
        self,
        channel: str,
        value: Any,
        ts: Timestamp | None = None,
        correlation_id: str | None = None,
    ) -> Event:
        """Append an action to a channel.

        Args:
            channel: Channel name
            value: Action payload
            ts: Explicit timestamp; the log assigns one when None
            correlation_id: Optional ID tying the action to its emitter

        Returns:
            The stored event, including its assigned timestamp
        """

    @abstractmethod
    async def latest(self, channel: str) -> Event | None:
        """Most recent event of a channel, or None if it has none."""

    @abstractmethod
    async def read_since(self, channel: str, after_ts: Timestamp | None = None) -> list[Event]:
        """Events with ``ts > after_ts`` in ascending order (all when None)."""

    @abstractmethod
    async def subscribe(self, channel: str, on_event: EventCallback) -> Unsubscribe:
        """Deliver every event appended after this call to ``on_event``.

        Returns:
            Async callable that ends the subscription
        """

    async def close(self) -> None:
        """Release backend resources."""


class SnapshotStore(ABC):
    """Per-channel store of the latest reduced value.

    Writes keep whichever snapshot has the greater timestamp, so a lagging
    writer never replaces a fresher checkpoint.
    """

    @abstractmethod
    async def read(self, channel: str) -> Snapshot | None:
        """Latest snapshot of a channel, or None."""

    @abstractmethod
    async def write(self, channel: str, snapshot: Snapshot) -> None:
        """Store a snapshot unless a newer one is already stored."""

    @abstractmethod
    async def read_reducer(self, channel: str) -> ReducerRecord | None:
        """Reducer record registered for a channel, or None."""

    @abstractmethod
    async def save_reducer(self, channel: str, record: ReducerRecord) -> None:
        """Register the reducer record for a channel."""

    async def close(self) -> None:
        """Release backend resources."""
