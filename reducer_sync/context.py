"""
Sync context: the entry point applications talk to.

A :class:`SyncContext` owns the resolver table, the channel registry and
the local cache, and talks to one event log and one snapshot store.
Applications attach observers to channels, emit actions, and await the
reducer's response to them:

    async with SyncContext(event_log, snapshots, config=config) as ctx:
        async with await ctx.open(comments_channel()) as comments:
            await comments.wait_settled()
            result = await comments.emit({"type": "CreateComment", "uid": "u1", "body": "hi"})
            if result and result.get("errors"):
                ...
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from .config import SyncConfig
from .exceptions import (
    ChannelNotAttachedError,
    EmitError,
    EmitTimeoutError,
    ReducerMismatchError,
)
from .id_utils import new_correlation_id
from .local.cache import LocalCache
from .machine import ChannelState, VersionMismatch
from .protocol import ChannelDefinition, Event, EventLog, SnapshotStore
from .registry import ChannelRegistry, Observer
from .resilience import retry_with_backoff
from .resolvers import ResolverTable

logger = logging.getLogger(__name__)

_CLOSED = object()


class SyncContext:
    """Registry, resolver table, stores and configuration for one application.

    The event log and snapshot store belong to the caller and are not
    closed by :meth:`close`.
    """

    def __init__(
        self,
        event_log: EventLog,
        snapshot_store: SnapshotStore,
        cache: LocalCache | None = None,
        config: SyncConfig | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        """Initialize the context.

        Args:
            event_log: Backend holding each channel's actions
            snapshot_store: Backend holding each channel's latest value
            cache: Local value cache (built from ``config`` if omitted)
            config: Engine configuration (defaults if omitted)
            on_error: Called with channel-level failures such as reducer
                mismatches, baseline timeouts and persistence errors
        """
        self.config = config or SyncConfig()
        self.event_log = event_log
        self.snapshot_store = snapshot_store
        self.cache = cache or LocalCache(self.config.cache_dir, self.config.cache_max_age)
        self.resolvers = ResolverTable()
        self.registry = ChannelRegistry(
            event_log,
            snapshot_store,
            self.resolvers,
            cache=self.cache,
            config=self.config,
            on_error=on_error,
        )

    async def attach(self, definition: ChannelDefinition, observer: Observer) -> Any:
        """Observe a channel; returns its current value."""
        return await self.registry.attach(definition, observer)

    async def detach(self, name: str, observer: Observer) -> None:
        """Stop observing a channel."""
        await self.registry.detach(name, observer)

    async def open(self, definition: ChannelDefinition) -> ChannelHandle:
        """Attach a handle that tracks the channel's value."""
        handle = ChannelHandle(self, definition)
        handle._value = await self.attach(definition, handle._observe)
        return handle

    async def emit(self, name: str, value: Any) -> Any:
        """Append an action and wait for the reducer's response.

        Args:
            name: Channel name; the channel must be attached in this context
            value: Action payload

        Returns:
            Whatever the reducer passed to ``resolve`` (e.g. ``{"errors": ...}``),
            or None if it never called it

        Raises:
            ChannelNotAttachedError: No live reducer here would process the action
            ReducerMismatchError: The channel stopped on a reducer mismatch
            EmitError: The event log append failed
            EmitTimeoutError: No resolution within ``emit_timeout``
        """
        entry = self.registry.get(name)
        if entry is None:
            raise ChannelNotAttachedError(name)
        state = entry.machine.state
        if isinstance(state, VersionMismatch):
            raise ReducerMismatchError(name, state.expected, state.found)

        correlation_id = new_correlation_id()
        future = self.resolvers.register(correlation_id)
        try:
            await retry_with_backoff(
                self.event_log.append,
                name,
                value,
                correlation_id=correlation_id,
                config=self.config.retry,
                context_msg=name,
            )
        except Exception as e:
            self.resolvers.discard(correlation_id)
            raise EmitError(name, e) from e

        timeout = self.config.emit_timeout
        if timeout is None:
            return await future
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self.resolvers.discard(correlation_id)
            raise EmitTimeoutError(name, correlation_id, timeout) from None

    async def append(self, name: str, value: Any) -> Event:
        """Append an action without waiting for it to be reduced."""
        try:
            return await retry_with_backoff(
                self.event_log.append,
                name,
                value,
                config=self.config.retry,
                context_msg=name,
            )
        except Exception as e:
            raise EmitError(name, e) from e

    async def latest_snapshot(self, name: str) -> Any:
        """Latest stored value of a channel, or None if it has none."""
        snapshot = await retry_with_backoff(
            self.snapshot_store.read, name, config=self.config.retry, context_msg=name
        )
        return snapshot.value if snapshot is not None else None

    def seed_from(
        self,
        prior_name: str,
        transform: Callable[[Any], Any] | None = None,
        default: Any = None,
    ) -> Callable[[], Awaitable[Any]]:
        """Initial value loader that migrates a previous channel version.

        Args:
            prior_name: Channel to read the latest snapshot from
            transform: Applied to the prior value when one exists
            default: Used when the prior channel has no snapshot

        Returns:
            Zero-argument coroutine function, usable as ``ChannelDefinition.initial``
        """

        async def load() -> Any:
            value = await self.latest_snapshot(prior_name)
            if value is None:
                logger.info(f"No snapshot in {prior_name}, seeding with default")
                return default
            return transform(value) if transform else value

        return load

    async def flush(self, name: str | None = None) -> None:
        """Wait until queued actions have been reduced and persisted."""
        await self.registry.flush(name)

    async def close(self) -> None:
        """Detach every channel and cancel pending emits."""
        await self.registry.close()
        self.resolvers.clear()

    async def __aenter__(self) -> SyncContext:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


class ChannelHandle:
    """One observer of a channel.

    Keeps the latest value and can stream every change through
    :meth:`updates`.
    """

    def __init__(self, context: SyncContext, definition: ChannelDefinition):
        self.context = context
        self.definition = definition
        self.name = definition.name
        self._value: Any = definition.loading
        # One queue per active updates() iterator
        self._streams: set[asyncio.Queue[Any]] = set()
        self._closed = False

    def _observe(self, value: Any) -> None:
        self._value = value
        for stream in self._streams:
            stream.put_nowait(value)

    @property
    def value(self) -> Any:
        return self._value

    @property
    def state(self) -> ChannelState | None:
        entry = self.context.registry.get(self.name)
        return entry.machine.state if entry else None

    @property
    def closed(self) -> bool:
        return self._closed

    async def emit(self, value: Any) -> Any:
        """Emit an action on this channel and await its resolution."""
        return await self.context.emit(self.name, value)

    async def append(self, value: Any) -> Event:
        """Append an action on this channel without awaiting it."""
        return await self.context.append(self.name, value)

    async def wait_settled(self) -> Any:
        """Wait for the channel's baseline; returns the current value."""
        entry = self.context.registry.get(self.name)
        if entry is None:
            raise ChannelNotAttachedError(self.name)
        return await entry.machine.wait_settled()

    async def updates(self) -> AsyncIterator[Any]:
        """Yield each value change from the first iteration until the handle is closed.

        Values are only buffered while an iterator is running; use
        :attr:`value` for the current value.
        """
        if self._closed:
            return
        stream: asyncio.Queue[Any] = asyncio.Queue()
        self._streams.add(stream)
        try:
            while True:
                value = await stream.get()
                if value is _CLOSED:
                    return
                yield value
        finally:
            self._streams.discard(stream)

    async def close(self) -> None:
        """Detach from the channel; idempotent."""
        if self._closed:
            return
        self._closed = True
        await self.context.detach(self.name, self._observe)
        for stream in self._streams:
            stream.put_nowait(_CLOSED)

    async def __aenter__(self) -> ChannelHandle:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
