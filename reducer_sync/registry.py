"""
Channel registry.

Multiplexes any number of observers of a channel onto one event log
subscription and one :class:`ChannelMachine`. The entry is created on the
first attach and torn down when the last observer detaches.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from .config import SyncConfig
from .local.cache import LocalCache
from .machine import ChannelMachine
from .protocol import ChannelDefinition, EventLog, SnapshotStore, Unsubscribe
from .resolvers import ResolverTable

logger = logging.getLogger(__name__)

Observer = Callable[[Any], None]


@dataclass
class ChannelEntry:
    """One live channel: its machine, observers and log subscription."""

    machine: ChannelMachine
    observers: list[Observer] = field(default_factory=list)
    unsubscribe: Unsubscribe | None = None

    def publish(self, value: Any) -> None:
        """Deliver a new value to every observer.

        An observer that raises is logged and skipped.
        """
        for observer in list(self.observers):
            try:
                observer(value)
            except Exception:
                logger.exception(f"Observer of {self.machine.name} raised")


class ChannelRegistry:
    """Map from channel name to its shared machine and subscription."""

    def __init__(
        self,
        event_log: EventLog,
        snapshots: SnapshotStore,
        resolvers: ResolverTable,
        cache: LocalCache | None = None,
        config: SyncConfig | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        self.event_log = event_log
        self.snapshots = snapshots
        self.resolvers = resolvers
        self.cache = cache
        self.config = config or SyncConfig()
        self.on_error = on_error
        self._entries: dict[str, ChannelEntry] = {}
        self._lock = asyncio.Lock()

    async def attach(self, definition: ChannelDefinition, observer: Observer) -> Any:
        """Add an observer to a channel, creating the channel if needed.

        Returns:
            The channel's current value (loading placeholder, cached value,
            or settled value)
        """
        async with self._lock:
            entry = self._entries.get(definition.name)
            if entry is not None:
                if entry.machine.definition.version != definition.version:
                    logger.warning(
                        f"Channel {definition.name} already running reducer version "
                        f"{entry.machine.definition.version!r}, ignoring {definition.version!r}"
                    )
                entry.observers.append(observer)
                logger.debug(
                    f"Observer attached to {definition.name} ({len(entry.observers)} total)"
                )
                return entry.machine.value

            machine = ChannelMachine(
                definition,
                event_log=self.event_log,
                snapshots=self.snapshots,
                resolvers=self.resolvers,
                cache=self.cache,
                config=self.config,
                on_error=self.on_error,
            )
            entry = ChannelEntry(machine=machine, observers=[observer])
            machine.on_change = entry.publish

            # Subscribe before starting so nothing appended during bootstrap is missed
            entry.unsubscribe = await self.event_log.subscribe(definition.name, machine.feed)
            machine.start()
            self._entries[definition.name] = entry
            logger.info(f"Channel {definition.name} attached")
            return machine.value

    async def detach(self, name: str, observer: Observer) -> None:
        """Remove an observer; the last one out tears the channel down."""
        async with self._lock:
            entry = self._entries.get(name)
            if entry is None:
                return
            try:
                entry.observers.remove(observer)
            except ValueError:
                logger.debug(f"Observer not attached to {name}")
                return
            if entry.observers:
                return

            del self._entries[name]
            await self._teardown(name, entry)

    async def _teardown(self, name: str, entry: ChannelEntry) -> None:
        if entry.unsubscribe is not None:
            try:
                await entry.unsubscribe()
            except Exception as e:
                logger.warning(f"Failed to unsubscribe from {name}: {e}")
        await entry.machine.stop()
        logger.info(f"Channel {name} detached")

    def get(self, name: str) -> ChannelEntry | None:
        """Live entry for a channel, if attached."""
        return self._entries.get(name)

    def names(self) -> list[str]:
        """Names of all live channels."""
        return list(self._entries)

    def observer_count(self, name: str) -> int:
        """Number of observers attached to a channel."""
        entry = self._entries.get(name)
        return len(entry.observers) if entry else 0

    async def flush(self, name: str | None = None) -> None:
        """Wait until one channel (or all) has processed its queue."""
        if name is not None:
            entry = self._entries.get(name)
            if entry is not None:
                await entry.machine.flush()
            return
        for entry in list(self._entries.values()):
            await entry.machine.flush()

    async def close(self) -> None:
        """Tear down every channel."""
        async with self._lock:
            entries = list(self._entries.items())
            self._entries.clear()
            for name, entry in entries:
                await self._teardown(name, entry)
