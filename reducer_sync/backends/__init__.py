"""
Backend implementations of the event log and snapshot store.

The Cosmos DB backend lives in :mod:`reducer_sync.cosmos`.
"""

from .memory import InMemoryEventLog, InMemorySnapshotStore

__all__ = ["InMemoryEventLog", "InMemorySnapshotStore"]
