"""
Reducer Sync

Realtime reducer synchronization: keeps a reducer-computed value
consistent across observers, a local cache, and a shared append-only
event log, and correlates emitted actions with the reducer's response.

Provides:
- Per-channel state machine with optimistic loading from a local cache
- One shared event log subscription per channel, however many observers
- Emit-with-response through a correlation table
- In-memory and Azure Cosmos DB backends

Usage:

    >>> from reducer_sync import SyncContext, ChannelDefinition
    >>> from reducer_sync.backends import InMemoryEventLog, InMemorySnapshotStore
    >>> def counter(total, action, resolve):
    ...     return total + action["by"]
    >>> async with SyncContext(InMemoryEventLog(), InMemorySnapshotStore()) as ctx:
    ...     async with await ctx.open(ChannelDefinition("demo-counter-1", counter, initial=0)) as ch:
    ...         await ch.wait_settled()
    ...         await ch.emit({"by": 2})
    ...         ch.value
    2

Backend Selection:

    # In-process, for tests and single-process apps
    from reducer_sync.backends import InMemoryEventLog, InMemorySnapshotStore

    # Cosmos DB for multi-device sync
    from reducer_sync.cosmos import CosmosClientWrapper, CosmosConfig
    from reducer_sync.cosmos import CosmosEventLog, CosmosSnapshotStore
"""

from .config import SyncConfig
from .context import ChannelHandle, SyncContext
from .exceptions import (
    AuthenticationError,
    BaselineTimeoutError,
    ChannelNotAttachedError,
    EmitError,
    EmitTimeoutError,
    ReducerMismatchError,
    ReducerSyncError,
    StorageConnectionError,
    StorageIOError,
    ValidationError,
)
from .id_utils import (
    channel_name,
    decode_key,
    encode_key,
    new_correlation_id,
    parse_channel_name,
    previous_channel_name,
)
from .local import LocalCache
from .logging_utils import configure_structured_logging, get_sync_logger
from .machine import (
    AwaitingBaseline,
    AwaitingCache,
    AwaitingSelfRegistration,
    ChannelMachine,
    ChannelState,
    Settled,
    VersionMismatch,
    transition,
)
from .protocol import (
    ChannelDefinition,
    Event,
    EventLog,
    ReducerRecord,
    Snapshot,
    SnapshotStore,
)
from .registry import ChannelEntry, ChannelRegistry
from .resilience import RetryConfig, retry_with_backoff
from .resolvers import ResolverTable

__all__ = [
    # Entry points
    "SyncContext",
    "ChannelHandle",
    "SyncConfig",
    "RetryConfig",
    # Data model and backend contracts
    "ChannelDefinition",
    "Event",
    "Snapshot",
    "ReducerRecord",
    "EventLog",
    "SnapshotStore",
    # Engine internals
    "ChannelMachine",
    "ChannelState",
    "AwaitingSelfRegistration",
    "AwaitingCache",
    "AwaitingBaseline",
    "Settled",
    "VersionMismatch",
    "transition",
    "ChannelRegistry",
    "ChannelEntry",
    "ResolverTable",
    "LocalCache",
    "retry_with_backoff",
    # Naming
    "channel_name",
    "parse_channel_name",
    "previous_channel_name",
    "encode_key",
    "decode_key",
    "new_correlation_id",
    # Logging
    "configure_structured_logging",
    "get_sync_logger",
    # Exceptions
    "ReducerSyncError",
    "EmitError",
    "EmitTimeoutError",
    "ReducerMismatchError",
    "BaselineTimeoutError",
    "ChannelNotAttachedError",
    "StorageIOError",
    "StorageConnectionError",
    "AuthenticationError",
    "ValidationError",
]

__version__ = "0.1.0"
