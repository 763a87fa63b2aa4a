"""
Cosmos DB backend.

Provides the event log and snapshot store on Azure Cosmos DB with:
- One logical partition per channel
- Server-arbitrated timestamps via an ETag-guarded head document
- Newer-wins snapshot writes
- Polling subscriptions
"""

from .client import CosmosAuthMethod, CosmosClientWrapper, CosmosConfig, get_credential
from .event_log import CosmosEventLog
from .snapshot_store import CosmosSnapshotStore

__all__ = [
    "CosmosAuthMethod",
    "CosmosClientWrapper",
    "CosmosConfig",
    "CosmosEventLog",
    "CosmosSnapshotStore",
    "get_credential",
]
