"""
Cosmos DB snapshot store.

Each channel is one logical partition of the behaviors container holding
two documents:

    {"id": "snapshot", "channel": c, "value": {...}, "ts": 42}
    {"id": "reducer", "channel": c, "version": "3", "initial": [...]}

Snapshot writes read the current document first and replace it with an
ETag precondition, so a slower writer holding an older value can never
overwrite a newer snapshot.
"""

from __future__ import annotations

import logging
from typing import Any

from azure.cosmos.exceptions import CosmosHttpResponseError

from ..exceptions import StorageIOError
from ..protocol import ReducerRecord, Snapshot, SnapshotStore
from .client import CosmosClientWrapper

logger = logging.getLogger(__name__)

SNAPSHOT_ID = "snapshot"
REDUCER_ID = "reducer"

MAX_WRITE_ATTEMPTS = 10

_CONFLICT = 409
_PRECONDITION_FAILED = 412


class CosmosSnapshotStore(SnapshotStore):
    """Snapshot store backed by the behaviors container."""

    def __init__(self, client: CosmosClientWrapper):
        self.client = client
        self._container = client.config.behaviors_container

    async def read(self, channel: str) -> Snapshot | None:
        doc = await self.client.read_item(self._container, SNAPSHOT_ID, channel)
        if doc is None:
            return None
        return Snapshot.from_dict(doc)

    async def write(self, channel: str, snapshot: Snapshot) -> None:
        doc: dict[str, Any] = {"id": SNAPSHOT_ID, "channel": channel, **snapshot.to_dict()}

        for _ in range(MAX_WRITE_ATTEMPTS):
            current = await self.client.read_item(self._container, SNAPSHOT_ID, channel)
            if current is not None and int(current.get("ts") or 0) > snapshot.ts:
                logger.debug(
                    f"Keeping newer snapshot of {channel}: ts={current.get('ts')} > {snapshot.ts}"
                )
                return
            try:
                if current is None:
                    await self.client.create_item(self._container, doc)
                else:
                    await self.client.replace_item(self._container, doc, etag=current["_etag"])
                return
            except CosmosHttpResponseError as e:
                if e.status_code not in (_CONFLICT, _PRECONDITION_FAILED):
                    raise
                logger.debug(f"Concurrent snapshot write on {channel}, re-reading")

        raise StorageIOError(
            "write_snapshot",
            channel,
            RuntimeError(f"snapshot contended for {MAX_WRITE_ATTEMPTS} attempts"),
        )

    async def read_reducer(self, channel: str) -> ReducerRecord | None:
        doc = await self.client.read_item(self._container, REDUCER_ID, channel)
        if doc is None:
            return None
        return ReducerRecord.from_dict(doc)

    async def save_reducer(self, channel: str, record: ReducerRecord) -> None:
        await self.client.upsert_item(
            self._container,
            {"id": REDUCER_ID, "channel": channel, **record.to_dict()},
        )
