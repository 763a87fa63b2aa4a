"""
Local value cache for optimistic loading.

Stores the last known reduced value of each channel so a freshly started
process can show it immediately, before the snapshot store answers.

Directory structure:
    {base_dir}/
      {encoded channel name}.json   -> {"value": ..., "ts": 123, "cached_at": "<iso>"}
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from ..exceptions import StorageIOError
from ..id_utils import decode_key, encode_key
from ..protocol import Snapshot
from .file_ops import list_files, read_json, remove_file, write_json_atomic

logger = logging.getLogger(__name__)

CACHE_SUFFIX = ".json"


class LocalCache:
    """File-backed cache of ``{value, ts}`` records keyed by channel name.

    Only the machine that owns a channel writes its record. Records older
    than ``max_age`` seconds are treated as missing and removed on read.
    """

    def __init__(self, base_dir: Path, max_age: float | None = None):
        """Initialize the cache.

        Args:
            base_dir: Directory for cache files (created on first write)
            max_age: Seconds after which a cached record is discarded
        """
        self.base_dir = Path(base_dir)
        self.max_age = max_age

    def _path(self, channel: str) -> Path:
        return self.base_dir / f"{encode_key(channel)}{CACHE_SUFFIX}"

    def _expired(self, record: dict[str, Any]) -> bool:
        if self.max_age is None:
            return False
        cached_at = record.get("cached_at")
        if not cached_at:
            return True
        try:
            stamp = datetime.fromisoformat(cached_at)
        except (TypeError, ValueError):
            return True
        return datetime.now(UTC) - stamp > timedelta(seconds=self.max_age)

    async def read(self, channel: str) -> Snapshot | None:
        """Read the cached record for a channel.

        Unreadable or expired records count as a miss and are removed.
        """
        path = self._path(channel)
        try:
            record = await read_json(path)
        except StorageIOError as e:
            logger.warning(f"Discarding unreadable cache entry for {channel}: {e}")
            await remove_file(path)
            return None

        if record is None:
            return None
        if self._expired(record):
            logger.debug(f"Cache entry for {channel} expired")
            await remove_file(path)
            return None
        return Snapshot.from_dict(record)

    async def write(self, channel: str, snapshot: Snapshot) -> None:
        """Write through the latest value of a channel."""
        record = snapshot.to_dict()
        record["cached_at"] = datetime.now(UTC).isoformat()
        await write_json_atomic(self._path(channel), record)

    async def remove(self, channel: str) -> bool:
        """Forget a channel's cached value."""
        return await remove_file(self._path(channel))

    async def channels(self) -> list[str]:
        """Names of all channels with a cached value."""
        files = await list_files(self.base_dir, CACHE_SUFFIX)
        return [decode_key(f.name[: -len(CACHE_SUFFIX)]) for f in files]

    async def evict_expired(self) -> int:
        """Remove every expired record.

        Returns:
            Number of records removed
        """
        if self.max_age is None:
            return 0

        removed = 0
        for path in await list_files(self.base_dir, CACHE_SUFFIX):
            try:
                record = await read_json(path)
            except StorageIOError:
                record = None
            if record is None or self._expired(record):
                if await remove_file(path):
                    removed += 1
        if removed:
            logger.info(f"Evicted {removed} expired cache entries from {self.base_dir}")
        return removed

    async def clear(self) -> int:
        """Remove all cached records."""
        removed = 0
        for path in await list_files(self.base_dir, CACHE_SUFFIX):
            if await remove_file(path):
                removed += 1
        return removed
