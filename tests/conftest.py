"""
Shared test configuration and fixtures.

Every test gets fresh in-memory backends and a local cache in its own
temporary directory, so tests never share channel state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from pathlib import Path
from typing import Any

import pytest

from reducer_sync import ChannelDefinition, LocalCache, SyncConfig, SyncContext
from reducer_sync.backends import InMemoryEventLog, InMemorySnapshotStore
from reducer_sync.resilience import RetryConfig

logger = logging.getLogger(__name__)


def append_reducer(items: list, action: Any, resolve: Callable[[Any], None]) -> list:
    """Appends each action's ``item``; resolves with the new length when asked."""
    items = [*items, action["item"]]
    if action.get("reply"):
        resolve({"count": len(items)})
    return items


def list_channel(name: str = "test-items-1", **kwargs: Any) -> ChannelDefinition:
    kwargs.setdefault("initial", [])
    kwargs.setdefault("version", "1")
    return ChannelDefinition(name=name, reducer=append_reducer, **kwargs)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or ``timeout`` seconds pass."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def event_log() -> InMemoryEventLog:
    return InMemoryEventLog()


@pytest.fixture
def snapshots() -> InMemorySnapshotStore:
    return InMemorySnapshotStore()


@pytest.fixture
def config(tmp_path: Path) -> SyncConfig:
    """Fast retries so failure-path tests finish quickly."""
    return SyncConfig(
        cache_dir=tmp_path / "cache",
        retry=RetryConfig(max_retries=2, backoff_base=0.01, backoff_max=0.05),
    )


@pytest.fixture
def cache(config: SyncConfig) -> LocalCache:
    return LocalCache(config.cache_dir)


@pytest.fixture
def errors() -> list[Exception]:
    """Collects everything passed to a context's error hook."""
    return []


@pytest.fixture
async def context(
    event_log: InMemoryEventLog,
    snapshots: InMemorySnapshotStore,
    cache: LocalCache,
    config: SyncConfig,
    errors: list[Exception],
) -> AsyncIterator[SyncContext]:
    ctx = SyncContext(event_log, snapshots, cache=cache, config=config, on_error=errors.append)
    yield ctx
    await ctx.close()
