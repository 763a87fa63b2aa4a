"""Tests for SyncContext: emit-with-response, handles and migration helpers."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from conftest import list_channel, wait_until

from reducer_sync import (
    ChannelDefinition,
    ChannelNotAttachedError,
    EmitError,
    EmitTimeoutError,
    LocalCache,
    ReducerMismatchError,
    ReducerRecord,
    Snapshot,
    SnapshotStore,
    SyncConfig,
    SyncContext,
)
from reducer_sync.backends import InMemoryEventLog, InMemorySnapshotStore
from reducer_sync.conduit import comments_channel, create_comment, delete_comment
from reducer_sync.resilience import RetryConfig

CHANNEL = "test-items-1"


class SlowReads(SnapshotStore):
    """Shares another store's data but answers snapshot reads late."""

    def __init__(self, inner: SnapshotStore, delay: float):
        self.inner = inner
        self.delay = delay

    async def read(self, channel: str) -> Snapshot | None:
        await asyncio.sleep(self.delay)
        return await self.inner.read(channel)

    async def write(self, channel: str, snapshot: Snapshot) -> None:
        await self.inner.write(channel, snapshot)

    async def read_reducer(self, channel: str) -> ReducerRecord | None:
        return await self.inner.read_reducer(channel)

    async def save_reducer(self, channel: str, record: ReducerRecord) -> None:
        await self.inner.save_reducer(channel, record)


class TestEmit:
    """Tests for emit-with-response."""

    async def test_emit_returns_reducer_message(self, context: SyncContext) -> None:
        async with await context.open(list_channel(CHANNEL)) as handle:
            await handle.wait_settled()

            result = await handle.emit({"item": "a", "reply": True})

            assert result == {"count": 1}
            assert handle.value == ["a"]
            assert context.resolvers.pending == 0

    async def test_emit_without_resolve_returns_none(self, context: SyncContext) -> None:
        async with await context.open(list_channel(CHANNEL)) as handle:
            await handle.wait_settled()

            assert await handle.emit({"item": "a"}) is None
            assert context.resolvers.pending == 0

    async def test_emit_requires_attached_channel(self, context: SyncContext) -> None:
        with pytest.raises(ChannelNotAttachedError):
            await context.emit("test-nobody-1", {"item": "a"})

    async def test_emit_while_loading_resolves_after_baseline(self, context: SyncContext) -> None:
        """Actions emitted before the baseline loads are applied, not lost."""
        gate: asyncio.Future = asyncio.get_running_loop().create_future()
        async with await context.open(list_channel(CHANNEL, initial=gate)) as handle:
            pending = [
                asyncio.create_task(handle.emit({"item": item, "reply": True}))
                for item in ("a", "b", "c")
            ]
            await asyncio.sleep(0.02)
            assert not any(task.done() for task in pending)

            gate.set_result([])
            results = await asyncio.gather(*pending)

            assert handle.value == ["a", "b", "c"]
            assert results == [{"count": 1}, {"count": 2}, {"count": 3}]

    async def test_append_failure_raises_emit_error(
        self, context: SyncContext, event_log: InMemoryEventLog
    ) -> None:
        """A failed append discards the pending correlation."""
        async with await context.open(list_channel(CHANNEL)) as handle:
            await handle.wait_settled()
            event_log.append = AsyncMock(side_effect=ValueError("log rejected"))

            with pytest.raises(EmitError) as exc_info:
                await handle.emit({"item": "a"})

            assert isinstance(exc_info.value.cause, ValueError)
            assert context.resolvers.pending == 0
            assert handle.value == []

    async def test_emit_timeout(
        self,
        event_log: InMemoryEventLog,
        snapshots: InMemorySnapshotStore,
        tmp_path: Path,
    ) -> None:
        config = SyncConfig(cache_dir=tmp_path, emit_timeout=0.05)
        never: asyncio.Future = asyncio.get_running_loop().create_future()

        async with SyncContext(event_log, snapshots, config=config) as ctx:
            handle = await ctx.open(list_channel(CHANNEL, initial=never))

            with pytest.raises(EmitTimeoutError) as exc_info:
                await handle.emit({"item": "a"})

            assert exc_info.value.timeout == 0.05
            assert ctx.resolvers.pending == 0

    async def test_emit_on_mismatched_channel(
        self, context: SyncContext, snapshots: InMemorySnapshotStore, errors: list[Exception]
    ) -> None:
        await snapshots.save_reducer(CHANNEL, ReducerRecord("0", []))

        async with await context.open(list_channel(CHANNEL)) as handle:
            with pytest.raises(ReducerMismatchError):
                await handle.wait_settled()
            with pytest.raises(ReducerMismatchError):
                await handle.emit({"item": "a"})

        assert any(isinstance(e, ReducerMismatchError) for e in errors)

    async def test_raising_reducer_fails_emit(
        self, context: SyncContext, errors: list[Exception]
    ) -> None:
        def strict(items: list, action: Any, resolve: Any) -> list:
            if "item" not in action:
                raise KeyError("item")
            return [*items, action["item"]]

        definition = ChannelDefinition(CHANNEL, strict, initial=[], version="1")
        async with await context.open(definition) as handle:
            await handle.wait_settled()

            with pytest.raises(KeyError):
                await handle.emit({"bogus": True})
            await handle.emit({"item": "a"})

            assert handle.value == ["a"]
            assert any(isinstance(e, KeyError) for e in errors)

    async def test_append_is_fire_and_forget(self, context: SyncContext) -> None:
        async with await context.open(list_channel(CHANNEL)) as handle:
            await handle.wait_settled()

            event = await context.append(CHANNEL, {"item": "a"})
            await context.flush(CHANNEL)

            assert event.id is None
            assert handle.value == ["a"]


class TestComments:
    """End-to-end scenario on the comments channel."""

    async def test_create_then_unauthorized_delete(self, context: SyncContext) -> None:
        async with await context.open(comments_channel()) as comments:
            assert await comments.wait_settled() == []

            result = await comments.emit(create_comment("u1", "First!"))

            assert not (result or {}).get("errors")
            [comment] = comments.value
            assert comment["uid"] == "u1"
            assert comment["body"] == "First!"
            assert comment["commentId"]

            result = await comments.emit(delete_comment("u2", comment["commentId"]))

            assert result == {"errors": {"unauthorized": "to perform this action"}}
            assert comments.value == [comment]

            await comments.emit(delete_comment("u1", comment["commentId"]))
            assert comments.value == []


class TestMultipleContexts:
    """Two contexts sharing backends behave like two devices."""

    async def test_actions_propagate_between_devices(
        self, event_log: InMemoryEventLog, snapshots: InMemorySnapshotStore, tmp_path: Path
    ) -> None:
        first = SyncContext(event_log, snapshots, config=SyncConfig(cache_dir=tmp_path / "a"))
        second = SyncContext(event_log, snapshots, config=SyncConfig(cache_dir=tmp_path / "b"))
        try:
            handle_a = await first.open(list_channel(CHANNEL))
            handle_b = await second.open(list_channel(CHANNEL))
            await handle_a.wait_settled()
            await handle_b.wait_settled()

            await handle_a.emit({"item": "from-a"})
            await handle_b.emit({"item": "from-b"})
            await wait_until(lambda: handle_a.value == handle_b.value == ["from-a", "from-b"])
        finally:
            await first.close()
            await second.close()

    async def test_emit_while_loading_resolves_when_snapshot_covers_it(
        self, event_log: InMemoryEventLog, snapshots: InMemorySnapshotStore, tmp_path: Path
    ) -> None:
        """Another device snapshots the action before this one finishes loading."""
        first = SyncContext(event_log, snapshots, config=SyncConfig(cache_dir=tmp_path / "a"))
        second = SyncContext(
            event_log, SlowReads(snapshots, 0.2), config=SyncConfig(cache_dir=tmp_path / "b")
        )
        try:
            handle_a = await first.open(list_channel(CHANNEL))
            await handle_a.wait_settled()
            handle_b = await second.open(list_channel(CHANNEL))

            result = await asyncio.wait_for(handle_b.emit({"item": "b", "reply": True}), 2.0)

            # Already reduced elsewhere, so this device has no message to return
            assert result is None
            assert handle_b.value == ["b"]
            assert second.resolvers.pending == 0
        finally:
            await first.close()
            await second.close()

    async def test_fresh_context_loads_without_replaying(
        self,
        event_log: InMemoryEventLog,
        snapshots: InMemorySnapshotStore,
        tmp_path: Path,
    ) -> None:
        """After settling, a new process bootstraps from stored state alone."""
        config = SyncConfig(cache_dir=tmp_path)
        async with SyncContext(event_log, snapshots, config=config) as ctx:
            async with await ctx.open(list_channel(CHANNEL)) as handle:
                await handle.wait_settled()
                await handle.emit({"item": "a"})
                await handle.emit({"item": "b"})
                await ctx.flush(CHANNEL)

        calls: list[Any] = []

        def counting(items: list, action: Any, resolve: Any) -> list:
            calls.append(action)
            return [*items, action["item"]]

        definition = ChannelDefinition(CHANNEL, counting, initial=[], version="1")
        async with SyncContext(event_log, snapshots, config=config) as ctx:
            async with await ctx.open(definition) as handle:
                assert await handle.wait_settled() == ["a", "b"]

        assert calls == []


class TestChannelHandle:
    """Tests for ChannelHandle."""

    async def test_updates_stream_values(
        self, context: SyncContext, event_log: InMemoryEventLog
    ) -> None:
        handle = await context.open(list_channel(CHANNEL))
        received: list[Any] = []

        async def consume() -> None:
            async for value in handle.updates():
                received.append(value)

        consumer = asyncio.create_task(consume())
        await handle.wait_settled()
        await handle.emit({"item": "a"})
        await handle.close()
        await asyncio.wait_for(consumer, 1.0)

        assert received == [[], ["a"]]
        assert handle.closed

    async def test_values_not_buffered_without_iterator(self, context: SyncContext) -> None:
        async with await context.open(list_channel(CHANNEL)) as handle:
            await handle.wait_settled()
            for item in range(5):
                await handle.emit({"item": item})

            assert handle.value == [0, 1, 2, 3, 4]
            assert not handle._streams

    async def test_iterator_sees_only_later_values(self, context: SyncContext) -> None:
        async with await context.open(list_channel(CHANNEL)) as handle:
            await handle.wait_settled()
            await handle.emit({"item": "early"})
            received: list[Any] = []

            async def consume() -> None:
                async for value in handle.updates():
                    received.append(value)

            consumer = asyncio.create_task(consume())
            await wait_until(lambda: len(handle._streams) == 1)
            await handle.emit({"item": "late"})
            await handle.close()
            await asyncio.wait_for(consumer, 1.0)

            assert received == [["early", "late"]]
            assert not handle._streams

    async def test_close_is_idempotent(self, context: SyncContext) -> None:
        handle = await context.open(list_channel(CHANNEL))

        await handle.close()
        await handle.close()

        assert handle.state is None
        assert context.registry.names() == []

    async def test_state_reflects_machine(self, context: SyncContext) -> None:
        async with await context.open(list_channel(CHANNEL)) as handle:
            await handle.wait_settled()

            assert handle.state.value == []


class TestSnapshots:
    """Tests for latest_snapshot and seed_from."""

    async def test_latest_snapshot(
        self, context: SyncContext, snapshots: InMemorySnapshotStore
    ) -> None:
        await snapshots.write("test-items-0", Snapshot(["old"], 5))

        assert await context.latest_snapshot("test-items-0") == ["old"]
        assert await context.latest_snapshot("test-missing-0") is None

    async def test_seed_from_previous_version(
        self, context: SyncContext, snapshots: InMemorySnapshotStore
    ) -> None:
        """A new channel version starts from the prior version's value."""
        await snapshots.write("test-items-0", Snapshot(["old"], 5))
        initial = context.seed_from("test-items-0", transform=lambda items: [*items, "migrated"])

        async with await context.open(list_channel(CHANNEL, initial=initial)) as handle:
            assert await handle.wait_settled() == ["old", "migrated"]

    async def test_seed_from_missing_uses_default(self, context: SyncContext) -> None:
        load = context.seed_from("test-items-0", default=[])

        assert await load() == []


class TestClose:
    """Tests for context shutdown."""

    async def test_close_cancels_pending_emits(
        self, event_log: InMemoryEventLog, snapshots: InMemorySnapshotStore, tmp_path: Path
    ) -> None:
        ctx = SyncContext(
            event_log,
            snapshots,
            cache=LocalCache(tmp_path),
            config=SyncConfig(cache_dir=tmp_path, retry=RetryConfig(max_retries=0)),
        )
        never: asyncio.Future = asyncio.get_running_loop().create_future()
        await ctx.open(list_channel(CHANNEL, initial=never))
        emit = asyncio.create_task(ctx.emit(CHANNEL, {"item": "a"}))
        await wait_until(lambda: ctx.resolvers.pending == 1)

        await ctx.close()

        with pytest.raises(asyncio.CancelledError):
            await emit
        assert ctx.registry.names() == []
