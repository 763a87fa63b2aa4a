"""
Per-channel state machine.

A channel moves through these states:

    AwaitingSelfRegistration --SelfRegistered--> AwaitingCache
    AwaitingCache --SnapshotRead (hit)--> Settled
    AwaitingCache --SnapshotRead (miss)--> AwaitingBaseline
    AwaitingBaseline --BaselineLoaded--> Settled
    any --ReducerMismatch--> VersionMismatch (terminal)

Actions that arrive before the channel is settled are buffered and
replayed on top of the baseline in arrival order. Once settled, an
action is applied only if its timestamp is newer than the last one
applied.

:func:`transition` is pure apart from the reducer call: it returns the
next state plus a list of effects, which :class:`ChannelMachine` executes
from its single worker task.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any, Union

from .config import SyncConfig
from .exceptions import BaselineTimeoutError, ReducerMismatchError, StorageIOError
from .local.cache import LocalCache
from .logging_utils import ChannelLoggerAdapter, get_sync_logger
from .protocol import (
    ChannelDefinition,
    Event,
    EventLog,
    ReducerRecord,
    Resolve,
    Snapshot,
    SnapshotStore,
    Timestamp,
)
from .resilience import retry_with_backoff
from .resolvers import ResolverTable

logger = get_sync_logger("machine")


# =============================================================================
# States
# =============================================================================


@dataclass(frozen=True)
class AwaitingSelfRegistration:
    """Created but not yet running; actions are buffered."""

    value: Any
    pending: tuple[Event, ...] = ()


@dataclass(frozen=True)
class AwaitingCache:
    """Local cache and snapshot store are being queried.

    ``value`` switches to the cached value as soon as the local cache
    answers with a hit.
    """

    value: Any
    pending: tuple[Event, ...] = ()


@dataclass(frozen=True)
class AwaitingBaseline:
    """Neither store had a value; waiting for the initial value."""

    value: Any
    pending: tuple[Event, ...] = ()
    backlog: tuple[Event, ...] = ()


@dataclass(frozen=True)
class Settled:
    """Baseline known; ``last_ts`` is 0 until an action has been applied."""

    value: Any
    last_ts: Timestamp = 0


@dataclass(frozen=True)
class VersionMismatch:
    """Another reducer version owns this channel. Terminal."""

    value: Any
    expected: str | None = None
    found: str | None = None


ChannelState = Union[
    AwaitingSelfRegistration, AwaitingCache, AwaitingBaseline, Settled, VersionMismatch
]


# =============================================================================
# Inbound messages
# =============================================================================


@dataclass(frozen=True)
class SelfRegistered:
    """The worker loop is running."""


@dataclass(frozen=True)
class LocalCacheRead:
    snapshot: Snapshot | None


@dataclass(frozen=True)
class SnapshotRead:
    """Both stores have answered.

    ``backlog`` holds the log events newer than the chosen baseline.
    """

    local: Snapshot | None
    remote: Snapshot | None
    backlog: tuple[Event, ...] = ()


@dataclass(frozen=True)
class BaselineLoaded:
    value: Any


@dataclass(frozen=True)
class Reduction:
    event: Event


@dataclass(frozen=True)
class ReducerMismatch:
    expected: str | None
    found: str | None


Message = Union[
    SelfRegistered, LocalCacheRead, SnapshotRead, BaselineLoaded, Reduction, ReducerMismatch
]


# =============================================================================
# Effects
# =============================================================================


@dataclass(frozen=True)
class Bootstrap:
    """Query the local cache, snapshot store and event log backlog."""


@dataclass(frozen=True)
class LoadBaseline:
    """Await the channel's initial value."""


@dataclass(frozen=True)
class Persist:
    """Write a value to the local cache and, if ``mirror``, the snapshot store."""

    snapshot: Snapshot
    mirror: bool = True


@dataclass(frozen=True)
class SaveReducer:
    record: ReducerRecord


@dataclass(frozen=True)
class ReportMismatch:
    error: ReducerMismatchError


@dataclass(frozen=True)
class ReportReducerError:
    event: Event
    error: Exception


Effect = Union[Bootstrap, LoadBaseline, Persist, SaveReducer, ReportMismatch, ReportReducerError]


@dataclass(frozen=True)
class TransitionContext:
    """What :func:`transition` needs besides the state and the message."""

    channel: str
    reducer: Callable[[Any, Any, Resolve], Any]
    version: str | None
    resolver_for: Callable[[str | None], Resolve]
    reject: Callable[[str | None, BaseException], Any]


# =============================================================================
# Transition function
# =============================================================================


def newest(local: Snapshot | None, remote: Snapshot | None) -> Snapshot | None:
    """Pick the snapshot with the greater timestamp; ties go to ``remote``."""
    if local is None:
        return remote
    if remote is None:
        return local
    return local if local.ts > remote.ts else remote


def apply_event(
    state: Settled, event: Event, ctx: TransitionContext
) -> tuple[Settled, list[Effect]]:
    """Apply one action to a settled channel.

    Stale actions (``ts <= last_ts``) are already part of the baseline: they
    are not reduced again, but their emitter is still resolved. A raising
    reducer leaves the state unchanged and fails the emitter's future with
    the exception.
    """
    if event.ts <= state.last_ts:
        ctx.resolver_for(event.id)(None)
        return state, []

    resolve = ctx.resolver_for(event.id)
    try:
        value = ctx.reducer(state.value, event.value, resolve)
    except Exception as e:
        ctx.reject(event.id, e)
        return state, [ReportReducerError(event, e)]

    # Every action resolves exactly once; this is a no-op if the reducer
    # already resolved it.
    resolve(None)
    return Settled(value, event.ts), [Persist(Snapshot(value, event.ts))]


def _replay(
    state: Settled, events: Iterable[Event], ctx: TransitionContext
) -> tuple[Settled, list[Effect]]:
    effects: list[Effect] = []
    for event in events:
        state, more = apply_event(state, event, ctx)
        effects.extend(more)
    return state, effects


def _pending(state: ChannelState) -> tuple[Event, ...]:
    return getattr(state, "pending", ())


def transition(
    state: ChannelState, message: Message, ctx: TransitionContext
) -> tuple[ChannelState, list[Effect]]:
    """Compute the next state of a channel and the effects to run.

    Messages that make no sense in the current state leave it unchanged.
    """
    match message:
        case ReducerMismatch(expected=expected, found=found):
            if isinstance(state, VersionMismatch):
                return state, []
            error = ReducerMismatchError(ctx.channel, expected, found)
            for event in _pending(state):
                ctx.reject(event.id, error)
            return VersionMismatch(state.value, expected, found), [ReportMismatch(error)]

        case Reduction(event=event):
            match state:
                case Settled():
                    return apply_event(state, event, ctx)
                case VersionMismatch():
                    ctx.reject(
                        event.id, ReducerMismatchError(ctx.channel, state.expected, state.found)
                    )
                    return state, []
                case AwaitingSelfRegistration() | AwaitingCache() | AwaitingBaseline():
                    return _buffer(state, event), []

        case SelfRegistered():
            if isinstance(state, AwaitingSelfRegistration):
                return AwaitingCache(state.value, state.pending), [Bootstrap()]

        case LocalCacheRead(snapshot=snapshot):
            if isinstance(state, AwaitingCache) and snapshot is not None:
                return AwaitingCache(snapshot.value, state.pending), []

        case SnapshotRead(local=local, remote=remote, backlog=backlog):
            if isinstance(state, AwaitingCache):
                baseline = newest(local, remote)
                if baseline is None:
                    return AwaitingBaseline(state.value, state.pending, backlog), [LoadBaseline()]
                # A local value fresher than the stored snapshot is mirrored back
                effects: list[Effect] = [Persist(baseline, mirror=baseline is not remote)]
                settled, more = _replay(
                    Settled(baseline.value, baseline.ts), (*backlog, *state.pending), ctx
                )
                return settled, effects + more

        case BaselineLoaded(value=value):
            if isinstance(state, AwaitingBaseline):
                effects = [SaveReducer(ReducerRecord(ctx.version, value)), Persist(Snapshot(value, 0))]
                settled, more = _replay(Settled(value, 0), (*state.backlog, *state.pending), ctx)
                return settled, effects + more

    return state, []


def _buffer(state: ChannelState, event: Event) -> ChannelState:
    pending = (*_pending(state), event)
    match state:
        case AwaitingBaseline():
            return AwaitingBaseline(state.value, pending, state.backlog)
        case AwaitingCache():
            return AwaitingCache(state.value, pending)
        case _:
            return AwaitingSelfRegistration(state.value, pending)


def coalesce(effects: list[Effect]) -> list[Effect]:
    """Drop every Persist except the last; later values supersede earlier ones."""
    last = max((i for i, e in enumerate(effects) if isinstance(e, Persist)), default=-1)
    return [e for i, e in enumerate(effects) if not isinstance(e, Persist) or i == last]


# =============================================================================
# Machine
# =============================================================================


class ChannelMachine:
    """Runs one channel's state machine on a single worker task.

    Subscription callbacks only enqueue; every transition and its effects
    run sequentially in the worker, so no locking is needed.
    """

    def __init__(
        self,
        definition: ChannelDefinition,
        *,
        event_log: EventLog,
        snapshots: SnapshotStore,
        resolvers: ResolverTable,
        cache: LocalCache | None = None,
        config: SyncConfig | None = None,
        on_change: Callable[[Any], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ):
        self.definition = definition
        self.name = definition.name
        self.event_log = event_log
        self.snapshots = snapshots
        self.resolvers = resolvers
        self.cache = cache
        self.config = config or SyncConfig()
        self.on_change = on_change
        self.on_error = on_error

        self._state: ChannelState = AwaitingSelfRegistration(definition.loading)
        self._queue: asyncio.Queue[Message] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()
        self._ready = asyncio.Event()
        self._log = ChannelLoggerAdapter(logger, {"channel": self.name})
        self._ctx = TransitionContext(
            channel=self.name,
            reducer=definition.reducer,
            version=definition.version,
            resolver_for=resolvers.resolver_for,
            reject=resolvers.reject_and_clear,
        )

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def value(self) -> Any:
        return self._state.value

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        """Start the worker and begin loading the baseline."""
        if self._worker is not None:
            return
        self._worker = asyncio.create_task(self._run(), name=f"channel:{self.name}")
        self._queue.put_nowait(SelfRegistered())

    def feed(self, event: Event) -> None:
        """Queue an action from the event log subscription."""
        self._queue.put_nowait(Reduction(event))

    async def wait_settled(self) -> Any:
        """Wait until the baseline is known and return the current value.

        Raises:
            ReducerMismatchError: If the channel is in the mismatch state
        """
        await self._ready.wait()
        state = self._state
        if isinstance(state, VersionMismatch):
            raise ReducerMismatchError(self.name, state.expected, state.found)
        return state.value

    async def flush(self) -> None:
        """Wait until every queued message has been processed and persisted."""
        # Let deliveries already scheduled on the loop reach the queue first
        await asyncio.sleep(0)
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the worker and any outstanding loads."""
        tasks = [t for t in (*self._tasks, self._worker) if t is not None and not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._log.debug("Machine stopped")

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                await self._handle(message)
            except asyncio.CancelledError:
                raise
            except Exception:
                self._log.exception(f"Failed to handle {type(message).__name__}")
            finally:
                self._queue.task_done()

    async def _handle(self, message: Message) -> None:
        previous = self._state
        state, effects = transition(previous, message, self._ctx)
        self._state = state

        if type(state) is not type(previous):
            self._log.debug(f"{type(previous).__name__} -> {type(state).__name__}")
            if isinstance(state, (Settled, VersionMismatch)):
                self._ready.set()
        if state.value is not previous.value and self.on_change is not None:
            self.on_change(state.value)

        for effect in coalesce(effects):
            await self._execute(effect)

    async def _execute(self, effect: Effect) -> None:
        match effect:
            case Bootstrap():
                self._spawn(self._bootstrap())
            case LoadBaseline():
                self._spawn(self._load_baseline())
            case Persist(snapshot=snapshot, mirror=mirror):
                await self._persist(snapshot, mirror)
            case SaveReducer(record=record):
                try:
                    await retry_with_backoff(
                        self.snapshots.save_reducer,
                        self.name,
                        record,
                        config=self.config.retry,
                        context_msg=self.name,
                    )
                except Exception as e:
                    self._log.warning(f"Failed to register reducer version {record.version}: {e}")
            case ReportMismatch(error=error):
                self._log.error(f"{error.message}; channel stops applying actions")
                self._report(error)
            case ReportReducerError(event=event, error=error):
                self._log.error(
                    f"Reducer raised on action ts={event.ts} id={event.id}: {error}",
                    exc_info=error,
                )
                self._report(error)

    async def _persist(self, snapshot: Snapshot, mirror: bool) -> None:
        if self.cache is not None:
            try:
                await self.cache.write(self.name, snapshot)
            except StorageIOError as e:
                self._log.warning(f"Local cache write failed: {e}")
        if not mirror:
            return
        try:
            await retry_with_backoff(
                self.snapshots.write,
                self.name,
                snapshot,
                config=self.config.retry,
                context_msg=self.name,
            )
        except Exception as e:
            self._log.error(f"Snapshot write failed at ts={snapshot.ts}: {e}")
            self._report(e)

    def _spawn(self, coro: Any) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _report(self, error: Exception) -> None:
        if self.on_error is None:
            return
        try:
            self.on_error(error)
        except Exception:
            self._log.exception("Error hook raised")

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    async def _read_local(self) -> Snapshot | None:
        snapshot = None
        if self.cache is not None:
            try:
                snapshot = await self.cache.read(self.name)
            except StorageIOError as e:
                self._log.warning(f"Local cache read failed: {e}")
        self._queue.put_nowait(LocalCacheRead(snapshot))
        return snapshot

    async def _bootstrap(self) -> None:
        local_task = self._spawn(self._read_local())
        retry = self.config.retry
        try:
            remote, record = await asyncio.gather(
                retry_with_backoff(
                    self.snapshots.read, self.name, config=retry, context_msg=self.name
                ),
                retry_with_backoff(
                    self.snapshots.read_reducer, self.name, config=retry, context_msg=self.name
                ),
            )
        except Exception as e:
            local = await local_task
            self._log.error(f"Snapshot store unavailable: {e}")
            self._report(e)
            if local is None:
                return
            remote, record = None, None
        else:
            local = await local_task

        version = self.definition.version
        if (
            record is not None
            and version is not None
            and record.version is not None
            and record.version != version
        ):
            self._queue.put_nowait(ReducerMismatch(expected=version, found=record.version))
            return

        baseline = newest(local, remote)
        backlog = await self._read_backlog(baseline.ts if baseline else None)
        self._log.debug(
            f"Bootstrap: local={'hit' if local else 'miss'} remote={'hit' if remote else 'miss'} "
            f"backlog={len(backlog)}"
        )
        self._queue.put_nowait(SnapshotRead(local, remote, tuple(backlog)))

    async def _read_backlog(self, after_ts: Timestamp | None) -> list[Event]:
        if not self.config.catch_up:
            return []
        try:
            return await retry_with_backoff(
                self.event_log.read_since,
                self.name,
                after_ts,
                config=self.config.retry,
                context_msg=self.name,
            )
        except Exception as e:
            self._log.warning(f"Catch-up read failed, continuing with live actions only: {e}")
            return []

    async def _await_initial(self) -> Any:
        timeout = self.config.baseline_timeout
        if timeout is None:
            return await self.definition.load_initial()
        try:
            return await asyncio.wait_for(self.definition.load_initial(), timeout)
        except asyncio.TimeoutError:
            raise BaselineTimeoutError(self.name, timeout) from None

    async def _load_baseline(self) -> None:
        retry = self.config.retry
        attempts = retry.max_retries + 1 if self.definition.reloadable else 1
        error: Exception | None = None

        for attempt in range(attempts):
            try:
                value = await self._await_initial()
            except Exception as e:
                error = e
            else:
                self._queue.put_nowait(BaselineLoaded(value))
                return

            if attempt + 1 < attempts:
                delay = retry.delay_for(attempt)
                self._log.warning(
                    f"Initial value failed (attempt {attempt + 1}/{attempts}), "
                    f"retrying in {delay:.1f}s: {error}"
                )
                await asyncio.sleep(delay)

        self._log.error(f"Initial value unavailable, channel stays loading: {error}")
        if error is not None:
            self._report(error)
