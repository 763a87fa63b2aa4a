"""
Resolver correlation table.

Ties an emitted action to the reducer's "response". Emitting registers a
future under the action's correlation ID; when a channel machine reduces
that action it hands the reducer an idempotent ``resolve`` callback, so
``await ctx.emit(...)`` returns whatever the reducer resolved with
(for example ``{"errors": {...}}``), or None if it never called resolve.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from .protocol import Resolve

logger = logging.getLogger(__name__)


class ResolverTable:
    """Map from correlation ID to the pending future of its emitter.

    Entries are removed as soon as they resolve, so the table only
    holds actions that are still in flight.
    """

    def __init__(self) -> None:
        self._pending: dict[str, asyncio.Future[Any]] = {}

    def register(self, correlation_id: str) -> asyncio.Future[Any]:
        """Create the pending slot for an action about to be emitted.

        Args:
            correlation_id: ID that will travel with the action

        Returns:
            Future completed with the reducer's message
        """
        if correlation_id in self._pending:
            raise ValueError(f"Correlation ID already registered: {correlation_id}")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[correlation_id] = future
        return future

    def resolve_and_clear(self, correlation_id: str | None, message: Any = None) -> bool:
        """Complete and remove a pending slot.

        Unknown IDs (actions emitted by another process, or already
        resolved) are a no-op.

        Returns:
            True if a pending emitter was resolved
        """
        if correlation_id is None:
            return False
        future = self._pending.pop(correlation_id, None)
        if future is None or future.done():
            return False
        future.set_result(message)
        return True

    def reject_and_clear(self, correlation_id: str | None, error: BaseException) -> bool:
        """Fail a pending slot with ``error`` and remove it."""
        if correlation_id is None:
            return False
        future = self._pending.pop(correlation_id, None)
        if future is None or future.done():
            return False
        future.set_exception(error)
        return True

    def resolver_for(self, correlation_id: str | None) -> Resolve:
        """Callback handed to reducers; only the first call has an effect."""

        def resolve(message: Any = None) -> None:
            self.resolve_and_clear(correlation_id, message)

        return resolve

    def discard(self, correlation_id: str) -> None:
        """Drop a slot without resolving it."""
        future = self._pending.pop(correlation_id, None)
        if future is not None and not future.done():
            future.cancel()

    def is_pending(self, correlation_id: str) -> bool:
        """Whether an action is still awaiting resolution."""
        return correlation_id in self._pending

    @property
    def pending(self) -> int:
        """Number of actions awaiting resolution."""
        return len(self._pending)

    def clear(self) -> None:
        """Cancel every pending emitter."""
        if self._pending:
            logger.debug(f"Cancelling {len(self._pending)} pending action(s)")
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
