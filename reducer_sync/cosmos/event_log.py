"""
Cosmos DB event log.

Each channel is one logical partition of the events container:

    {"id": "head", "channel": c, "type": "head", "ts": 42}
    {"id": "evt-00000000000000000042", "channel": c, "type": "event",
     "ts": 42, "value": {...}, "correlation_id": "..."}

Timestamps come from the head document, advanced with an ETag-guarded
replace so concurrent writers on different devices never claim the same
timestamp. Subscriptions poll ``read_since`` every ``poll_interval``
seconds.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from azure.cosmos.exceptions import CosmosHttpResponseError

from ..exceptions import StorageIOError, ValidationError
from ..protocol import Event, EventCallback, EventLog, Timestamp, Unsubscribe
from .client import CosmosClientWrapper

logger = logging.getLogger(__name__)

HEAD_ID = "head"
EVENT_DOC_TYPE = "event"
HEAD_DOC_TYPE = "head"

# Concurrent appenders losing the head race try again this many times
MAX_CLAIM_ATTEMPTS = 20

# Polls to wait for a claimed but not yet written timestamp before skipping it
DEFAULT_GAP_POLLS = 3

_CONFLICT = 409
_PRECONDITION_FAILED = 412


def event_doc_id(ts: Timestamp) -> str:
    """Document ID of the event at ``ts``; zero-padded so IDs sort by time."""
    return f"evt-{ts:020d}"


def event_to_doc(channel: str, event: Event) -> dict[str, Any]:
    return {
        "id": event_doc_id(event.ts),
        "channel": channel,
        "type": EVENT_DOC_TYPE,
        "ts": event.ts,
        "value": event.value,
        "correlation_id": event.id,
    }


def doc_to_event(doc: dict[str, Any]) -> Event:
    return Event(value=doc.get("value"), ts=int(doc["ts"]), id=doc.get("correlation_id"))


class CosmosEventLog(EventLog):
    """Event log stored in the events container, one partition per channel."""

    def __init__(
        self,
        client: CosmosClientWrapper,
        poll_interval: float = 1.0,
        gap_polls: int = DEFAULT_GAP_POLLS,
    ):
        """Initialize the event log.

        Args:
            client: Initialized Cosmos client wrapper
            poll_interval: Seconds between subscription polls
            gap_polls: Polls to wait on a missing timestamp before skipping it
        """
        self.client = client
        self.poll_interval = poll_interval
        self.gap_polls = gap_polls
        self._container = client.config.events_container
        self._polls: set[asyncio.Task] = set()

    async def _claim_ts(self, channel: str, ts: Timestamp | None) -> Timestamp:
        """Advance the channel head and return the claimed timestamp."""
        for _ in range(MAX_CLAIM_ATTEMPTS):
            head = await self.client.read_item(self._container, HEAD_ID, channel)
            head_ts = int(head["ts"]) if head else 0
            if ts is not None and ts <= head_ts:
                raise ValidationError("ts", f"must be greater than channel head {head_ts}", str(ts))
            claimed = ts if ts is not None else head_ts + 1

            doc = {"id": HEAD_ID, "channel": channel, "type": HEAD_DOC_TYPE, "ts": claimed}
            try:
                if head is None:
                    await self.client.create_item(self._container, doc)
                else:
                    await self.client.replace_item(self._container, doc, etag=head["_etag"])
                return claimed
            except CosmosHttpResponseError as e:
                if e.status_code not in (_CONFLICT, _PRECONDITION_FAILED):
                    raise
                logger.debug(f"Lost head race on {channel} at ts={claimed}, retrying")

        raise StorageIOError(
            "claim_timestamp",
            channel,
            RuntimeError(f"head contended for {MAX_CLAIM_ATTEMPTS} attempts"),
        )

    async def append(
        self,
        channel: str,
        value: Any,
        ts: Timestamp | None = None,
        correlation_id: str | None = None,
    ) -> Event:
        claimed = await self._claim_ts(channel, ts)
        event = Event(value=value, ts=claimed, id=correlation_id)
        await self.client.create_item(self._container, event_to_doc(channel, event))
        logger.debug(f"Appended to {channel} at ts={claimed}")
        return event

    async def latest(self, channel: str) -> Event | None:
        docs = await self.client.query_items(
            self._container,
            "SELECT TOP 1 * FROM c WHERE c.channel = @channel AND c.type = @type "
            "ORDER BY c.ts DESC",
            parameters=[
                {"name": "@channel", "value": channel},
                {"name": "@type", "value": EVENT_DOC_TYPE},
            ],
            partition_key=channel,
        )
        return doc_to_event(docs[0]) if docs else None

    async def read_since(self, channel: str, after_ts: Timestamp | None = None) -> list[Event]:
        docs = await self.client.query_items(
            self._container,
            "SELECT * FROM c WHERE c.channel = @channel AND c.type = @type "
            "AND c.ts > @after ORDER BY c.ts ASC",
            parameters=[
                {"name": "@channel", "value": channel},
                {"name": "@type", "value": EVENT_DOC_TYPE},
                {"name": "@after", "value": after_ts or 0},
            ],
            partition_key=channel,
        )
        return [doc_to_event(doc) for doc in docs]

    async def subscribe(self, channel: str, on_event: EventCallback) -> Unsubscribe:
        head = await self.client.read_item(self._container, HEAD_ID, channel)
        cursor = int(head["ts"]) if head else 0

        task = asyncio.create_task(self._poll(channel, on_event, cursor))
        self._polls.add(task)
        task.add_done_callback(self._polls.discard)
        logger.debug(f"Polling {channel} from ts={cursor}")

        async def unsubscribe() -> None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        return unsubscribe

    async def _poll(self, channel: str, on_event: EventCallback, cursor: Timestamp) -> None:
        stalled = 0
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                events = await self.read_since(channel, cursor)
            except Exception as e:
                logger.warning(f"Poll of {channel} failed: {e}")
                continue

            for event in events:
                # A claimed timestamp whose event is not written yet shows up
                # as a gap; wait a few polls for it before moving past it.
                if event.ts != cursor + 1 and stalled < self.gap_polls:
                    stalled += 1
                    break
                if event.ts != cursor + 1:
                    logger.warning(
                        f"Skipping missing events on {channel}: ts={cursor + 1}..{event.ts - 1}"
                    )
                stalled = 0
                cursor = event.ts
                try:
                    on_event(event)
                except Exception:
                    logger.exception(f"Subscriber of {channel} raised on ts={event.ts}")

    @property
    def active_polls(self) -> int:
        """Number of running subscription polls."""
        return len(self._polls)

    async def close(self) -> None:
        """Stop all subscription polls."""
        polls = list(self._polls)
        for task in polls:
            task.cancel()
        if polls:
            await asyncio.gather(*polls, return_exceptions=True)
