"""Realtime change notification.

This module turns committed row changes into per-subscription event queues:

- ChangeEvent: one committed insert/update/delete with new and/or old row values
- Subscription: a bounded, ordered queue filtered by collection, event kind
  and a parent-key predicate
- RealtimeHub: fans published events out to matching subscriptions
- ChangeStreamWorker: polls the hosted change feed and publishes into a hub
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from campus_feed.core.errors import GatewayError
from campus_feed.core.settings import settings

if TYPE_CHECKING:
    from campus_feed.services.gateway import RestGateway

logger = logging.getLogger(__name__)


class ChangeKind(Enum):
    """Kind of committed row change."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


ALL_KINDS = frozenset(ChangeKind)


@dataclass(frozen=True)
class ChangeEvent:
    """A committed row change delivered out of band.

    Delete events carry the full old row (the tables use full replica
    identity), so parent-key filters work for deletes too.
    """

    kind: ChangeKind
    collection: str
    new: Mapping[str, Any] | None = None
    old: Mapping[str, Any] | None = None
    commit_timestamp: datetime | None = None

    @property
    def row(self) -> Mapping[str, Any]:
        """Return the row the event is about (new values, else old values)."""
        return self.new if self.new is not None else (self.old or {})

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> ChangeEvent:
        """Build an event from a ``{type, table, record, old_record}`` payload."""
        commit_ts = payload.get("commit_timestamp")
        return cls(
            kind=ChangeKind(str(payload.get("type", "")).upper()),
            collection=str(payload.get("table", "")),
            new=payload.get("record") or None,
            old=payload.get("old_record") or None,
            commit_timestamp=datetime.fromisoformat(commit_ts) if commit_ts else None,
        )


@dataclass(frozen=True)
class RowFilter:
    """Parent-key predicate, ``column = value``."""

    column: str
    value: Any

    def matches(self, event: ChangeEvent) -> bool:
        for row in (event.new, event.old):
            if row is not None and row.get(self.column) == self.value:
                return True
        return False


class Subscription:
    """Bounded queue of events for one (collection, parent key) pair.

    Events are queued in server-commit order. When the queue is full the
    incoming event is dropped and the subscription is flagged as lagged, so
    the owner knows it must resync from the gateway.
    """

    def __init__(
        self,
        hub: RealtimeHub,
        collection: str,
        kinds: Iterable[ChangeKind] = ALL_KINDS,
        parent_filter: RowFilter | None = None,
        maxsize: int | None = None,
    ) -> None:
        self.collection = collection
        self.kinds = frozenset(kinds)
        self.parent_filter = parent_filter
        self._hub = hub
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(
            maxsize=maxsize if maxsize is not None else settings.realtime_queue_size
        )
        self._lagged = False
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        if event.collection != self.collection or event.kind not in self.kinds:
            return False
        return self.parent_filter is None or self.parent_filter.matches(event)

    def offer(self, event: ChangeEvent) -> bool:
        """Queue ``event`` without blocking; return False if it was dropped."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            if not self._lagged:
                logger.warning(
                    "Realtime queue for %s is full; dropping events until resync",
                    self.collection,
                )
            self._lagged = True
            return False
        return True

    async def get(self) -> ChangeEvent:
        """Wait for the next event."""
        return await self._queue.get()

    def drain(self) -> list[ChangeEvent]:
        """Return every queued event without waiting."""
        events: list[ChangeEvent] = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def take_lagged(self) -> bool:
        """Return and clear the lagged flag."""
        lagged, self._lagged = self._lagged, False
        return lagged

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._hub.remove(self)
        self.drain()


class RealtimeHub:
    """Routes published change events to matching subscriptions."""

    def __init__(self, queue_size: int | None = None) -> None:
        self.queue_size = queue_size if queue_size is not None else settings.realtime_queue_size
        self._subscriptions: list[Subscription] = []

    def subscribe(
        self,
        collection: str,
        kinds: Iterable[ChangeKind] = ALL_KINDS,
        parent_filter: RowFilter | None = None,
    ) -> Subscription:
        subscription = Subscription(
            self, collection, kinds, parent_filter, maxsize=self.queue_size
        )
        self._subscriptions.append(subscription)
        logger.debug(
            "Subscribed to %s %s (%s)",
            collection,
            sorted(kind.value for kind in subscription.kinds),
            parent_filter,
        )
        return subscription

    def remove(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver ``event`` to every matching subscription; return how many took it."""
        delivered = 0
        for subscription in list(self._subscriptions):
            if subscription.matches(event) and subscription.offer(event):
                delivered += 1
        return delivered

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


@dataclass
class ChangeStreamState:
    """Position in the hosted change feed."""

    cursor: str | None = None


class ChangeStreamWorker:
    """Periodically pulls committed changes from the hosted project into a hub.

    The HTTP gateway has no push channel of its own; this worker polls the
    change feed with a cursor so no events are missed between polls.
    """

    def __init__(self, gateway: RestGateway, hub: RealtimeHub | None = None) -> None:
        self.gateway = gateway
        self.hub = hub or gateway.hub
        self.state = ChangeStreamState()
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start the background polling loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background polling loop."""
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(0.1, float(settings.realtime_poll_interval_seconds))

        while not self._stopping.is_set():
            try:
                await self.poll_once()
            except GatewayError as e:
                logger.warning("ChangeStreamWorker encountered GatewayError: %s", e)
                await self._sleep(min(interval * 4, 30.0))
                continue
            except (ValueError, TypeError, KeyError) as e:
                logger.error(
                    "ChangeStreamWorker could not decode change batch: %s", e, exc_info=True
                )
                await self._sleep(min(interval * 4, 30.0))
                continue

            await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass

    async def poll_once(self) -> int:
        """Pull one batch and publish it; return the number of events published."""
        cursor, payloads = await self.gateway.pull_changes(self.state.cursor)
        for payload in payloads:
            self.hub.publish(ChangeEvent.from_payload(payload))
        if cursor:
            self.state.cursor = cursor
        return len(payloads)
