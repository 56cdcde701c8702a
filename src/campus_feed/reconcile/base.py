"""Shared lifecycle for surfaces that follow a realtime subscription."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from abc import ABC, abstractmethod
from typing import Any

from campus_feed.core.errors import CampusFeedError
from campus_feed.services.auth import SessionContext
from campus_feed.services.gateway import Gateway
from campus_feed.services.realtime import ChangeEvent, Subscription

logger = logging.getLogger(__name__)


class LiveView(ABC):
    """Owns one realtime subscription and merges its events into a view-model.

    - ``open()`` subscribes; ``start()`` also runs a pump task that merges
      events as they arrive
    - ``sync()`` merges whatever is queued without waiting
    - ``close()`` unsubscribes, stops the pump and marks the view closed;
      results of requests still in flight are discarded afterwards

    A lagged subscription (its bounded queue overflowed) is drained and the
    view resynchronised from the gateway instead of merging a gapped stream.
    """

    def __init__(self, gateway: Gateway, session: SessionContext) -> None:
        self.gateway = gateway
        self.session = session
        self.closed = False
        self._subscription: Subscription | None = None
        self._pump: asyncio.Task[None] | None = None

    @abstractmethod
    def _subscribe(self) -> Subscription | None:
        """Open the surface's subscription, or return None if it has nothing to follow."""

    @abstractmethod
    async def _handle_event(self, event: ChangeEvent) -> None:
        """Merge one event into the view-model."""

    async def resync(self) -> None:
        """Rebuild the view-model from the gateway after missed events."""

    @property
    def subscription(self) -> Subscription | None:
        return self._subscription

    def open(self) -> Subscription | None:
        """Subscribe without starting the pump; events wait until ``sync()``.

        Returns:
            The subscription, or None if the surface has nothing to follow yet.

        Raises:
            RuntimeError: If the view has been closed.
        """
        if self.closed:
            raise RuntimeError(f"{type(self).__name__} is closed")
        if self._subscription is None or self._subscription.closed:
            self._subscription = self._subscribe()
        return self._subscription

    async def start(self) -> None:
        """Subscribe and start merging events in the background."""
        subscription = self.open()
        if subscription is None:
            return
        if self._pump is None or self._pump.done():
            self._pump = asyncio.create_task(self._run(subscription))

    async def _run(self, subscription: Subscription) -> None:
        while not self.closed and not subscription.closed:
            event = await subscription.get()
            await self._dispatch(subscription, event)

    async def _dispatch(self, subscription: Subscription, event: ChangeEvent | None) -> None:
        if self.closed:
            return
        if subscription.take_lagged():
            dropped = len(subscription.drain())
            logger.info(
                "%s lagged behind realtime stream; resyncing (%d queued events dropped)",
                type(self).__name__,
                dropped,
            )
            await self._guarded(self.resync())
            return
        if event is not None:
            await self._guarded(self._handle_event(event))

    async def _guarded(self, work: Any) -> None:
        try:
            await work
        except CampusFeedError as e:
            logger.warning("%s could not merge realtime change: %s", type(self).__name__, e)
        except (ValueError, TypeError, KeyError) as e:
            logger.error(
                "%s received a malformed realtime change: %s",
                type(self).__name__,
                e,
                exc_info=True,
            )

    async def sync(self) -> int:
        """Merge every queued event; return how many were taken off the queue."""
        subscription = self._subscription
        if subscription is None or self.closed:
            return 0
        events = subscription.drain()
        for event in events:
            await self._dispatch(subscription, event)
        await self._dispatch(subscription, None)
        return len(events)

    async def close(self) -> None:
        """Unsubscribe and stop the pump.

        Safe to call more than once. Requests still in flight finish, but
        their results are no longer merged.
        """
        self.closed = True
        if self._subscription is not None:
            self._subscription.close()
        if self._pump is not None:
            self._pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._pump
            self._pump = None

    async def __aenter__(self) -> LiveView:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()
