"""Like counter reconciliation.

Keeps a per-post "liked by viewer" flag and like count in step with the
viewer's own optimistic toggles and the realtime stream of like rows.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace

from campus_feed.core.errors import GatewayError, UniqueViolationError
from campus_feed.reconcile.base import LiveView
from campus_feed.reconcile.pending import PendingKey, PendingOperations
from campus_feed.services.auth import SessionContext
from campus_feed.services.gateway import POST_LIKES, Gateway, Query, eq
from campus_feed.services.realtime import ChangeEvent, ChangeKind, RowFilter, Subscription

logger = logging.getLogger(__name__)

SIGN_IN_MESSAGE = "Please sign in to like posts"
FAILURE_MESSAGE = "Failed to update like. Please try again."


@dataclass(frozen=True)
class LikeState:
    """Snapshot of one post's like affordance."""

    liked: bool = False
    count: int = 0
    pending: PendingOperations = field(default_factory=PendingOperations)
    busy: bool = False
    error: str | None = None


def pending_key(action: str, viewer_id: str, post_id: str) -> PendingKey:
    """Key for the viewer's like write on a post.

    Args:
        action: ``"insert"`` for a like, ``"delete"`` for an unlike.
        viewer_id: Id of the user making the change.
        post_id: Id of the liked post.
    """
    return PendingKey(POST_LIKES, action, viewer_id, post_id)


def apply_like_event(state: LikeState, event: ChangeEvent, viewer_id: str | None) -> LikeState:
    """Merge one like-row change into ``state``.

    - Someone else's like/unlike moves the count by one (never below zero).
    - The viewer's own change first consumes a matching pending operation:
      that event is the echo of an optimistic update already on screen.
    - Otherwise (e.g. a toggle from another device) the viewer's change flips
      ``liked``; the count only moves if ``liked`` actually changed, since a
      viewer holds at most one like per post.
    """
    if event.collection != POST_LIKES or event.kind is ChangeKind.UPDATE:
        return state

    row = event.row
    inserting = event.kind is ChangeKind.INSERT
    delta = 1 if inserting else -1

    if viewer_id is None or row.get("user_id") != viewer_id:
        return replace(state, count=max(0, state.count + delta))

    key = pending_key("insert" if inserting else "delete", viewer_id, str(row.get("post_id")))
    if key in state.pending:
        return replace(state, pending=state.pending.discard(key))

    if state.liked == inserting:
        return state
    return replace(state, liked=inserting, count=max(0, state.count + delta))


def _counted_in(event: ChangeEvent, like_ids: frozenset[str]) -> bool:
    """True if a fetch that returned ``like_ids`` already reflects ``event``."""
    row_id = event.row.get("id")
    if row_id is None or event.kind is ChangeKind.UPDATE:
        return False
    present = str(row_id) in like_ids
    return present if event.kind is ChangeKind.INSERT else not present


class LikeReconciler(LiveView):
    """Optimistic like toggle for one post, reconciled against realtime echoes."""

    def __init__(
        self,
        gateway: Gateway,
        session: SessionContext,
        post_id: str,
        initial: LikeState | None = None,
        on_change: Callable[[LikeState], None] | None = None,
    ) -> None:
        super().__init__(gateway, session)
        self.post_id = post_id
        self.state = initial or LikeState()
        self._on_change = on_change

    def _set(self, state: LikeState) -> None:
        self.state = state
        if self._on_change is not None:
            self._on_change(state)

    def _subscribe(self) -> Subscription:
        return self.gateway.subscribe(
            POST_LIKES,
            (ChangeKind.INSERT, ChangeKind.DELETE),
            RowFilter("post_id", self.post_id),
        )

    async def _handle_event(self, event: ChangeEvent) -> None:
        viewer = self.session.identity
        self._set(apply_like_event(self.state, event, viewer.id if viewer else None))

    def _tracking_echoes(self) -> bool:
        return self._subscription is not None and not self._subscription.closed

    def reseed(self, liked: bool, count: int, like_ids: Iterable[str] | None = None) -> None:
        """Adopt freshly fetched values unless a toggle is in flight.

        Events still queued on the subscription are merged on top of the fresh
        values, except those the fetch already counted.

        Args:
            liked: Whether the viewer's like row was in the fetch.
            count: Number of like rows in the fetch.
            like_ids: Ids of the fetched like rows. Without them every queued
                event is treated as newer than the fetch.
        """
        if self.state.busy:
            return
        seen = frozenset(like_ids or ())
        viewer = self.session.identity
        viewer_id = viewer.id if viewer else None

        state = replace(self.state, liked=liked, count=max(0, count), error=None)
        queued = self._subscription.drain() if self._subscription is not None else []
        for event in queued:
            if not _counted_in(event, seen):
                state = apply_like_event(state, event, viewer_id)
            elif viewer_id is not None and event.row.get("user_id") == viewer_id:
                # The echo is already in the fetch; its pending entry is settled.
                action = "insert" if event.kind is ChangeKind.INSERT else "delete"
                key = pending_key(action, viewer_id, self.post_id)
                state = replace(state, pending=state.pending.discard(key))
        if queued:
            logger.debug(
                "Reseeded likes on post %s over %d queued events", self.post_id, len(queued)
            )
        self._set(state)

    async def toggle_like(self) -> LikeState:
        """Flip the viewer's like optimistically, then write it.

        Toggles issued while a previous one is still in flight are ignored.
        Failures are reported through ``state.error`` rather than raised.

        Returns:
            The state after the write settled.
        """
        viewer = self.session.identity
        if viewer is None:
            self._set(replace(self.state, error=SIGN_IN_MESSAGE))
            return self.state
        if self.state.busy or self.closed:
            return self.state

        before = self.state
        liking = not before.liked
        key = pending_key("insert" if liking else "delete", viewer.id, self.post_id)
        count = max(0, before.count + (1 if liking else -1))
        applied = count - before.count
        pending = before.pending.add(key) if self._tracking_echoes() else before.pending
        self._set(
            replace(before, liked=liking, count=count, pending=pending, busy=True, error=None)
        )

        try:
            if liking:
                await self.gateway.insert(
                    POST_LIKES, {"post_id": self.post_id, "user_id": viewer.id}
                )
            else:
                removed = await self.gateway.delete(
                    POST_LIKES,
                    [eq("post_id", self.post_id), eq("user_id", viewer.id)],
                )
                if not removed:
                    # Already gone server-side: no echo will arrive.
                    self._set(replace(self.state, pending=self.state.pending.discard(key)))
        except UniqueViolationError:
            logger.debug(
                "Post %s already liked by %s; keeping liked state", self.post_id, viewer.id
            )
            self._set(replace(self.state, pending=self.state.pending.discard(key)))
        except GatewayError as e:
            logger.warning("Like toggle on post %s failed: %s", self.post_id, e)
            current = self.state
            self._set(
                replace(
                    current,
                    liked=before.liked,
                    count=max(0, current.count - applied),
                    pending=current.pending.discard(key),
                    error=FAILURE_MESSAGE,
                )
            )
        finally:
            self._set(replace(self.state, busy=False))

        return self.state

    async def resync(self) -> None:
        viewer = self.session.identity
        count = await self.gateway.count(POST_LIKES, [eq("post_id", self.post_id)])
        liked = False
        if viewer is not None:
            rows = await self.gateway.select(
                POST_LIKES,
                Query()
                .select("post_id, user_id")
                .where("post_id", "eq", self.post_id)
                .where("user_id", "eq", viewer.id),
            )
            liked = bool(rows)
        if self.closed:
            return
        self._set(replace(self.state, liked=liked, count=count, pending=PendingOperations()))
