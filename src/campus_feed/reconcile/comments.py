"""Comment thread reconciliation.

One ``CommentThread`` per post keeps an append-only, paginated comment list
in step with the viewer's submissions and the realtime stream.

Phases: IDLE -> LOADING -> READY -> LOADING_MORE -> READY ..., and
READY -> SUBMITTING -> READY for writes (failed writes surface an error and
leave the list unchanged).

Paging fetches by offset, so ``loaded`` must always be a prefix of the
server's ``created_at`` order. Comments that arrive out of band (the
viewer's own submissions and realtime inserts) while older pages are still
unfetched are parked in ``tail``; when paging reaches one of them it moves
into its chronological place.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from enum import Enum

from campus_feed.core.errors import GatewayError
from campus_feed.core.settings import settings
from campus_feed.reconcile.base import LiveView
from campus_feed.reconcile.read_model import UNKNOWN_AUTHOR_EMAIL
from campus_feed.schemas import CommentRow, UserProfile
from campus_feed.services.auth import SessionContext
from campus_feed.services.gateway import POST_COMMENTS, USERS, Gateway, Query, eq
from campus_feed.services.realtime import ChangeEvent, ChangeKind, RowFilter, Subscription

logger = logging.getLogger(__name__)

EMPTY_MESSAGE = "Comment cannot be empty"
SIGN_IN_MESSAGE = "Please sign in to comment"
LOAD_FAILED_MESSAGE = "Failed to load comments"
SUBMIT_FAILED_MESSAGE = "Failed to add comment"


class ThreadPhase(Enum):
    IDLE = "idle"
    LOADING = "loading"
    READY = "ready"
    LOADING_MORE = "loading_more"
    SUBMITTING = "submitting"


@dataclass(frozen=True)
class CommentView:
    comment: CommentRow
    author_email: str

    @property
    def id(self) -> str:
        return self.comment.id


@dataclass(frozen=True)
class CommentThreadState:
    phase: ThreadPhase = ThreadPhase.IDLE
    loaded: tuple[CommentView, ...] = ()
    tail: tuple[CommentView, ...] = ()
    total: int = 0
    removed: frozenset[str] = frozenset()
    error: str | None = None

    @property
    def comments(self) -> tuple[CommentView, ...]:
        return self.loaded + self.tail

    @property
    def ids(self) -> set[str]:
        return {view.id for view in self.comments}

    @property
    def has_more(self) -> bool:
        return len(self.loaded) + len(self.tail) < self.total


def merge_comment(state: CommentThreadState, view: CommentView) -> CommentThreadState:
    """Add an out-of-band comment unless its id is already known.

    Merging the same comment twice (an optimistic append racing its realtime
    echo, or duplicate delivery) leaves exactly one entry.
    """
    if view.id in state.ids or view.id in state.removed:
        return state
    if state.has_more:
        return replace(state, tail=state.tail + (view,), total=state.total + 1)
    return replace(state, loaded=state.loaded + (view,), total=state.total + 1)


def remove_comment(state: CommentThreadState, comment_id: str) -> CommentThreadState:
    """Drop a deleted comment by id; repeated deletes are ignored."""
    if comment_id in state.removed:
        return state
    return replace(
        state,
        loaded=tuple(v for v in state.loaded if v.id != comment_id),
        tail=tuple(v for v in state.tail if v.id != comment_id),
        total=max(0, state.total - 1),
        removed=state.removed | {comment_id},
    )


def append_page(state: CommentThreadState, page: Sequence[CommentView]) -> CommentThreadState:
    """Append a fetched page to ``loaded``, absorbing matching tail entries."""
    loaded_ids = {view.id for view in state.loaded}
    page_ids = {view.id for view in page}
    additions = tuple(
        view for view in page if view.id not in loaded_ids and view.id not in state.removed
    )
    return replace(
        state,
        loaded=state.loaded + additions,
        tail=tuple(view for view in state.tail if view.id not in page_ids),
    )


class CommentThread(LiveView):
    """Paginated, realtime-synchronised comment list for one post."""

    def __init__(
        self,
        gateway: Gateway,
        session: SessionContext,
        post_id: str,
        page_size: int | None = None,
    ) -> None:
        super().__init__(gateway, session)
        self.post_id = post_id
        self.page_size = page_size or settings.comment_page_size
        self.state = CommentThreadState()
        self._emails: dict[str, str] = {}
        self._submitting = False

    @property
    def comments(self) -> tuple[CommentView, ...]:
        return self.state.comments

    def _subscribe(self) -> Subscription:
        return self.gateway.subscribe(
            POST_COMMENTS,
            (ChangeKind.INSERT, ChangeKind.DELETE),
            RowFilter("post_id", self.post_id),
        )

    def _window(self, offset: int, size: int) -> Query:
        return (
            Query()
            .where("post_id", "eq", self.post_id)
            .order_by("created_at")
            .order_by("id")
            .range(offset, offset + size - 1)
        )

    async def _resolve_emails(self, user_ids: Iterable[str]) -> dict[str, str]:
        """Resolve display emails with one batched lookup for unknown ids."""
        viewer = self.session.identity
        if viewer is not None:
            self._emails[viewer.id] = viewer.email

        missing = sorted({uid for uid in user_ids if uid not in self._emails})
        if missing:
            rows = await self.gateway.select(
                USERS, Query().select("id, email").where("id", "in", missing)
            )
            for profile in (UserProfile.model_validate(row) for row in rows):
                self._emails[profile.id] = profile.email
        return self._emails

    async def _views(self, rows: Iterable[dict]) -> list[CommentView]:
        comments = [CommentRow.model_validate(row) for row in rows]
        emails = await self._resolve_emails(c.user_id for c in comments)
        return [
            CommentView(comment=c, author_email=emails.get(c.user_id, UNKNOWN_AUTHOR_EMAIL))
            for c in comments
        ]

    async def load_first_page(self) -> CommentThreadState:
        """Count the post's comments and fetch the oldest page."""
        if self.state.phase in (ThreadPhase.LOADING, ThreadPhase.LOADING_MORE):
            return self.state

        self.state = replace(self.state, phase=ThreadPhase.LOADING, error=None)
        try:
            total = await self.gateway.count(POST_COMMENTS, [eq("post_id", self.post_id)])
            rows = await self.gateway.select(POST_COMMENTS, self._window(0, self.page_size))
            page = await self._views(rows)
        except GatewayError as e:
            logger.warning("Loading comments for post %s failed: %s", self.post_id, e)
            if not self.closed:
                self.state = replace(
                    self.state, phase=ThreadPhase.READY, error=LOAD_FAILED_MESSAGE
                )
            return self.state

        if self.closed:
            return self.state

        # Comments merged by realtime while the page was in flight are kept.
        arrived_meanwhile = self.state.comments
        fresh = append_page(
            CommentThreadState(phase=ThreadPhase.READY, total=total, removed=self.state.removed),
            page,
        )
        for view in arrived_meanwhile:
            if view.id not in fresh.ids:
                fresh = merge_comment(replace(fresh, total=fresh.total - 1), view)
        self.state = replace(
            fresh, total=max(fresh.total, len(fresh.loaded) + len(fresh.tail))
        )
        return self.state

    async def load_next_page(self) -> CommentThreadState:
        """Fetch the next window of older comments.

        A no-op, with no request made, unless the thread is READY and the
        server holds comments not yet paged in.

        Returns:
            The thread state after the page was merged.
        """
        if self.state.phase is not ThreadPhase.READY or not self.state.has_more:
            return self.state

        offset = len(self.state.loaded)
        self.state = replace(self.state, phase=ThreadPhase.LOADING_MORE, error=None)
        try:
            rows = await self.gateway.select(
                POST_COMMENTS, self._window(offset, self.page_size)
            )
            page = await self._views(rows)
        except GatewayError as e:
            logger.warning("Loading more comments for post %s failed: %s", self.post_id, e)
            if not self.closed:
                self.state = replace(
                    self.state, phase=ThreadPhase.READY, error=LOAD_FAILED_MESSAGE
                )
            return self.state

        if self.closed:
            return self.state
        self.state = replace(append_page(self.state, page), phase=ThreadPhase.READY)
        if not page and self.state.has_more:
            # The server has fewer rows than counted; trust what paging saw.
            self.state = replace(
                self.state, total=len(self.state.loaded) + len(self.state.tail)
            )
        return self.state

    async def submit_comment(self, text: str) -> CommentView | None:
        """Insert a comment and append the confirmed row.

        Empty text and a missing identity are rejected before any request. A
        submit while another is in flight is ignored. Submitting during a page
        load is allowed and leaves the phase to the load.

        Args:
            text: Comment body; surrounding whitespace is trimmed.

        Returns:
            The appended comment, or None if it was rejected or failed (see
            ``state.error``).
        """
        content = text.strip()
        if not content:
            self.state = replace(self.state, error=EMPTY_MESSAGE)
            return None
        viewer = self.session.identity
        if viewer is None:
            self.state = replace(self.state, error=SIGN_IN_MESSAGE)
            return None
        if self._submitting or self.closed:
            return None

        # A page load may be in flight; it owns the phase and settles it itself.
        phase = ThreadPhase.SUBMITTING if self.state.phase is ThreadPhase.READY else None
        self.state = replace(self.state, phase=phase or self.state.phase, error=None)
        self._submitting = True
        try:
            row = await self.gateway.insert(
                POST_COMMENTS,
                {"post_id": self.post_id, "user_id": viewer.id, "content": content},
            )
        except GatewayError as e:
            logger.warning("Adding a comment to post %s failed: %s", self.post_id, e)
            self.state = replace(self._settled(), error=SUBMIT_FAILED_MESSAGE)
            return None
        finally:
            self._submitting = False

        # The viewer's own email is known; no lookup needed.
        view = CommentView(comment=CommentRow.model_validate(row), author_email=viewer.email)
        if not self.closed:
            self.state = merge_comment(self._settled(), view)
        return view

    def _settled(self) -> CommentThreadState:
        if self.state.phase is ThreadPhase.SUBMITTING:
            return replace(self.state, phase=ThreadPhase.READY)
        return self.state

    async def _handle_event(self, event: ChangeEvent) -> None:
        if event.kind is ChangeKind.DELETE:
            comment_id = event.row.get("id")
            if comment_id:
                self.state = remove_comment(self.state, str(comment_id))
            return

        comment = CommentRow.model_validate(event.row)
        if comment.id in self.state.ids or comment.id in self.state.removed:
            return

        try:
            emails = await self._resolve_emails([comment.user_id])
            email = emails.get(comment.user_id, UNKNOWN_AUTHOR_EMAIL)
        except GatewayError as e:
            logger.warning("Could not resolve commenter %s: %s", comment.user_id, e)
            email = UNKNOWN_AUTHOR_EMAIL

        if self.closed:
            return
        self.state = merge_comment(self.state, CommentView(comment=comment, author_email=email))

    async def resync(self) -> None:
        """Reload everything paged in so far."""
        size = max(len(self.state.loaded), self.page_size)
        total = await self.gateway.count(POST_COMMENTS, [eq("post_id", self.post_id)])
        rows = await self.gateway.select(POST_COMMENTS, self._window(0, size))
        page = await self._views(rows)
        if self.closed:
            return
        self.state = append_page(
            CommentThreadState(phase=ThreadPhase.READY, total=total), page
        )
