"""Feed assembly.

The feed is a college-scoped list of posts annotated with author email, like
count and the viewer's own like. It is fetched as a whole (posts, then their
authors and likes) and rebuilt from scratch whenever a new post is announced
on the realtime stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum

from campus_feed.core.errors import GatewayError
from campus_feed.core.settings import Settings, settings
from campus_feed.reconcile.base import LiveView
from campus_feed.reconcile.comments import CommentThread
from campus_feed.reconcile.likes import LikeReconciler, LikeState
from campus_feed.reconcile.read_model import PostView, build_feed
from campus_feed.schemas import LikeRow, PostRow, UserProfile
from campus_feed.services.auth import Identity, SessionContext
from campus_feed.services.gateway import POST_LIKES, POSTS, USERS, Gateway, Query
from campus_feed.services.realtime import ChangeEvent, ChangeKind, RowFilter, Subscription
from campus_feed.services.user_service import create_profile, fetch_profile

logger = logging.getLogger(__name__)

LOAD_FAILED_MESSAGE = "Failed to load posts. Please refresh the page."


class FeedStatus(Enum):
    IDLE = "idle"
    READY = "ready"
    NEEDS_ONBOARDING = "needs_onboarding"
    SIGNED_OUT = "signed_out"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class FeedState:
    status: FeedStatus = FeedStatus.IDLE
    posts: tuple[PostView, ...] = ()
    college: str | None = None
    error: str | None = None


class FeedReconciler(LiveView):
    """College feed with per-post like and comment surfaces."""

    def __init__(
        self,
        gateway: Gateway,
        session: SessionContext,
        config: Settings | None = None,
    ) -> None:
        super().__init__(gateway, session)
        self.config = config or settings
        self.state = FeedState()
        self._generation = 0
        self._likes: dict[str, LikeReconciler] = {}
        self._threads: dict[str, CommentThread] = {}
        self._following = False

    @property
    def posts(self) -> tuple[PostView, ...]:
        return self.state.posts

    def _subscribe(self) -> Subscription | None:
        if self.state.college is None:
            return None
        return self.gateway.subscribe(
            POSTS, (ChangeKind.INSERT,), RowFilter("college", self.state.college)
        )

    async def start(self) -> None:
        """Load the feed, then follow new posts in the viewer's college."""
        self._following = True
        await self.load_feed()

    async def _handle_event(self, event: ChangeEvent) -> None:
        logger.debug("New post %s announced; reloading feed", event.row.get("id"))
        await self.load_feed()

    async def resync(self) -> None:
        await self.load_feed()

    async def load_feed(self) -> FeedState:
        """Fetch and assemble the feed.

        Every call takes a new generation number; a load that finishes after
        a newer one started (or after ``close()``) is discarded.
        """
        self._generation += 1
        generation = self._generation

        viewer = self.session.identity
        if viewer is None:
            return await self._publish(generation, FeedState(status=FeedStatus.SIGNED_OUT))

        try:
            state = await self._fetch(viewer)
        except GatewayError as e:
            logger.warning("Loading feed for %s failed: %s", viewer.email, e)
            state = FeedState(
                status=FeedStatus.UNAVAILABLE,
                college=self.state.college,
                error=LOAD_FAILED_MESSAGE,
            )
        return await self._publish(generation, state)

    async def _fetch(self, viewer: Identity) -> FeedState:
        profile = await fetch_profile(self.gateway, viewer.id)
        if profile is None:
            await create_profile(self.gateway, viewer)
            return FeedState(status=FeedStatus.NEEDS_ONBOARDING)
        if not profile.college:
            return FeedState(status=FeedStatus.NEEDS_ONBOARDING)

        limit = max(1, self.config.feed_limit)
        post_rows = await self.gateway.select(
            POSTS,
            Query()
            .where("college", "eq", profile.college)
            .order_by("created_at", descending=True)
            .range(0, limit - 1),
        )
        posts = [PostRow.model_validate(row) for row in post_rows]

        users: list[UserProfile] = []
        likes: list[LikeRow] = []
        if posts:
            author_ids = sorted({post.user_id for post in posts})
            user_rows = await self.gateway.select(
                USERS, Query().select("id, email").where("id", "in", author_ids)
            )
            users = [UserProfile.model_validate(row) for row in user_rows]

            like_rows = await self.gateway.select(
                POST_LIKES,
                Query()
                .select("id, post_id, user_id")
                .where("post_id", "in", [post.id for post in posts]),
            )
            likes = [LikeRow.model_validate(row) for row in like_rows]

        return FeedState(
            status=FeedStatus.READY,
            posts=tuple(build_feed(posts, users, likes, viewer.id)),
            college=profile.college,
        )

    async def _publish(self, generation: int, state: FeedState) -> FeedState:
        if self.closed or generation != self._generation:
            logger.debug("Discarding stale feed load (generation %d)", generation)
            return self.state

        self.state = state
        await self._reseed()
        if self._following and state.college is not None:
            await super().start()
        return self.state

    async def _reseed(self) -> None:
        """Bring per-post surfaces in line with the freshly loaded posts."""
        current = {view.id: view for view in self.state.posts}

        for post_id in [pid for pid in self._likes if pid not in current]:
            await self._likes.pop(post_id).close()
        for post_id in [pid for pid in self._threads if pid not in current]:
            await self._threads.pop(post_id).close()

        for post_id, reconciler in self._likes.items():
            view = current[post_id]
            reconciler.reseed(view.liked_by_viewer, view.like_count, view.like_ids)
            # A toggle in flight keeps its optimistic values.
            self._patch_like(post_id, reconciler.state)

    def _patch_like(self, post_id: str, like: LikeState) -> None:
        posts = tuple(
            replace(view, like_count=like.count, liked_by_viewer=like.liked)
            if view.id == post_id
            else view
            for view in self.state.posts
        )
        self.state = replace(self.state, posts=posts)

    def _find(self, post_id: str) -> PostView:
        for view in self.state.posts:
            if view.id == post_id:
                return view
        raise KeyError(post_id)

    async def likes_for(self, post_id: str) -> LikeReconciler:
        """Return the post's like reconciler, creating it on first use.

        The reconciler is seeded from the post's current view and writes its
        changes back into ``posts``.

        Args:
            post_id: Id of a post in the current feed.

        Raises:
            KeyError: If the post is not in the feed.
        """
        reconciler = self._likes.get(post_id)
        if reconciler is None:
            view = self._find(post_id)
            reconciler = LikeReconciler(
                self.gateway,
                self.session,
                post_id,
                initial=LikeState(liked=view.liked_by_viewer, count=view.like_count),
                on_change=lambda like: self._patch_like(post_id, like),
            )
            self._likes[post_id] = reconciler
            await self._attach(reconciler)
        return reconciler

    async def comments_for(self, post_id: str) -> CommentThread:
        """Return the post's comment thread, creating it on first use.

        Raises:
            KeyError: If the post is not in the feed.
        """
        thread = self._threads.get(post_id)
        if thread is None:
            self._find(post_id)
            thread = CommentThread(
                self.gateway,
                self.session,
                post_id,
                page_size=self.config.comment_page_size,
            )
            self._threads[post_id] = thread
            await self._attach(thread)
        return thread

    async def _attach(self, view: LiveView) -> None:
        # Child surfaces follow the feed: pumped when the feed is, else synced by hand.
        if self._pump is not None:
            await view.start()
        else:
            view.open()

    async def sync(self) -> int:
        taken = await super().sync()
        for view in [*self._likes.values(), *self._threads.values()]:
            taken += await view.sync()
        return taken

    async def close(self) -> None:
        for view in [*self._likes.values(), *self._threads.values()]:
            await view.close()
        self._likes.clear()
        self._threads.clear()
        await super().close()
