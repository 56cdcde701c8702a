"""Feed read-model builder.

The backend offers no join across the independently fetched collections, so
posts, their authors and their likes are folded together here. The builder
is a pure function of the three collections and the viewer id.
"""

from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass

from campus_feed.schemas import LikeRow, PostRow, UserProfile

UNKNOWN_AUTHOR_EMAIL = "unknown@example.com"
ANONYMOUS_LABEL = "Anonymous"


@dataclass(frozen=True)
class PostView:
    """A post annotated for display."""

    post: PostRow
    author_email: str
    like_count: int = 0
    liked_by_viewer: bool = False
    like_ids: frozenset[str] = frozenset()

    @property
    def id(self) -> str:
        return self.post.id

    @property
    def author_label(self) -> str:
        return ANONYMOUS_LABEL if self.post.anonymous else self.author_email


def build_feed(
    posts: Sequence[PostRow],
    users: Iterable[UserProfile],
    likes: Iterable[LikeRow],
    viewer_id: str | None,
) -> list[PostView]:
    """Annotate ``posts`` with author email, like count and the viewer's like.

    The order of ``posts`` is kept as fetched. Likes for posts outside the
    list are ignored and a repeated (post, user) pair counts once.
    """
    emails = {user.id: user.email for user in users}
    post_ids = {post.id for post in posts}

    counts: dict[str, int] = defaultdict(int)
    like_ids: dict[str, set[str]] = defaultdict(set)
    liked: set[str] = set()
    seen: set[tuple[str, str]] = set()
    for like in likes:
        pair = (like.post_id, like.user_id)
        if like.post_id not in post_ids or pair in seen:
            continue
        seen.add(pair)
        counts[like.post_id] += 1
        if like.id is not None:
            like_ids[like.post_id].add(like.id)
        if viewer_id is not None and like.user_id == viewer_id:
            liked.add(like.post_id)

    return [
        PostView(
            post=post,
            author_email=emails.get(post.user_id, UNKNOWN_AUTHOR_EMAIL),
            like_count=counts[post.id],
            liked_by_viewer=post.id in liked,
            like_ids=frozenset(like_ids[post.id]),
        )
        for post in posts
    ]
