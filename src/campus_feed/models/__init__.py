"""SQLAlchemy models for the Campus Feed collections."""

from .comment import PostComment
from .like import PostLike
from .post import Post
from .user import User

__all__ = [
    "PostComment",
    "PostLike",
    "Post",
    "User",
]
