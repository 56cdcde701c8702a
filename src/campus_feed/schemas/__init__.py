"""
Pydantic schemas for the rows exchanged with the data gateway.

These schemas validate rows returned by either backend and the payloads
written back to it.
"""

from .comment import CommentCreate, CommentRow
from .like import LikeCreate, LikeRow
from .post import PostCreate, PostRow
from .user import UserProfile, UserUpsert

__all__ = [
    "CommentCreate", "CommentRow",
    "LikeCreate", "LikeRow",
    "PostCreate", "PostRow",
    "UserProfile", "UserUpsert",
]
