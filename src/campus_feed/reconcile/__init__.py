"""View-model reconcilers for the feed, comment and like surfaces."""

from .comments import CommentThread, CommentThreadState, CommentView, ThreadPhase
from .feed import FeedReconciler, FeedState, FeedStatus
from .likes import LikeReconciler, LikeState, apply_like_event
from .pending import PendingKey, PendingOperations
from .read_model import PostView, build_feed

__all__ = [
    "CommentThread", "CommentThreadState", "CommentView", "ThreadPhase",
    "FeedReconciler", "FeedState", "FeedStatus",
    "LikeReconciler", "LikeState", "apply_like_event",
    "PendingKey", "PendingOperations",
    "PostView", "build_feed",
]
