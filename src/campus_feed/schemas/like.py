"""Schemas for likes."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class LikeCreate(BaseModel):
    """Payload for liking a post."""

    post_id: str
    user_id: str


class LikeRow(BaseModel):
    """Row of the ``post_likes`` collection.

    Feed assembly only selects ``post_id`` and ``user_id``, so the remaining
    columns are optional.
    """

    post_id: str
    user_id: str
    id: str | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True, extra="ignore")
