"""Comment schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class CommentCreate(BaseModel):
    """Payload for adding a comment to a post."""

    post_id: str
    user_id: str
    content: str = Field(..., min_length=1)


class CommentRow(BaseModel):
    """Row of the ``post_comments`` collection."""

    id: str
    post_id: str
    user_id: str
    content: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True, extra="ignore")
