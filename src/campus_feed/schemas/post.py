"""Post-related Pydantic schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PostCreate(BaseModel):
    """Schema for inserting a new post."""

    user_id: str
    content: str = Field(..., min_length=1, description="Post body")
    image_url: str | None = Field(None, description="Public URL of the uploaded image")
    college: str = Field(..., description="College scope copied from the author")
    anonymous: bool = False


class PostRow(BaseModel):
    """Row of the ``posts`` collection."""

    id: str
    user_id: str
    content: str
    image_url: str | None = None
    created_at: datetime
    college: str
    anonymous: bool = False

    model_config = ConfigDict(from_attributes=True, extra="ignore")
