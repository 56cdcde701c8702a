"""User profile schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class UserProfile(BaseModel):
    """Row of the ``users`` collection."""

    id: str
    email: str
    college: str | None = None
    created_at: datetime | None = None

    model_config = ConfigDict(from_attributes=True, extra="ignore")


class UserUpsert(BaseModel):
    """Payload used to create a profile before onboarding."""

    id: str
    email: str
    college: str | None = None
