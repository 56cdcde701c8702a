"""SQLAlchemy model for identities and their college scope."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from campus_feed.db.session import Base
from campus_feed.db.time import utcnow


class User(Base):
    """Identity row mirrored from the identity provider.

    ``college`` stays NULL until onboarding sets it, exactly once.
    """

    __tablename__ = "users"

    # Same id as the identity provider's user id.
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(Text, nullable=False)
    college: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    @property
    def onboarded(self) -> bool:
        return self.college is not None
