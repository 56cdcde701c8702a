"""SQLAlchemy model for posts."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from campus_feed.db.session import Base
from campus_feed.db.time import utcnow


def _new_id() -> str:
    return str(uuid.uuid4())


class Post(Base):
    """Text post, optionally with an image, visible inside one college scope.

    Posts are immutable once created.
    """

    __tablename__ = "posts"
    __table_args__ = (Index("ix_posts_college_created_at", "college", "created_at"),)

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    # Copied from the author's profile at creation time.
    college: Mapped[str] = mapped_column(Text, nullable=False)
    anonymous: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
