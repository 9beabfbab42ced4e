# src/tally_stage/models/post.py
"""SQLAlchemy model for posts."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from tally_stage.db.session import Base
from tally_stage.db.time import utcnow


class Post(Base):
    """Content produced by a user.

    A post is a detail record of its author (``user.posts``) and the owning
    entity of the ``like_count`` and ``comment_count`` aggregates.
    """

    __tablename__ = "post"
    __table_args__ = (Index("ix_post_author_id", "author_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    author_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("app_user.id", ondelete="CASCADE"),
        nullable=False,
    )
    body_md: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    # Denormalized aggregates.
    like_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    comment_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
