# src/tally_stage/models/like.py
"""Model capturing a user's like on a post."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tally_stage.db.session import Base
from tally_stage.db.time import utcnow


class PostLike(Base):
    """Per-user like on a post.

    Owned by both the liking user and the liked post. Deleting the post
    cascades here at the database level, outside any counter bookkeeping.
    """

    __tablename__ = "post_like"
    __table_args__ = (
        # A user likes a given post at most once.
        UniqueConstraint("user_id", "post_id", name="uq_post_like_user_post"),
        Index("ix_post_like_post_id", "post_id"),
        Index("ix_post_like_user_id", "user_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("app_user.id", ondelete="CASCADE"),
        nullable=False,
    )
    post_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("post.id", ondelete="CASCADE"),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
