# src/tally_stage/models/user.py
"""SQLAlchemy model for users and their denormalized activity counters."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from tally_stage.db.session import Base
from tally_stage.db.time import utcnow


class User(Base):
    """Account owning posts, likes and comments.

    The ``number_of_*`` columns are materialized copies of counts that can
    always be recomputed from the detail tables.
    """

    __tablename__ = "app_user"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    handle: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    # Denormalized aggregates.
    number_of_posts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    number_of_posts_liked: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    number_of_comments: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
