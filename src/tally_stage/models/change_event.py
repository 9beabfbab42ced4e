# src/tally_stage/models/change_event.py
"""Change log written alongside every detail record mutation."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tally_stage.db.session import Base
from tally_stage.db.time import utcnow

CHANGE_OP_INSERT = "insert"
CHANGE_OP_DELETE = "delete"
CHANGE_OP_UPDATE = "update"


class ChangeEvent(Base):
    """One entry of the change feed.

    ``seq`` orders events within the store; ``event_id`` is the identity used
    for deduplication and stays stable across redeliveries.
    """

    __tablename__ = "change_event"
    __table_args__ = (
        Index("ix_change_event_collection_seq", "collection", "seq"),
        # Never hand out a pruned seq again.
        {"sqlite_autoincrement": True},
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    collection: Mapped[str] = mapped_column(Text, nullable=False)
    operation: Mapped[str] = mapped_column(String(10), nullable=False)
    record_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # Owner column -> owner id, e.g. {"user_id": 1, "post_id": 7}.
    owners: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ProcessedEvent(Base):
    """Dedup record: existence means the event has been applied."""

    __tablename__ = "processed_event"

    event_id: Mapped[str] = mapped_column(String(32), primary_key=True)
    processed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class FeedCheckpoint(Base):
    """Last applied change-feed position per consumer and collection."""

    __tablename__ = "feed_checkpoint"

    consumer: Mapped[str] = mapped_column(Text, primary_key=True)
    collection: Mapped[str] = mapped_column(Text, primary_key=True)
    last_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class FeedRetention(Base):
    """Highest ``seq`` pruned from a collection's change log."""

    __tablename__ = "feed_retention"

    collection: Mapped[str] = mapped_column(Text, primary_key=True)
    pruned_through_seq: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
