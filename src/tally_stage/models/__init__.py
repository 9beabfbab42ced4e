# src/tally_stage/models/__init__.py
"""SQLAlchemy models for the Tally Stage application."""

from .change_event import ChangeEvent, FeedCheckpoint, FeedRetention, ProcessedEvent
from .comment import Comment
from .like import PostLike
from .post import Post
from .reconciliation import ReconciliationRun
from .user import User

__all__ = [
    "ChangeEvent", "FeedCheckpoint", "FeedRetention", "ProcessedEvent",
    "Comment",
    "PostLike",
    "Post",
    "ReconciliationRun",
    "User",
]
