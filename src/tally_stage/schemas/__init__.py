# src/tally_stage/schemas/__init__.py
"""
Pydantic schemas for API request/response models.

These schemas define the structure of API data for serialization and validation.
"""

from .counts import CountsResponse, CounterValue
from .detail import CommentCreate, LikeCreate, MutationResponse, PostCreate
from .reconcile import DriftMismatchResponse, ReconcileRequest, ReconciliationResponse
from .user import UserCreate, UserResponse

__all__ = [
    "CountsResponse", "CounterValue",
    "CommentCreate", "LikeCreate", "MutationResponse", "PostCreate",
    "DriftMismatchResponse", "ReconcileRequest", "ReconciliationResponse",
    "UserCreate", "UserResponse",
]
