"""User-related Pydantic schemas."""

from pydantic import BaseModel, ConfigDict, Field


class UserCreate(BaseModel):
    """Schema for creating a user."""

    handle: str = Field(..., min_length=1, max_length=64, description="Unique display handle")


class UserResponse(BaseModel):
    """User with its stored aggregates."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    handle: str
    number_of_posts: int
    number_of_posts_liked: int
    number_of_comments: int
