# src/tally_stage/schemas/detail.py
"""Schemas for detail record mutations."""

from __future__ import annotations

from pydantic import BaseModel, Field

from tally_stage.services.pipelines import MutationAttempt


class PostCreate(BaseModel):
    """Schema for creating a post."""

    author_id: int
    body_md: str = Field(..., min_length=1, max_length=5000, description="Markdown content")


class LikeCreate(BaseModel):
    """Schema for liking a post."""

    user_id: int
    post_id: int


class CommentCreate(BaseModel):
    """Schema for commenting on a post."""

    author_id: int
    post_id: int
    body_md: str = Field(..., min_length=1, max_length=5000, description="Markdown content")


class MutationResponse(BaseModel):
    """Outcome of one pipeline call as seen by the caller."""

    attempt_id: str
    kind: str
    action: str
    strategy: str
    state: str
    record_id: int | None = None
    created: bool = True
    consistent: bool
    drifted: bool
    double_counted: bool = False
    attempts: int
    applied: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_attempt(cls, attempt: MutationAttempt) -> MutationResponse:
        record = attempt.record
        return cls(
            attempt_id=attempt.attempt_id,
            kind=attempt.kind,
            action=attempt.action,
            strategy=attempt.strategy,
            state=attempt.state.value,
            record_id=record.id if record else None,
            created=record.created if record else False,
            consistent=attempt.consistent,
            drifted=attempt.drifted,
            double_counted=attempt.double_counted,
            attempts=attempt.attempts,
            applied=list(attempt.applied),
            failed=list(attempt.failed),
            error=str(attempt.error) if attempt.error else None,
        )
