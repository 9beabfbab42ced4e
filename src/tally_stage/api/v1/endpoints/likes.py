# src/tally_stage/api/v1/endpoints/likes.py
"""Like and unlike endpoints routed through the configured pipeline."""

from fastapi import APIRouter, status

from tally_stage.api.v1.dependencies import (
    PipelineDep,
    SessionDep,
    raise_http_error,
    require_entity,
)
from tally_stage.core.errors import TallyError
from tally_stage.models import Post, User
from tally_stage.schemas.detail import LikeCreate, MutationResponse

router = APIRouter(prefix="/likes", tags=["likes"])


@router.post("", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
def like_post(like_data: LikeCreate, db: SessionDep, pipeline: PipelineDep) -> MutationResponse:
    """Like a post. Liking twice keeps one like row."""
    require_entity(db, User, like_data.user_id, "User")
    require_entity(db, Post, like_data.post_id, "Post")
    try:
        attempt = pipeline.create("like", like_data)
    except TallyError as exc:
        raise_http_error(exc)
    return MutationResponse.from_attempt(attempt)


@router.delete("/{like_id}", response_model=MutationResponse)
def unlike_post(like_id: int, pipeline: PipelineDep) -> MutationResponse:
    """Remove a like."""
    try:
        attempt = pipeline.delete("like", like_id)
    except TallyError as exc:
        raise_http_error(exc)
    return MutationResponse.from_attempt(attempt)
