# src/tally_stage/api/v1/endpoints/posts.py
"""Post endpoints routed through the configured pipeline."""

from fastapi import APIRouter, status

from tally_stage.api.v1.dependencies import (
    PipelineDep,
    SessionDep,
    raise_http_error,
    require_entity,
)
from tally_stage.core.errors import TallyError
from tally_stage.models import User
from tally_stage.schemas.detail import MutationResponse, PostCreate

router = APIRouter(prefix="/posts", tags=["posts"])


@router.post("", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
def create_post(post_data: PostCreate, db: SessionDep, pipeline: PipelineDep) -> MutationResponse:
    """Create a post for ``author_id``."""
    require_entity(db, User, post_data.author_id, "User")
    try:
        attempt = pipeline.create("post", post_data)
    except TallyError as exc:
        raise_http_error(exc)
    return MutationResponse.from_attempt(attempt)


@router.delete("/{post_id}", response_model=MutationResponse)
def delete_post(post_id: int, pipeline: PipelineDep) -> MutationResponse:
    """Delete a post.

    The database cascades the delete to the post's likes and comments without
    adjusting the likers' and commenters' aggregates.
    """
    try:
        attempt = pipeline.delete("post", post_id)
    except TallyError as exc:
        raise_http_error(exc)
    return MutationResponse.from_attempt(attempt)
