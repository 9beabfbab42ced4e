# src/tally_stage/api/v1/endpoints/comments.py
"""Comment endpoints routed through the configured pipeline."""

from fastapi import APIRouter, status

from tally_stage.api.v1.dependencies import (
    PipelineDep,
    SessionDep,
    raise_http_error,
    require_entity,
)
from tally_stage.core.errors import TallyError
from tally_stage.models import Post, User
from tally_stage.schemas.detail import CommentCreate, MutationResponse

router = APIRouter(prefix="/comments", tags=["comments"])


@router.post("", response_model=MutationResponse, status_code=status.HTTP_201_CREATED)
def create_comment(
    comment_data: CommentCreate, db: SessionDep, pipeline: PipelineDep
) -> MutationResponse:
    require_entity(db, User, comment_data.author_id, "User")
    require_entity(db, Post, comment_data.post_id, "Post")
    try:
        attempt = pipeline.create("comment", comment_data)
    except TallyError as exc:
        raise_http_error(exc)
    return MutationResponse.from_attempt(attempt)
