# src/tally_stage/api/v1/endpoints/users.py
"""User endpoints for the counter harness."""

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import select

from tally_stage.api.v1.dependencies import SessionDep
from tally_stage.models import User
from tally_stage.schemas.user import UserCreate, UserResponse

router = APIRouter(prefix="/users", tags=["users"])


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
def create_user(user_data: UserCreate, db: SessionDep) -> User:
    """Create a user with all aggregates at zero."""
    existing = db.execute(select(User).where(User.handle == user_data.handle)).scalars().first()
    if existing is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Handle '{user_data.handle}' is already taken",
        )
    user = User(handle=user_data.handle)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@router.get("/{user_id}", response_model=UserResponse)
def get_user(user_id: int, db: SessionDep) -> User:
    """Return a user with its stored (possibly drifted) aggregates."""
    user = db.get(User, user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user
