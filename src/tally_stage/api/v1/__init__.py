"""Version 1 API endpoints."""

from .endpoints import (
    comments_router,
    counts_router,
    likes_router,
    posts_router,
    reconcile_router,
    system_router,
    users_router,
)

__all__ = [
    "comments_router",
    "counts_router",
    "likes_router",
    "posts_router",
    "reconcile_router",
    "system_router",
    "users_router",
]
