"""API endpoint modules for version 1."""

from .comments import router as comments_router
from .counts import router as counts_router
from .likes import router as likes_router
from .posts import router as posts_router
from .reconcile import router as reconcile_router
from .system import router as system_router
from .users import router as users_router

__all__ = [
    "comments_router",
    "counts_router",
    "likes_router",
    "posts_router",
    "reconcile_router",
    "system_router",
    "users_router",
]
