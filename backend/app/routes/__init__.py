"""API routes."""

from .auth import router as auth_router
from .sync import router as sync_router
from .todos import router as todos_router

__all__ = [
    "auth_router",
    "sync_router",
    "todos_router",
]
