"""Task store implementations."""

from .base import (
    CATEGORIES,
    DEFAULT_CATEGORY,
    DEFAULT_PRIORITY,
    PRIORITIES,
    TaskFields,
    TaskRecord,
    TaskStore,
    UserRecord,
)
from .sqlite import SQLiteTaskStore

__all__ = [
    "CATEGORIES",
    "DEFAULT_CATEGORY",
    "DEFAULT_PRIORITY",
    "PRIORITIES",
    "SQLiteTaskStore",
    "TaskFields",
    "TaskRecord",
    "TaskStore",
    "UserRecord",
]
