"""Task store wiring for FastAPI routes."""

from pathlib import Path
from typing import Annotated

from fastapi import Depends

from .config import Settings, get_settings
from .logging_config import get_logger
from .stores.base import TaskStore
from .stores.sqlite import SQLiteTaskStore

logger = get_logger("todosync.database")

_task_store: TaskStore | None = None


def create_task_store(settings: Settings) -> TaskStore:
    """Build the store selected by ``settings.storage_backend``."""
    if settings.storage_backend == "supabase":
        from supabase import create_client

        from .stores.supabase import SupabaseTaskStore

        if not settings.supabase_url or not settings.supabase_secret_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SECRET_KEY must be set for the supabase backend")
        logger.info(f"Using Supabase task store at {settings.supabase_url}")
        return SupabaseTaskStore(create_client(settings.supabase_url, settings.supabase_secret_key))

    logger.info(f"Using SQLite task store at {settings.database_path}")
    return SQLiteTaskStore(Path(settings.database_path))


def get_task_store(settings: Settings | None = None) -> TaskStore:
    """Get the process-wide task store, creating it on first use."""
    global _task_store
    if _task_store is None:
        if settings is None:
            settings = get_settings()
        _task_store = create_task_store(settings)
    return _task_store


def reset_task_store() -> None:
    """Drop the cached store (used on shutdown and by tests)."""
    global _task_store
    if _task_store is not None:
        _task_store.close()
    _task_store = None


def get_db(settings: Annotated[Settings, Depends(get_settings)]) -> TaskStore:
    """FastAPI dependency for the task store."""
    return get_task_store(settings)


# Type alias for dependency injection
Database = Annotated[TaskStore, Depends(get_db)]
