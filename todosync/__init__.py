"""todosync - offline-first todo client with server reconciliation."""

from todosync.client import ApiClient
from todosync.errors import (
    ApiError,
    AuthenticationError,
    ConflictsPending,
    TodoSyncClientError,
    TransientError,
)
from todosync.models import LocalTask
from todosync.storage import LocalStorage
from todosync.sync_engine import ReconciliationEngine, SyncConflict, SyncResult, SyncState

__version__ = "0.1.0"

__all__ = [
    "ApiClient",
    "ApiError",
    "AuthenticationError",
    "ConflictsPending",
    "LocalStorage",
    "LocalTask",
    "ReconciliationEngine",
    "SyncConflict",
    "SyncResult",
    "SyncState",
    "TodoSyncClientError",
    "TransientError",
]
