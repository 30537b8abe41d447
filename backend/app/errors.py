"""Domain errors raised by the task store and the sync services.

Routes translate these into HTTP responses; nothing below the route layer
imports FastAPI.
"""


class TodoSyncError(Exception):
    """Base for all backend domain errors."""

    pass


class SyncValidationError(TodoSyncError, ValueError):
    """Malformed or oversized request data. Never retried server-side."""

    pass


class InvalidResolutionError(SyncValidationError):
    """Conflict resolution value outside use_server/use_client."""

    def __init__(self, resolution: object):
        self.resolution = resolution
        super().__init__(f"Invalid conflict resolution: {resolution!r}")


class VersionMismatchError(TodoSyncError):
    """Optimistic-concurrency check failed on a direct update."""

    def __init__(self, task_id: int, expected_version: int, current_version: int):
        self.task_id = task_id
        self.expected_version = expected_version
        self.current_version = current_version
        super().__init__(
            f"Version conflict on task {task_id}: "
            f"expected version {expected_version}, found {current_version}"
        )


class DuplicateClientIdError(TodoSyncError):
    """Another task already owns this client_id for the same user."""

    def __init__(self, client_id: str):
        self.client_id = client_id
        super().__init__(f"client_id already in use: {client_id}")


class DuplicateEmailError(TodoSyncError):
    """Registration attempted with an email that already exists."""

    pass


class StoreError(TodoSyncError):
    """Raised by store implementations on storage failures."""

    pass
