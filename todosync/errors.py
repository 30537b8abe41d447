"""Errors raised by the todosync client."""


class TodoSyncClientError(Exception):
    """Base for all client-side errors."""

    pass


class TransientError(TodoSyncClientError):
    """Network or connectivity failure. Not retried within a sync cycle."""

    pass


class ApiError(TodoSyncClientError):
    """The backend answered with an error status."""

    def __init__(self, status_code: int, detail: object = None):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"Backend returned {status_code}: {detail}")


class AuthenticationError(ApiError):
    """Missing, invalid or expired credentials (401)."""

    def __init__(self, detail: object = None):
        super().__init__(401, detail)


class ConflictsPending(TodoSyncClientError):
    """A sync cycle is waiting for conflicts to be resolved."""

    def __init__(self, client_ids: list):
        self.client_ids = list(client_ids)
        super().__init__(f"{len(self.client_ids)} conflict(s) awaiting resolution")
