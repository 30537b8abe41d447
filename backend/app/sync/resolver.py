"""Explicit resolution of an upload conflict."""

from typing import Any, Optional

from pydantic import ValidationError

from ..errors import InvalidResolutionError, StoreError, SyncValidationError
from ..logging_config import get_logger, log_sync_operation
from ..models import TaskPayload
from ..stores.base import TaskStore

logger = get_logger("todosync.sync.resolver")

USE_SERVER = "use_server"
USE_CLIENT = "use_client"
RESOLUTIONS = (USE_SERVER, USE_CLIENT)

MAX_RESOLVE_ATTEMPTS = 3


async def resolve(
    store: TaskStore,
    owner_id: int,
    client_id: str,
    resolution: Any,
    client_task_data: Optional[dict] = None,
) -> bool:
    """Apply the user's choice for the conflict on ``client_id``.

    ``use_server`` never writes. ``use_client`` overwrites the stored task's
    mutable fields with ``client_task_data``; if the task is gone the call is
    a no-op.

    Returns:
        True if the store was written, False otherwise.

    Raises:
        InvalidResolutionError: for a resolution other than use_server/use_client.
        SyncValidationError: if ``use_client`` data is missing or malformed.
    """
    if resolution not in RESOLUTIONS:
        raise InvalidResolutionError(resolution)

    if resolution == USE_SERVER:
        log_sync_operation(owner_id, "resolve:use_server", client_id, None, True)
        return False

    if client_task_data is None:
        raise SyncValidationError("todo_data is required for use_client")
    try:
        payload = TaskPayload.from_wire(client_task_data)
    except ValidationError as e:
        raise SyncValidationError(f"Invalid todo_data: {e.error_count()} invalid field(s)") from e
    fields = payload.to_fields()

    for _ in range(MAX_RESOLVE_ATTEMPTS):
        current = store.get_task_by_client_id(owner_id, client_id)
        if current is None:
            logger.info(f"RESOLVE | user={owner_id} | client_id={client_id} | task gone, nothing to do")
            return False
        record = store.update_task_if_version(owner_id, current, fields)
        if record is not None:
            log_sync_operation(owner_id, "resolve:use_client", client_id, record.id, True)
            return True

    raise StoreError(f"Task {client_id} kept changing during conflict resolution")
