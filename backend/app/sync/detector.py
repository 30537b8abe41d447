"""Conflict detection for uploaded tasks.

An incoming copy is ordered against the stored task's conflict stamp: the
``updated_at`` its last sync writer asserted, or the server clock for writes
that carried none. A client may never have seen a server-assigned version, so
timestamps are the only signal both sides share.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Literal, Optional

from ..models import TaskPayload
from ..stores.base import TaskRecord, TaskStore

TieBreak = Literal["client", "server"]


class SyncAction(str, Enum):
    """Outcome of comparing an incoming task with the stored one."""

    CREATE = "created"
    UPDATE = "updated"
    CONFLICT = "conflict"


@dataclass
class Detection:
    action: SyncAction
    current: Optional[TaskRecord] = None


def find_current(store: TaskStore, owner_id: int, incoming: TaskPayload) -> Optional[TaskRecord]:
    """Locate the stored version of an incoming task: client_id first, then server id."""
    current = None
    if incoming.client_id:
        current = store.get_task_by_client_id(owner_id, incoming.client_id)
    if current is None and incoming.id is not None:
        current = store.get_task(owner_id, incoming.id)
    return current


def detect(
    incoming: TaskPayload,
    current: Optional[TaskRecord],
    tie_break: TieBreak = "client",
) -> Detection:
    """Decide CREATE, UPDATE or CONFLICT for one incoming task.

    - No stored task: CREATE.
    - Stored task newer than the client's ``updated_at``: CONFLICT.
    - Missing/unparsable client ``updated_at``: treated as older than anything,
      so CONFLICT whenever a stored task exists.
    - Equal timestamps: UPDATE when ``tie_break`` is "client", else CONFLICT
      unless the client holds the current ``version`` (it is echoing the
      stored copy back).
    """
    if current is None:
        return Detection(SyncAction.CREATE)

    client_updated = incoming.updated_at
    server_updated = current.conflict_stamp
    if client_updated is None:
        return Detection(SyncAction.CONFLICT, current)
    if server_updated is None:
        return Detection(SyncAction.UPDATE, current)

    if server_updated > client_updated:
        return Detection(SyncAction.CONFLICT, current)
    if server_updated == client_updated and tie_break == "server":
        if incoming.version != current.version:
            return Detection(SyncAction.CONFLICT, current)
    return Detection(SyncAction.UPDATE, current)
