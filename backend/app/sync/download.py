"""Sync download: every task changed since a checkpoint, deletions included."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from ..logging_config import get_logger
from ..stores.base import TaskRecord, TaskStore
from ..timeutils import utc_now

logger = get_logger("todosync.sync.download")


@dataclass
class DownloadResult:
    tasks: List[TaskRecord] = field(default_factory=list)
    timestamp: Optional[datetime] = None


async def download(
    store: TaskStore, owner_id: int, since: Optional[datetime] = None
) -> DownloadResult:
    """Return tasks with ``updated_at > since`` in ascending ``updated_at`` order.

    The returned timestamp is the server clock read *before* the query, so a
    write that commits while the query runs is picked up by the next download
    rather than skipped.
    """
    timestamp = utc_now()
    tasks = store.changed_since(owner_id, since)
    deleted = sum(1 for task in tasks if task.is_deleted)
    logger.info(
        f"DOWNLOAD | user={owner_id} | since={since.isoformat() if since else None} | "
        f"{len(tasks)} todos ({deleted} deleted)"
    )
    return DownloadResult(tasks=tasks, timestamp=timestamp)
