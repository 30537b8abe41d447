"""Client reconciliation engine.

One sync cycle:

    Idle -> Uploading -> (conflicts?) AwaitingResolution
                      -> Downloading -> Idle

Uploading sends the full local task set. Any conflict halts the cycle before
download; once every conflict is resolved the cycle restarts from Uploading.
Downloading merges server tasks with local tasks the server has not
acknowledged, rewrites ids of newly created tasks and advances the
checkpoint, all in one local transaction. A network failure or cancellation
anywhere returns to Idle with the checkpoint and local data unchanged.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .client import ApiClient
from .errors import ConflictsPending, TodoSyncClientError
from .logging_config import log_sync_cycle
from .models import LocalTask, parse_datetime, touch
from .storage import LocalStorage

logger = logging.getLogger(__name__)

USE_SERVER = "use_server"
USE_CLIENT = "use_client"
RESOLUTIONS = (USE_SERVER, USE_CLIENT)

# Upload attempts per cycle when a conflict policy keeps resolving conflicts
MAX_POLICY_ROUNDS = 3


class SyncState(str, Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    AWAITING_RESOLUTION = "awaiting_resolution"
    DOWNLOADING = "downloading"


@dataclass
class SyncConflict:
    """A conflict reported by the server for one uploaded task."""

    client_id: Optional[str]
    conflict_type: str  # "update_conflict" | "processing_error"
    server_task: Optional[Dict[str, Any]] = None  # None if deleted on the server
    client_task: Any = None
    error: Optional[str] = None
    error_category: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "SyncConflict":
        return cls(
            client_id=data.get("client_id"),
            conflict_type=data.get("conflict_type", "update_conflict"),
            server_task=data.get("server_todo"),
            client_task=data.get("client_todo"),
            error=data.get("error"),
            error_category=data.get("error_category"),
        )


@dataclass
class SyncResult:
    """Outcome of one sync cycle."""

    state: SyncState = SyncState.IDLE
    uploaded: int = 0
    created: int = 0
    downloaded: int = 0
    conflicts: List[SyncConflict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    checkpoint: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.errors and not self.conflicts


# Given a conflict, return "use_server", "use_client", or None to leave it to the user
ConflictPolicy = Callable[[SyncConflict], Optional[str]]


class SyncCancelled(TodoSyncClientError):
    """The cycle was cancelled by the caller."""

    pass


def merge_tasks(
    local_tasks: List[LocalTask],
    processed: List[Dict[str, Any]],
    server_tasks: List[Dict[str, Any]],
    uploaded: Optional[Dict[str, LocalTask]] = None,
) -> List[LocalTask]:
    """Build the post-sync replica.

    Result = server tasks + local tasks whose client_id was neither
    acknowledged in ``processed`` nor matched by a returned server task.
    Local tasks created by this upload get their new server id.

    ``uploaded`` is the replica as it was sent. A local task that differs
    from it (added or edited after the upload) is kept over any server copy
    and goes out with the next upload.
    """
    changed = set()
    if uploaded is not None:
        changed = {t.client_id for t in local_tasks if uploaded.get(t.client_id) != t}

    created_ids = {
        p["client_id"]: p["server_id"]
        for p in processed
        if p.get("action") == "created" and p.get("client_id")
    }
    local_tasks = [
        replace(task, server_id=created_ids[task.client_id]) if task.client_id in created_ids else task
        for task in local_tasks
    ]
    by_server_id = {t.server_id: t for t in local_tasks if t.server_id is not None}

    acknowledged = {p.get("client_id") for p in processed if p.get("client_id")}
    matched = set()
    merged: List[LocalTask] = []
    for data in server_tasks:
        client_id = data.get("client_id")
        if not client_id and data.get("id") in by_server_id:
            # Created directly on the server; keep the local key we already use
            client_id = by_server_id[data["id"]].client_id
        task = LocalTask.from_server(data, client_id=client_id)
        matched.add(task.client_id)
        if task.client_id not in changed:
            merged.append(task)

    for task in local_tasks:
        if task.client_id in changed:
            merged.append(task)
        elif task.client_id not in acknowledged and task.client_id not in matched:
            merged.append(task)
    return merged


class ReconciliationEngine:
    """Runs sync cycles between a LocalStorage replica and the backend.

    Args:
        storage: The local replica.
        client: API client for the backend.
        conflict_policy: Optional callable deciding conflicts automatically.
            Without it every conflict waits for an explicit resolution.
    """

    def __init__(
        self,
        storage: LocalStorage,
        client: ApiClient,
        conflict_policy: Optional[ConflictPolicy] = None,
    ):
        self.storage = storage
        self.client = client
        self.conflict_policy = conflict_policy
        self._state = SyncState.IDLE
        self._pending: Dict[str, SyncConflict] = {}
        self._cancel = threading.Event()

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def pending_conflicts(self) -> List[SyncConflict]:
        return list(self._pending.values())

    def cancel(self) -> None:
        """Abort the running cycle at the next step boundary."""
        self._cancel.set()

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise SyncCancelled("Sync cancelled")

    # === Cycle ===

    def sync(self) -> SyncResult:
        """Run one sync cycle.

        Raises:
            ConflictsPending: if a previous cycle is still awaiting resolution.
        """
        if self._state == SyncState.AWAITING_RESOLUTION and self._pending:
            raise ConflictsPending(list(self._pending))
        return self._run_cycle()

    def _run_cycle(self) -> SyncResult:
        result = SyncResult()
        self._cancel.clear()

        if not self.client.is_online():
            logger.info("Offline - sync skipped, local changes kept")
            result.errors.append("Offline - cannot reach backend")
            self._state = SyncState.IDLE
            return result

        try:
            checkpoint = self.storage.get_last_sync()
            for _ in range(MAX_POLICY_ROUNDS):
                processed, conflicts, uploaded = self._upload(checkpoint, result)
                pending, resolved = self._apply_policy(conflicts)
                if pending or not resolved:
                    break
            else:
                raise TodoSyncClientError("Conflict policy did not converge; sync again later")

            if pending:
                self._pending = {c.client_id: c for c in pending}
                self._state = SyncState.AWAITING_RESOLUTION
                result.conflicts = pending
                result.state = self._state
                log_sync_cycle(self._state.value, result.uploaded, 0, len(pending))
                return result

            self._check_cancelled()
            self._state = SyncState.DOWNLOADING
            download = self.client.download_sync(checkpoint)
            self._check_cancelled()

            server_tasks = download.get("todos", [])
            new_checkpoint = parse_datetime(download["timestamp"])
            # Merged against the rows as they are now, not as they were uploaded
            self.storage.merge_replica(
                lambda local_tasks: merge_tasks(local_tasks, processed, server_tasks, uploaded),
                new_checkpoint,
            )

            result.downloaded = len(server_tasks)
            result.checkpoint = new_checkpoint
        except TodoSyncClientError as e:
            logger.warning(f"Sync cycle aborted: {e}")
            result.errors.append(str(e))
            self._state = SyncState.IDLE
            result.state = self._state
            log_sync_cycle("aborted", result.uploaded, 0, 0, error=str(e))
            return result

        self._pending = {}
        self._state = SyncState.IDLE
        result.state = self._state
        log_sync_cycle("complete", result.uploaded, result.downloaded, 0)
        return result

    def _upload(self, checkpoint: Optional[datetime], result: SyncResult):
        self._state = SyncState.UPLOADING
        local_tasks = self.storage.all_tasks()
        response = self.client.upload_sync([t.to_wire() for t in local_tasks], checkpoint)
        self._check_cancelled()

        processed = response.get("processed", [])
        conflicts = [SyncConflict.from_response(c) for c in response.get("conflicts", [])]
        result.uploaded = len(processed)
        result.created = sum(1 for p in processed if p.get("action") == "created")
        logger.debug(f"Uploaded {len(local_tasks)} tasks: {len(processed)} processed, {len(conflicts)} conflicts")
        return processed, conflicts, {t.client_id: t for t in local_tasks}

    def _apply_policy(self, conflicts: List[SyncConflict]) -> tuple[List[SyncConflict], int]:
        """Resolve what the policy decides.

        Returns the conflicts left for the user and how many were resolved.
        """
        if not conflicts or self.conflict_policy is None:
            return conflicts, 0
        remaining = []
        for conflict in conflicts:
            decision = self.conflict_policy(conflict)
            if decision is not None and decision not in RESOLUTIONS:
                logger.warning(f"Conflict policy answered {decision!r} for {conflict.client_id}; left to the user")
                decision = None
            if decision is None or conflict.conflict_type != "update_conflict":
                remaining.append(conflict)
                continue
            self._resolve(conflict, decision)
        return remaining, len(conflicts) - len(remaining)

    # === Resolution ===

    def resolve_conflict(self, client_id: str, resolution: str) -> Optional[SyncResult]:
        """Resolve one pending conflict.

        When it was the last one, the cycle restarts from upload and its
        result is returned; otherwise returns None.
        """
        conflict = self._pending.get(client_id)
        if conflict is None:
            raise KeyError(f"No pending conflict for {client_id}")
        self._resolve(conflict, resolution)
        del self._pending[client_id]

        if self._pending:
            return None
        self._state = SyncState.UPLOADING
        return self._run_cycle()

    def resolve_all(self, resolution: str) -> Optional[SyncResult]:
        """Apply the same resolution to every pending conflict."""
        result = None
        for client_id in list(self._pending):
            result = self.resolve_conflict(client_id, resolution)
        return result

    def _resolve(self, conflict: SyncConflict, resolution: str) -> None:
        if resolution not in RESOLUTIONS:
            raise ValueError(f"resolution must be one of {', '.join(RESOLUTIONS)}")

        local = self.storage.get_task(conflict.client_id) if conflict.client_id else None

        if conflict.conflict_type != "update_conflict":
            # Nothing was stored server-side. use_server discards the local copy
            # that failed; use_client keeps it for another attempt.
            if resolution == USE_SERVER and local is not None:
                self.storage.remove_task(local.client_id)
            logger.info(f"Processing error for {conflict.client_id} resolved: {resolution}")
            return

        if resolution == USE_CLIENT:
            todo_data = local.to_wire() if local else conflict.client_task
            self.client.resolve_conflict(conflict.client_id, USE_CLIENT, todo_data)
            if local is not None:
                # Newer than what the server just recorded, so the re-upload applies
                self.storage.save_task(replace(local, updated_at=touch(local.updated_at)))
        else:
            self.client.resolve_conflict(conflict.client_id, USE_SERVER)
            if conflict.server_task is not None:
                server_copy = LocalTask.from_server(conflict.server_task, client_id=conflict.client_id)
                self.storage.save_task(server_copy)
            elif local is not None and not local.is_deleted:
                # Deleted on the server
                stamp = touch(local.updated_at)
                self.storage.save_task(replace(local, deleted_at=stamp, updated_at=stamp))
        logger.info(f"Resolved conflict for {conflict.client_id}: {resolution}")
