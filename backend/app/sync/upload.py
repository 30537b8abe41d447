"""Sync upload: apply a client's task batch to the store.

Items are processed in order and independently. Each one ends up in exactly
one of two lists: ``processed`` (created or updated) or ``conflicts``
(update conflict or processing error). A failing item never aborts the batch.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional

from pydantic import ValidationError

from ..errors import DuplicateClientIdError, StoreError, SyncValidationError
from ..logging_config import get_logger, log_sync_operation
from ..models import TaskPayload, describe_validation_error
from ..stores.base import TaskRecord, TaskStore
from ..timeutils import utc_now
from .detector import SyncAction, TieBreak, detect, find_current

logger = get_logger("todosync.sync.upload")

# CAS misses and client_id races are retried this many times per item
MAX_APPLY_ATTEMPTS = 3

UPDATE_CONFLICT = "update_conflict"
PROCESSING_ERROR = "processing_error"


@dataclass
class ProcessedEntry:
    client_id: Optional[str]
    server_id: int
    action: str  # "created" | "updated"


@dataclass
class ConflictEntry:
    client_id: Optional[str]
    conflict_type: str  # "update_conflict" | "processing_error"
    client_task: Any = None
    server_task: Optional[TaskRecord] = None
    error: Optional[str] = None
    error_category: Optional[str] = None  # "validation" | "server"


@dataclass
class UploadResult:
    processed: List[ProcessedEntry] = field(default_factory=list)
    conflicts: List[ConflictEntry] = field(default_factory=list)
    timestamp: Optional[datetime] = None


def _raw_client_id(raw: Any) -> Optional[str]:
    if not isinstance(raw, dict):
        return None
    value = raw.get("client_id", raw.get("clientId"))
    return str(value) if value not in (None, "") else None


def _apply_item(
    store: TaskStore,
    owner_id: int,
    incoming: TaskPayload,
    raw: Any,
    tie_break: TieBreak,
) -> ProcessedEntry | ConflictEntry:
    """Detect and apply one task. Retries when a concurrent writer wins the race."""
    fields = incoming.to_fields()
    for attempt in range(1, MAX_APPLY_ATTEMPTS + 1):
        current = find_current(store, owner_id, incoming)
        detection = detect(incoming, current, tie_break)

        if detection.action is SyncAction.CONFLICT:
            server_task = None if detection.current.is_deleted else detection.current
            return ConflictEntry(
                client_id=incoming.client_id,
                conflict_type=UPDATE_CONFLICT,
                client_task=raw,
                server_task=server_task,
            )

        if detection.action is SyncAction.CREATE:
            try:
                record = store.insert_task(owner_id, fields, client_id=incoming.client_id)
            except DuplicateClientIdError:
                logger.debug(
                    f"client_id {incoming.client_id} inserted concurrently, retrying "
                    f"(attempt {attempt})"
                )
                continue
            return ProcessedEntry(incoming.client_id, record.id, SyncAction.CREATE.value)

        record = store.update_task_if_version(owner_id, detection.current, fields)
        if record is None:
            logger.debug(
                f"Task {detection.current.id} changed during upload, retrying (attempt {attempt})"
            )
            continue
        return ProcessedEntry(incoming.client_id, record.id, SyncAction.UPDATE.value)

    raise StoreError(f"Task kept changing during upload after {MAX_APPLY_ATTEMPTS} attempts")


async def upload(
    store: TaskStore,
    owner_id: int,
    batch: Any,
    *,
    max_batch_size: int = 1000,
    tie_break: TieBreak = "client",
) -> UploadResult:
    """Process an uploaded batch for ``owner_id``.

    Raises:
        SyncValidationError: if ``batch`` is not a list or exceeds ``max_batch_size``.
    """
    if not isinstance(batch, list):
        raise SyncValidationError("todos must be an array")
    if len(batch) > max_batch_size:
        raise SyncValidationError(
            f"Too many todos in one upload: {len(batch)} (max {max_batch_size})"
        )

    logger.info(f"UPLOAD | user={owner_id} | {len(batch)} todos")
    result = UploadResult()

    for raw in batch:
        client_id = _raw_client_id(raw)
        try:
            incoming = TaskPayload.from_wire(raw)
            entry = _apply_item(store, owner_id, incoming, raw, tie_break)
        except (ValidationError, SyncValidationError) as e:
            message = describe_validation_error(e)
            log_sync_operation(owner_id, "upload", client_id, None, False, message)
            result.conflicts.append(
                ConflictEntry(
                    client_id=client_id,
                    conflict_type=PROCESSING_ERROR,
                    client_task=raw,
                    error=message,
                    error_category="validation",
                )
            )
            continue
        except Exception as e:
            # Full detail stays in the server log; the client gets a generic message
            logger.error(f"Store error while uploading client_id={client_id}: {e}", exc_info=True)
            log_sync_operation(owner_id, "upload", client_id, None, False, str(e))
            result.conflicts.append(
                ConflictEntry(
                    client_id=client_id,
                    conflict_type=PROCESSING_ERROR,
                    client_task=raw,
                    error="Server error: task could not be saved",
                    error_category="server",
                )
            )
            continue

        if isinstance(entry, ConflictEntry):
            server_id = entry.server_task.id if entry.server_task else None
            log_sync_operation(owner_id, "conflict", entry.client_id, server_id, False, "server copy is newer")
            result.conflicts.append(entry)
        else:
            log_sync_operation(owner_id, entry.action, entry.client_id, entry.server_id, True)
            result.processed.append(entry)

    result.timestamp = utc_now()
    store.set_last_sync(owner_id, result.timestamp)

    logger.info(
        f"UPLOAD COMPLETE | user={owner_id} | processed={len(result.processed)} "
        f"conflicts={len(result.conflicts)}"
    )
    return result
