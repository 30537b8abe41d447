"""Export and import of a user's tasks.

Export covers the active tasks, as CSV or as the rows behind the JSON export
document. Import creates fresh tasks from wire payloads; rows that fail
validation are skipped and reported, the rest are stored.
"""

import csv
import io
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, List

from pydantic import ValidationError

from .errors import DuplicateClientIdError, StoreError, SyncValidationError
from .logging_config import get_logger
from .models import TaskPayload, describe_validation_error
from .stores.base import TaskRecord, TaskStore
from .timeutils import to_iso

logger = get_logger("todosync.transfer")

EXPORT_FORMATS = ("json", "csv")

CSV_COLUMNS = [
    "ID",
    "Title",
    "Description",
    "Priority",
    "Category",
    "Tags",
    "Completed",
    "Due Date",
    "Created At",
    "Updated At",
]

# Only this many row errors are returned to the caller
MAX_REPORTED_ERRORS = 20


@dataclass
class ImportResult:
    """Outcome of an import."""

    total: int = 0
    imported: List[TaskRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def skipped(self) -> int:
        return self.total - len(self.imported)


def export_csv(tasks: Iterable[TaskRecord]) -> str:
    """Render tasks as CSV with a header row."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_COLUMNS)
    for task in tasks:
        writer.writerow(
            [
                task.id,
                task.title,
                task.description or "",
                task.priority,
                task.category,
                ", ".join(task.tags),
                "Yes" if task.completed else "No",
                to_iso(task.due_date) or "",
                to_iso(task.created_at) or "",
                to_iso(task.updated_at) or "",
            ]
        )
    return buffer.getvalue()


def import_tasks(
    store: TaskStore,
    owner_id: int,
    rows: Any,
    *,
    replace_existing: bool = False,
    max_batch_size: int = 1000,
) -> ImportResult:
    """Create a task for every valid row.

    Imported tasks start fresh: timestamps, versions and deletion flags in
    the rows are ignored. With ``replace_existing`` the owner's active tasks
    are soft-deleted first, so the removal still reaches synced devices.

    Raises:
        SyncValidationError: if ``rows`` is not a list or exceeds ``max_batch_size``.
    """
    if not isinstance(rows, list):
        raise SyncValidationError("todos must be an array")
    if len(rows) > max_batch_size:
        raise SyncValidationError(f"Cannot import more than {max_batch_size} todos at once")

    if replace_existing:
        existing = store.list_tasks(owner_id)
        for task in existing:
            if store.soft_delete_task(owner_id, task) is None:
                logger.warning(f"IMPORT | user={owner_id} | task {task.id} changed, not replaced")
        logger.info(f"IMPORT | user={owner_id} | replaced {len(existing)} existing todos")

    result = ImportResult(total=len(rows))
    for index, raw in enumerate(rows, start=1):
        try:
            payload = TaskPayload.from_wire(raw)
        except (ValidationError, SyncValidationError) as e:
            result.errors.append(f"Row {index}: {describe_validation_error(e)}")
            continue

        fields = replace(payload.to_fields(), mark_deleted=False, client_updated_at=None)
        try:
            record = store.insert_task(owner_id, fields, client_id=payload.client_id)
        except DuplicateClientIdError as e:
            result.errors.append(f"Row {index}: {e}")
            continue
        except StoreError as e:
            logger.error(f"IMPORT | user={owner_id} | row {index} failed: {e}")
            result.errors.append(f"Row {index}: could not be stored")
            continue
        result.imported.append(record)

    logger.info(
        f"IMPORT | user={owner_id} | {len(result.imported)} imported, {result.skipped} skipped"
    )
    return result
