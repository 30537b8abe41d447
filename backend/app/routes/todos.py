"""Direct (non-sync) task CRUD, search, stats, export and import."""

from dataclasses import replace
from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from fastapi.responses import JSONResponse

from ..auth import CurrentUser
from ..config import Settings, get_settings
from ..database import Database
from ..errors import DuplicateClientIdError, SyncValidationError, VersionMismatchError
from ..logging_config import get_logger
from ..models import (
    ExportInfo,
    ExportUser,
    ImportSummary,
    TaskOut,
    TodoCreate,
    TodoExport,
    TodoImportRequest,
    TodoImportResponse,
    TodoSearchResponse,
    TodoStats,
    TodoToggle,
    TodoUpdate,
)
from ..stores.base import TaskFields, TaskRecord, TaskStore
from ..timeutils import to_utc, utc_now
from ..todo_queries import MAX_PAGE_SIZE, SearchQuery, search_tasks, task_stats
from ..transfer import EXPORT_FORMATS, MAX_REPORTED_ERRORS, export_csv, import_tasks

logger = get_logger("todosync.todos")
router = APIRouter(prefix="/todos", tags=["todos"])


def _get_active(db: TaskStore, owner_id: int, todo_id: int) -> TaskRecord:
    task = db.get_task(owner_id, todo_id)
    if task is None or task.is_deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Todo not found")
    return task


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    return to_utc(value) if value is not None else None


def _version_conflict(task_id: int, expected: int, current: int) -> HTTPException:
    error = VersionMismatchError(task_id, expected, current)
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"error": str(error), "current_version": current},
    )


def _write(db: TaskStore, owner_id: int, current: TaskRecord, fields: TaskFields) -> TaskRecord:
    record = db.update_task_if_version(owner_id, current, fields)
    if record is None:
        latest = db.get_task(owner_id, current.id)
        raise _version_conflict(current.id, current.version, latest.version if latest else current.version)
    return record


@router.get("", response_model=list[TaskOut])
async def list_todos(
    auth: CurrentUser,
    db: Database,
    since: Annotated[Optional[datetime], Query()] = None,
):
    """Active tasks, most recently updated first. ``since`` limits to newer changes."""
    tasks = db.list_tasks(auth.user_id)
    if since is not None:
        since = to_utc(since)
        tasks = [t for t in tasks if t.updated_at and t.updated_at > since]
    return [TaskOut.from_record(t) for t in tasks]


@router.get("/stats", response_model=TodoStats)
async def get_stats(auth: CurrentUser, db: Database):
    return TodoStats(**task_stats(db.list_tasks(auth.user_id)))


@router.get("/search", response_model=TodoSearchResponse)
async def search_todos(
    auth: CurrentUser,
    db: Database,
    q: Optional[str] = None,
    priority: Optional[str] = None,
    category: Optional[str] = None,
    completed: Optional[bool] = None,
    tags: Annotated[Optional[str], Query(description="Comma-separated, all must match")] = None,
    due_after: Optional[datetime] = None,
    due_before: Optional[datetime] = None,
    created_after: Optional[datetime] = None,
    created_before: Optional[datetime] = None,
    overdue: bool = False,
    sort_by: Annotated[str, Query(alias="sortBy")] = "created_at",
    sort_order: Annotated[str, Query(alias="sortOrder")] = "desc",
    page: Annotated[int, Query(ge=1)] = 1,
    limit: Annotated[int, Query(ge=1, le=MAX_PAGE_SIZE)] = 20,
):
    """
    Search active tasks.

    Text matches title, description and tags (case-insensitive). Results are
    sorted by ``sortBy`` (created_at, updated_at, title, priority, due_date,
    completed) and paged.
    """
    query = SearchQuery(
        q=q,
        priority=priority,
        category=category,
        completed=completed,
        tags=[t.strip() for t in tags.split(",") if t.strip()] if tags else None,
        due_after=_aware(due_after),
        due_before=_aware(due_before),
        created_after=_aware(created_after),
        created_before=_aware(created_before),
        overdue=overdue,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        limit=limit,
    )
    try:
        results, total = search_tasks(db.list_tasks(auth.user_id), query)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return TodoSearchResponse(
        todos=[TaskOut.from_record(t) for t in results],
        total=total,
        page=page,
        limit=limit,
        total_pages=(total + limit - 1) // limit,
    )


@router.get("/export")
async def export_todos(
    auth: CurrentUser,
    db: Database,
    export_format: Annotated[str, Query(alias="format")] = "json",
):
    """
    Download the user's active tasks as an attachment.

    - ``format=json``: summary counts, the user and every task
    - ``format=csv``: one row per task with a header row
    """
    if export_format not in EXPORT_FORMATS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail='Format must be either "json" or "csv"',
        )
    user = db.get_user(auth.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    tasks = db.list_tasks(auth.user_id)
    now = utc_now()
    filename = f"todos-export-{auth.user_id}-{now.date().isoformat()}.{export_format}"
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    logger.info(f"EXPORT | user={auth.user_id} | format={export_format} | {len(tasks)} todos")

    if export_format == "csv":
        return Response(content=export_csv(tasks), media_type="text/csv", headers=headers)

    completed = sum(1 for t in tasks if t.completed)
    document = TodoExport(
        export_info=ExportInfo(
            timestamp=now,
            user_id=user.id,
            user_email=user.email,
            total_todos=len(tasks),
            completed_todos=completed,
            pending_todos=len(tasks) - completed,
        ),
        user=ExportUser(id=user.id, name=user.name, email=user.email, created_at=user.created_at),
        todos=[TaskOut.from_record(t) for t in tasks],
    )
    return JSONResponse(content=document.model_dump(mode="json"), headers=headers)


@router.post("/import", response_model=TodoImportResponse, status_code=status.HTTP_201_CREATED)
async def import_todos(
    request: TodoImportRequest,
    response: Response,
    auth: CurrentUser,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """
    Create tasks from an uploaded list.

    Invalid rows are skipped and reported; the call then answers 206 instead
    of 201. ``replace_existing`` soft-deletes the current tasks first.
    """
    try:
        result = import_tasks(
            db,
            auth.user_id,
            request.todos,
            replace_existing=request.replace_existing,
            max_batch_size=settings.sync_max_batch_size,
        )
    except SyncValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if result.errors:
        response.status_code = status.HTTP_206_PARTIAL_CONTENT
        message = f"Import completed with {len(result.errors)} errors"
    else:
        message = "Import completed successfully"
    return TodoImportResponse(
        message=message,
        summary=ImportSummary(
            total_processed=result.total,
            imported=len(result.imported),
            skipped=result.skipped,
            has_errors=bool(result.errors),
        ),
        errors=result.errors[:MAX_REPORTED_ERRORS],
    )


@router.get("/{todo_id}", response_model=TaskOut)
async def get_todo(todo_id: int, auth: CurrentUser, db: Database):
    return TaskOut.from_record(_get_active(db, auth.user_id, todo_id))


@router.post("", response_model=TaskOut, status_code=status.HTTP_201_CREATED)
async def create_todo(todo: TodoCreate, auth: CurrentUser, db: Database):
    """Create a task directly. It gets a server id immediately."""
    fields = TaskFields(
        title=todo.title,
        description=todo.description,
        priority=todo.priority,
        category=todo.category,
        due_date=todo.due_date,
        tags=list(dict.fromkeys(todo.tags)),
    )
    try:
        record = db.insert_task(auth.user_id, fields, client_id=todo.client_id)
    except DuplicateClientIdError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    logger.info(f"CREATE | user={auth.user_id} | id={record.id}")
    return TaskOut.from_record(record)


@router.put("/{todo_id}", response_model=TaskOut)
async def update_todo(todo_id: int, update: TodoUpdate, auth: CurrentUser, db: Database):
    """
    Update a task.

    When ``version`` is given it must match the stored version (409 otherwise).
    """
    current = _get_active(db, auth.user_id, todo_id)
    if update.version is not None and update.version != current.version:
        raise _version_conflict(todo_id, update.version, current.version)

    changes = update.model_dump(exclude_unset=True, exclude={"version"})
    if changes.get("title", "") is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="title cannot be null")
    if "tags" in changes:
        changes["tags"] = list(dict.fromkeys(changes["tags"] or []))
    for key in ("priority", "category", "completed"):
        if key in changes and changes[key] is None:
            del changes[key]

    record = _write(db, auth.user_id, current, replace(current.fields(), **changes))
    logger.info(f"UPDATE | user={auth.user_id} | id={record.id} | version={record.version}")
    return TaskOut.from_record(record)


@router.patch("/{todo_id}/toggle", response_model=TaskOut)
async def toggle_todo(
    todo_id: int,
    auth: CurrentUser,
    db: Database,
    toggle: Optional[TodoToggle] = None,
):
    """Set ``completed`` (flips it when no body is sent)."""
    current = _get_active(db, auth.user_id, todo_id)
    completed = toggle.completed if toggle is not None else not current.completed
    record = _write(db, auth.user_id, current, replace(current.fields(), completed=completed))
    return TaskOut.from_record(record)


@router.delete("/{todo_id}")
async def delete_todo(todo_id: int, auth: CurrentUser, db: Database):
    """Soft-delete a task so the deletion reaches other devices on download."""
    current = _get_active(db, auth.user_id, todo_id)
    if db.soft_delete_task(auth.user_id, current) is None:
        latest = db.get_task(auth.user_id, todo_id)
        raise _version_conflict(todo_id, current.version, latest.version if latest else current.version)
    logger.info(f"DELETE | user={auth.user_id} | id={todo_id}")
    return {"message": "Todo deleted successfully", "id": todo_id}
