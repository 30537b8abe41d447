"""Sync routes for offline-first task synchronization."""

from datetime import datetime
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..auth import CurrentUser
from ..config import Settings, get_settings
from ..database import Database
from ..errors import StoreError, SyncValidationError
from ..logging_config import get_logger
from ..models import (
    ProcessedItem,
    ResolveConflictRequest,
    ResolveConflictResponse,
    SyncConflictOut,
    SyncDownloadResponse,
    SyncStatusResponse,
    SyncUploadRequest,
    SyncUploadResponse,
    TaskOut,
)
from ..sync import USE_SERVER, download, resolve, upload
from ..timeutils import utc_now

logger = get_logger("todosync.sync")
router = APIRouter(prefix="/sync", tags=["sync"])


@router.post("/upload", response_model=SyncUploadResponse)
async def upload_changes(
    request: SyncUploadRequest,
    auth: CurrentUser,
    db: Database,
    settings: Annotated[Settings, Depends(get_settings)],
):
    """
    Upload the client's task set.

    Each item is created, updated, or reported as a conflict. Conflicts and
    per-item processing errors are returned as data; the call itself succeeds.
    """
    try:
        result = await upload(
            db,
            auth.user_id,
            request.todos,
            max_batch_size=settings.sync_max_batch_size,
            tie_break=settings.sync_tie_break,
        )
    except SyncValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    return SyncUploadResponse(
        processed=[
            ProcessedItem(client_id=p.client_id, server_id=p.server_id, action=p.action)
            for p in result.processed
        ],
        conflicts=[
            SyncConflictOut(
                client_id=c.client_id,
                conflict_type=c.conflict_type,
                server_todo=TaskOut.from_record(c.server_task) if c.server_task else None,
                client_todo=c.client_task,
                error=c.error,
                error_category=c.error_category,
            )
            for c in result.conflicts
        ],
        timestamp=result.timestamp,
    )


@router.get("/download", response_model=SyncDownloadResponse)
async def download_changes(
    auth: CurrentUser,
    db: Database,
    since: Annotated[Optional[datetime], Query()] = None,
):
    """
    Download tasks changed since the given timestamp.

    - Initial sync: omit ``since`` to get every task
    - Incremental sync: ``since`` = the timestamp returned by the last download
    """
    result = await download(db, auth.user_id, since)
    return SyncDownloadResponse(
        todos=[TaskOut.from_record(task) for task in result.tasks],
        timestamp=result.timestamp,
    )


@router.post("/resolve-conflict", response_model=ResolveConflictResponse)
async def resolve_conflict(
    request: ResolveConflictRequest,
    auth: CurrentUser,
    db: Database,
):
    """Apply the user's choice (use_server / use_client) for one conflict."""
    try:
        applied = await resolve(db, auth.user_id, request.client_id, request.resolution, request.todo_data)
    except SyncValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreError as e:
        logger.error(f"Conflict resolution failed for {auth.user_id}/{request.client_id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Task changed during resolution, retry",
        )

    if request.resolution == USE_SERVER:
        message = "server version kept"
    elif applied:
        message = "client version applied"
    else:
        # The task vanished after detection; nothing left to overwrite
        logger.info(f"Conflict resolution for {auth.user_id}/{request.client_id} was a no-op")
        message = "task no longer exists, nothing applied"
    return ResolveConflictResponse(message=f"Conflict resolved: {message}")


@router.get("/status", response_model=SyncStatusResponse)
async def get_sync_status(auth: CurrentUser, db: Database):
    """Last upload time, active task count and the server clock."""
    user = db.get_user(auth.user_id)
    return SyncStatusResponse(
        last_sync=user.last_sync if user else None,
        todo_count=db.count_tasks(auth.user_id),
        server_time=utc_now(),
    )
