"""Supabase (hosted Postgres) task store.

PostgREST has no multi-statement transactions from the client, so the
compare-and-swap rule is enforced with a ``version`` filter on every
UPDATE: an update that matches zero rows lost a race.
"""

import json
from datetime import datetime
from typing import Any, List, Optional

from postgrest.exceptions import APIError
from supabase import Client

from ..errors import DuplicateClientIdError, DuplicateEmailError, StoreError
from ..logging_config import get_logger
from ..timeutils import advance_timestamp, parse_timestamp, to_iso, utc_now
from .base import TaskFields, TaskRecord, TaskStore, UserRecord

logger = get_logger("todosync.stores.supabase")

USERS_TABLE = "users"
TODOS_TABLE = "todos"

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


def _row_to_user(row: dict) -> UserRecord:
    return UserRecord(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        password_hash=row["password_hash"],
        created_at=parse_timestamp(row.get("created_at")),
        last_sync=parse_timestamp(row.get("last_sync")),
    )


def _decode_tags(raw: Any) -> list:
    if isinstance(raw, list):
        return raw
    if not raw:
        return []
    try:
        tags = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        return []
    return tags if isinstance(tags, list) else []


def _row_to_task(row: dict) -> TaskRecord:
    return TaskRecord(
        id=row["id"],
        user_id=row["user_id"],
        client_id=row.get("client_id"),
        title=row["title"],
        description=row.get("description"),
        completed=bool(row.get("completed")),
        priority=row.get("priority") or "medium",
        category=row.get("category") or "personal",
        due_date=parse_timestamp(row.get("due_date")),
        tags=_decode_tags(row.get("tags")),
        created_at=parse_timestamp(row.get("created_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
        deleted_at=parse_timestamp(row.get("deleted_at")),
        client_updated_at=parse_timestamp(row.get("client_updated_at")),
        version=row.get("version") or 1,
    )


def _fields_to_row(fields: TaskFields) -> dict:
    return {
        "title": fields.title,
        "description": fields.description,
        "completed": fields.completed,
        "priority": fields.priority,
        "category": fields.category,
        "due_date": to_iso(fields.due_date),
        "tags": json.dumps(list(fields.tags)),
        "client_updated_at": to_iso(fields.client_updated_at),
    }


class SupabaseTaskStore(TaskStore):
    """Task store backed by Supabase tables ``users`` and ``todos``."""

    def __init__(self, client: Client):
        self.client = client

    # === Users ===

    def create_user(self, email: str, name: str, password_hash: str) -> UserRecord:
        data = {
            "email": email,
            "name": name,
            "password_hash": password_hash,
            "created_at": to_iso(utc_now()),
        }
        try:
            result = self.client.table(USERS_TABLE).insert(data).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                raise DuplicateEmailError(f"Email already registered: {email}") from e
            raise StoreError(f"Failed to create user: {e.message}") from e
        if not result.data:
            raise StoreError("Failed to create user: empty response")
        return _row_to_user(result.data[0])

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        result = self.client.table(USERS_TABLE).select("*").eq("id", user_id).limit(1).execute()
        return _row_to_user(result.data[0]) if result.data else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        result = self.client.table(USERS_TABLE).select("*").eq("email", email).limit(1).execute()
        return _row_to_user(result.data[0]) if result.data else None

    def set_last_sync(self, user_id: int, when: datetime) -> None:
        self.client.table(USERS_TABLE).update({"last_sync": to_iso(when)}).eq(
            "id", user_id
        ).execute()

    # === Tasks ===

    def get_task(self, owner_id: int, task_id: int) -> Optional[TaskRecord]:
        result = (
            self.client.table(TODOS_TABLE)
            .select("*")
            .eq("id", task_id)
            .eq("user_id", owner_id)
            .limit(1)
            .execute()
        )
        return _row_to_task(result.data[0]) if result.data else None

    def get_task_by_client_id(self, owner_id: int, client_id: str) -> Optional[TaskRecord]:
        result = (
            self.client.table(TODOS_TABLE)
            .select("*")
            .eq("client_id", client_id)
            .eq("user_id", owner_id)
            .limit(1)
            .execute()
        )
        return _row_to_task(result.data[0]) if result.data else None

    def insert_task(
        self, owner_id: int, fields: TaskFields, client_id: Optional[str] = None
    ) -> TaskRecord:
        now = to_iso(utc_now())
        row = {
            **_fields_to_row(fields),
            "user_id": owner_id,
            "client_id": client_id,
            "created_at": now,
            "updated_at": now,
            "deleted_at": now if fields.mark_deleted else None,
            "version": 1,
        }
        try:
            result = self.client.table(TODOS_TABLE).insert(row).execute()
        except APIError as e:
            if e.code == UNIQUE_VIOLATION and client_id is not None:
                raise DuplicateClientIdError(client_id) from e
            raise StoreError(f"Failed to insert task: {e.message}") from e
        if not result.data:
            raise StoreError("Failed to insert task: empty response")
        return _row_to_task(result.data[0])

    def _compare_and_swap(self, owner_id: int, current: TaskRecord, changes: dict) -> Optional[TaskRecord]:
        result = (
            self.client.table(TODOS_TABLE)
            .update({**changes, "version": current.version + 1})
            .eq("id", current.id)
            .eq("user_id", owner_id)
            .eq("version", current.version)
            .execute()
        )
        if not result.data:
            logger.debug(f"CAS miss on task {current.id} at version {current.version}")
            return None
        return _row_to_task(result.data[0])

    def update_task_if_version(
        self, owner_id: int, current: TaskRecord, fields: TaskFields
    ) -> Optional[TaskRecord]:
        updated_at = advance_timestamp(current.updated_at)
        deleted_at = current.deleted_at or (updated_at if fields.mark_deleted else None)
        changes = {
            **_fields_to_row(fields),
            "updated_at": to_iso(updated_at),
            "deleted_at": to_iso(deleted_at),
        }
        return self._compare_and_swap(owner_id, current, changes)

    def soft_delete_task(self, owner_id: int, current: TaskRecord) -> Optional[TaskRecord]:
        updated_at = advance_timestamp(current.updated_at)
        changes = {
            "updated_at": to_iso(updated_at),
            "deleted_at": to_iso(current.deleted_at or updated_at),
            "client_updated_at": None,
        }
        return self._compare_and_swap(owner_id, current, changes)

    def list_tasks(self, owner_id: int) -> List[TaskRecord]:
        result = (
            self.client.table(TODOS_TABLE)
            .select("*")
            .eq("user_id", owner_id)
            .is_("deleted_at", "null")
            .order("updated_at", desc=True)
            .execute()
        )
        return [_row_to_task(row) for row in result.data or []]

    def changed_since(self, owner_id: int, since: Optional[datetime]) -> List[TaskRecord]:
        query = self.client.table(TODOS_TABLE).select("*").eq("user_id", owner_id)
        if since is not None:
            query = query.gt("updated_at", to_iso(since))
        result = query.order("updated_at").order("id").execute()
        return [_row_to_task(row) for row in result.data or []]

    def count_tasks(self, owner_id: int) -> int:
        result = (
            self.client.table(TODOS_TABLE)
            .select("id", count="exact")
            .eq("user_id", owner_id)
            .is_("deleted_at", "null")
            .execute()
        )
        return result.count or 0

    def ping(self) -> None:
        self.client.table(USERS_TABLE).select("id").limit(1).execute()
