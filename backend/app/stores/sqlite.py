"""SQLite task store.

Per-operation connections in WAL mode. Compare-and-swap updates are single
UPDATE statements guarded by ``version = ?``, so they are atomic with respect
to any other writer on the same database file.
"""

import contextlib
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from ..errors import DuplicateClientIdError, DuplicateEmailError, StoreError
from ..logging_config import get_logger
from ..timeutils import advance_timestamp, parse_timestamp, to_iso, utc_now
from .base import TaskFields, TaskRecord, TaskStore, UserRecord

logger = get_logger("todosync.stores.sqlite")

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    email TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    created_at TEXT NOT NULL,
    last_sync TEXT
);

CREATE TABLE IF NOT EXISTS todos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL REFERENCES users (id) ON DELETE CASCADE,
    client_id TEXT,
    title TEXT NOT NULL,
    description TEXT,
    completed INTEGER NOT NULL DEFAULT 0,
    priority TEXT NOT NULL DEFAULT 'medium',
    category TEXT NOT NULL DEFAULT 'personal',
    due_date TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    deleted_at TEXT,
    client_updated_at TEXT,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_todos_user_client
    ON todos (user_id, client_id) WHERE client_id IS NOT NULL;
CREATE INDEX IF NOT EXISTS idx_todos_user_updated ON todos (user_id, updated_at);
"""

_TASK_COLUMNS = (
    "id, user_id, client_id, title, description, completed, priority, category, "
    "due_date, tags, created_at, updated_at, deleted_at, client_updated_at, version"
)


class SQLiteTaskStore(TaskStore):
    """Task store backed by a single SQLite database file."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextlib.contextmanager
    def _connect(self):
        """Yield a connection; commit on success, roll back on error, always close."""
        conn = self._get_conn()
        try:
            yield conn
            conn.commit()
        except Exception as e:
            logger.debug(f"Transaction failed, rolling back: {e}")
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(SCHEMA)

    # === Row conversion ===

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> UserRecord:
        return UserRecord(
            id=row["id"],
            email=row["email"],
            name=row["name"],
            password_hash=row["password_hash"],
            created_at=parse_timestamp(row["created_at"]),
            last_sync=parse_timestamp(row["last_sync"]),
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> TaskRecord:
        try:
            tags = json.loads(row["tags"] or "[]")
        except json.JSONDecodeError:
            tags = []
        return TaskRecord(
            id=row["id"],
            user_id=row["user_id"],
            client_id=row["client_id"],
            title=row["title"],
            description=row["description"],
            completed=bool(row["completed"]),
            priority=row["priority"],
            category=row["category"],
            due_date=parse_timestamp(row["due_date"]),
            tags=tags if isinstance(tags, list) else [],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            deleted_at=parse_timestamp(row["deleted_at"]),
            client_updated_at=parse_timestamp(row["client_updated_at"]),
            version=row["version"],
        )

    def _fetch_task(self, conn: sqlite3.Connection, task_id: int) -> Optional[TaskRecord]:
        row = conn.execute(f"SELECT {_TASK_COLUMNS} FROM todos WHERE id = ?", (task_id,)).fetchone()
        return self._row_to_task(row) if row else None

    # === Users ===

    def create_user(self, email: str, name: str, password_hash: str) -> UserRecord:
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    "INSERT INTO users (email, name, password_hash, created_at) VALUES (?, ?, ?, ?)",
                    (email, name, password_hash, to_iso(utc_now())),
                )
                row = conn.execute(
                    "SELECT * FROM users WHERE id = ?", (cursor.lastrowid,)
                ).fetchone()
        except sqlite3.IntegrityError as e:
            raise DuplicateEmailError(f"Email already registered: {email}") from e
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return self._row_to_user(row) if row else None

    def set_last_sync(self, user_id: int, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE users SET last_sync = ? WHERE id = ?", (to_iso(when), user_id))

    # === Tasks ===

    def get_task(self, owner_id: int, task_id: int) -> Optional[TaskRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM todos WHERE id = ? AND user_id = ?",
                (task_id, owner_id),
            ).fetchone()
        return self._row_to_task(row) if row else None

    def get_task_by_client_id(self, owner_id: int, client_id: str) -> Optional[TaskRecord]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TASK_COLUMNS} FROM todos WHERE client_id = ? AND user_id = ?",
                (client_id, owner_id),
            ).fetchone()
        return self._row_to_task(row) if row else None

    def insert_task(
        self, owner_id: int, fields: TaskFields, client_id: Optional[str] = None
    ) -> TaskRecord:
        now = utc_now()
        try:
            with self._connect() as conn:
                cursor = conn.execute(
                    """INSERT INTO todos
                       (user_id, client_id, title, description, completed, priority,
                        category, due_date, tags, created_at, updated_at, deleted_at,
                        client_updated_at, version)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)""",
                    (
                        owner_id,
                        client_id,
                        fields.title,
                        fields.description,
                        1 if fields.completed else 0,
                        fields.priority,
                        fields.category,
                        to_iso(fields.due_date),
                        json.dumps(list(fields.tags)),
                        to_iso(now),
                        to_iso(now),
                        to_iso(now) if fields.mark_deleted else None,
                        to_iso(fields.client_updated_at),
                    ),
                )
                record = self._fetch_task(conn, cursor.lastrowid)
        except sqlite3.IntegrityError as e:
            if client_id is not None and "UNIQUE" in str(e):
                raise DuplicateClientIdError(client_id) from e
            raise StoreError(f"Failed to insert task: {e}") from e
        return record

    def update_task_if_version(
        self, owner_id: int, current: TaskRecord, fields: TaskFields
    ) -> Optional[TaskRecord]:
        updated_at = advance_timestamp(current.updated_at)
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE todos
                   SET title = ?, description = ?, completed = ?, priority = ?,
                       category = ?, due_date = ?, tags = ?,
                       deleted_at = COALESCE(deleted_at, ?),
                       updated_at = ?, client_updated_at = ?, version = version + 1
                   WHERE id = ? AND user_id = ? AND version = ?""",
                (
                    fields.title,
                    fields.description,
                    1 if fields.completed else 0,
                    fields.priority,
                    fields.category,
                    to_iso(fields.due_date),
                    json.dumps(list(fields.tags)),
                    to_iso(updated_at) if fields.mark_deleted else None,
                    to_iso(updated_at),
                    to_iso(fields.client_updated_at),
                    current.id,
                    owner_id,
                    current.version,
                ),
            )
            if cursor.rowcount == 0:
                return None
            return self._fetch_task(conn, current.id)

    def soft_delete_task(self, owner_id: int, current: TaskRecord) -> Optional[TaskRecord]:
        updated_at = advance_timestamp(current.updated_at)
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE todos
                   SET deleted_at = COALESCE(deleted_at, ?), updated_at = ?,
                       client_updated_at = NULL, version = version + 1
                   WHERE id = ? AND user_id = ? AND version = ?""",
                (to_iso(updated_at), to_iso(updated_at), current.id, owner_id, current.version),
            )
            if cursor.rowcount == 0:
                return None
            return self._fetch_task(conn, current.id)

    def list_tasks(self, owner_id: int) -> List[TaskRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                f"""SELECT {_TASK_COLUMNS} FROM todos
                    WHERE user_id = ? AND deleted_at IS NULL
                    ORDER BY updated_at DESC, id DESC""",
                (owner_id,),
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def changed_since(self, owner_id: int, since: Optional[datetime]) -> List[TaskRecord]:
        query = f"SELECT {_TASK_COLUMNS} FROM todos WHERE user_id = ?"
        params: list = [owner_id]
        if since is not None:
            query += " AND updated_at > ?"
            params.append(to_iso(since))
        query += " ORDER BY updated_at ASC, id ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks(self, owner_id: int) -> int:
        with self._connect() as conn:
            return conn.execute(
                "SELECT COUNT(*) FROM todos WHERE user_id = ? AND deleted_at IS NULL",
                (owner_id,),
            ).fetchone()[0]

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
