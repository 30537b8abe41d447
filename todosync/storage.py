"""Local SQLite replica for the todosync client.

Holds the user's tasks (keyed by ``client_id``) and the sync checkpoint.
A download merge and the checkpoint advance are committed in one
transaction, so an interrupted merge leaves the replica untouched.
"""

import contextlib
import json
import logging
import sqlite3
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from .models import LocalTask, format_datetime, new_client_id, parse_datetime, touch, utc_now

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS tasks (
    client_id TEXT PRIMARY KEY,
    server_id INTEGER,
    title TEXT NOT NULL,
    description TEXT,
    completed INTEGER NOT NULL DEFAULT 0,
    priority TEXT NOT NULL DEFAULT 'medium',
    category TEXT NOT NULL DEFAULT 'personal',
    due_date TEXT,
    tags TEXT NOT NULL DEFAULT '[]',
    created_at TEXT,
    updated_at TEXT,
    deleted_at TEXT,
    version INTEGER NOT NULL DEFAULT 1
);

CREATE INDEX IF NOT EXISTS idx_tasks_server_id ON tasks (server_id);

CREATE TABLE IF NOT EXISTS sync_meta (
    key TEXT PRIMARY KEY,
    value TEXT,
    updated_at TEXT
);
"""

LAST_SYNC_KEY = "last_sync"

_EDITABLE = {"title", "description", "completed", "priority", "category", "due_date", "tags"}


class LocalStorage:
    """SQLite-backed task replica."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    @contextlib.contextmanager
    def _connect(self):
        """Yield a connection; commit on success, roll back on error, always close."""
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # === Row conversion ===

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> LocalTask:
        try:
            tags = json.loads(row["tags"] or "[]")
        except json.JSONDecodeError:
            tags = []
        return LocalTask(
            client_id=row["client_id"],
            server_id=row["server_id"],
            title=row["title"],
            description=row["description"],
            completed=bool(row["completed"]),
            priority=row["priority"],
            category=row["category"],
            due_date=parse_datetime(row["due_date"]),
            tags=tags if isinstance(tags, list) else [],
            created_at=parse_datetime(row["created_at"]),
            updated_at=parse_datetime(row["updated_at"]),
            deleted_at=parse_datetime(row["deleted_at"]),
            version=row["version"],
        )

    @staticmethod
    def _write(conn: sqlite3.Connection, task: LocalTask) -> None:
        conn.execute(
            """INSERT OR REPLACE INTO tasks
               (client_id, server_id, title, description, completed, priority, category,
                due_date, tags, created_at, updated_at, deleted_at, version)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task.client_id,
                task.server_id,
                task.title,
                task.description,
                1 if task.completed else 0,
                task.priority,
                task.category,
                format_datetime(task.due_date),
                json.dumps(list(task.tags)),
                format_datetime(task.created_at),
                format_datetime(task.updated_at),
                format_datetime(task.deleted_at),
                task.version,
            ),
        )

    # === Local edits ===

    def add_task(self, title: str, **fields) -> LocalTask:
        """Create a local-only task with a fresh client_id."""
        unknown = set(fields) - _EDITABLE
        if unknown:
            raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
        now = utc_now()
        task = LocalTask(client_id=new_client_id(), title=title, created_at=now, updated_at=now)
        task = replace(task, **fields)
        self.save_task(task)
        return task

    def update_task(self, client_id: str, **changes) -> Optional[LocalTask]:
        """Edit a task and bump its modification time. Returns None if missing."""
        unknown = set(changes) - _EDITABLE
        if unknown:
            raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
        task = self.get_task(client_id)
        if task is None:
            return None
        task = replace(task, **changes, updated_at=touch(task.updated_at))
        self.save_task(task)
        return task

    def delete_task(self, client_id: str) -> bool:
        """Soft-delete so the deletion is uploaded like any other change."""
        task = self.get_task(client_id)
        if task is None or task.is_deleted:
            return False
        updated_at = touch(task.updated_at)
        self.save_task(replace(task, deleted_at=updated_at, updated_at=updated_at))
        return True

    def remove_task(self, client_id: str) -> bool:
        """Physically drop a local copy (one the server never accepted)."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM tasks WHERE client_id = ?", (client_id,))
        return cursor.rowcount > 0

    def save_task(self, task: LocalTask) -> None:
        with self._connect() as conn:
            self._write(conn, task)

    # === Reads ===

    def get_task(self, client_id: str) -> Optional[LocalTask]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE client_id = ?", (client_id,)).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(self, include_deleted: bool = False) -> List[LocalTask]:
        query = "SELECT * FROM tasks"
        if not include_deleted:
            query += " WHERE deleted_at IS NULL"
        query += " ORDER BY created_at, client_id"
        with self._connect() as conn:
            rows = conn.execute(query).fetchall()
        return [self._row_to_task(row) for row in rows]

    def all_tasks(self) -> List[LocalTask]:
        """Every task, deleted ones included (the upload set)."""
        return self.list_tasks(include_deleted=True)

    # === Checkpoint ===

    def get_last_sync(self) -> Optional[datetime]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM sync_meta WHERE key = ?", (LAST_SYNC_KEY,)
            ).fetchone()
        return parse_datetime(row["value"]) if row else None

    def apply_merge(self, tasks: Iterable[LocalTask], checkpoint: datetime) -> int:
        """Replace the replica with ``tasks`` and advance the checkpoint atomically."""
        tasks = list(tasks)
        return self.merge_replica(lambda current: tasks, checkpoint)

    def merge_replica(
        self,
        build: Callable[[List[LocalTask]], Iterable[LocalTask]],
        checkpoint: datetime,
    ) -> int:
        """Rebuild the replica from its current rows and advance the checkpoint.

        The write lock is held from the read to the commit, so a local edit
        from another connection either lands before ``build`` sees the rows
        or waits until the merge is committed.
        """
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute("SELECT * FROM tasks ORDER BY created_at, client_id").fetchall()
            tasks = list(build([self._row_to_task(row) for row in rows]))
            conn.execute("DELETE FROM tasks")
            for task in tasks:
                self._write(conn, task)
            conn.execute(
                "INSERT OR REPLACE INTO sync_meta (key, value, updated_at) VALUES (?, ?, ?)",
                (LAST_SYNC_KEY, format_datetime(checkpoint), format_datetime(utc_now())),
            )
        logger.debug(f"Merged {len(tasks)} tasks, checkpoint={format_datetime(checkpoint)}")
        return len(tasks)
