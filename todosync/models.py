"""Client-side task representation and its wire form."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from dateutil.parser import isoparse

PRIORITIES = ("low", "medium", "high", "urgent")
CATEGORIES = ("personal", "work", "shopping", "health", "education", "finance", "travel", "hobbies")

_TICK = timedelta(microseconds=1)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 value into aware UTC; None stays None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = isoparse(str(value))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_datetime(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return parse_datetime(dt).isoformat(timespec="microseconds")


def new_client_id() -> str:
    return str(uuid.uuid4())


def touch(previous: Optional[datetime]) -> datetime:
    """A local modification time strictly after ``previous``."""
    now = utc_now()
    if previous is not None and now <= previous:
        return previous + _TICK
    return now


@dataclass
class LocalTask:
    """A task in the local replica.

    ``client_id`` is the stable correlation key; ``server_id`` is filled in
    once the backend has acknowledged the task.
    """

    client_id: str
    title: str
    server_id: Optional[int] = None
    description: Optional[str] = None
    completed: bool = False
    priority: str = "medium"
    category: str = "personal"
    due_date: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    version: int = 1

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_wire(self) -> Dict[str, Any]:
        """Upload payload for this task."""
        return {
            "id": self.server_id,
            "client_id": self.client_id,
            "title": self.title,
            "description": self.description,
            "completed": self.completed,
            "priority": self.priority,
            "category": self.category,
            "due_date": format_datetime(self.due_date),
            "tags": list(self.tags),
            "created_at": format_datetime(self.created_at),
            "updated_at": format_datetime(self.updated_at),
            "deleted_at": format_datetime(self.deleted_at),
            "is_deleted": self.is_deleted,
            "version": self.version,
        }

    @classmethod
    def from_server(cls, data: Dict[str, Any], client_id: Optional[str] = None) -> "LocalTask":
        """Build a replica task from a server task.

        The local ``updated_at`` is the later of the server clock and the
        timestamp the last sync writer asserted, so re-uploading an untouched
        copy is never older than what the server compares it with.
        """
        updated_at = parse_datetime(data.get("updated_at"))
        asserted = parse_datetime(data.get("client_updated_at"))
        if asserted is not None and (updated_at is None or asserted > updated_at):
            updated_at = asserted

        deleted_at = parse_datetime(data.get("deleted_at"))
        if deleted_at is None and data.get("is_deleted"):
            deleted_at = updated_at or utc_now()

        return cls(
            client_id=data.get("client_id") or client_id or new_client_id(),
            server_id=data.get("id"),
            title=data.get("title", ""),
            description=data.get("description"),
            completed=bool(data.get("completed", False)),
            priority=data.get("priority") or "medium",
            category=data.get("category") or "personal",
            due_date=parse_datetime(data.get("due_date")),
            tags=list(data.get("tags") or []),
            created_at=parse_datetime(data.get("created_at")),
            updated_at=updated_at,
            deleted_at=deleted_at,
            version=data.get("version") or 1,
        )
