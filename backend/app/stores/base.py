"""Task store abstraction.

The store is the only shared mutable resource on the server. Implementations
must make a single-task read-modify-write safe against concurrent writers;
the contract used for that is compare-and-swap on ``version``
(``update_task_if_version`` / ``soft_delete_task`` only write when the row
still carries the version the caller read).
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

PRIORITIES = ("low", "medium", "high", "urgent")
CATEGORIES = (
    "personal",
    "work",
    "shopping",
    "health",
    "education",
    "finance",
    "travel",
    "hobbies",
)
DEFAULT_PRIORITY = "medium"
DEFAULT_CATEGORY = "personal"


@dataclass
class UserRecord:
    """A registered user."""

    id: int
    email: str
    name: str
    password_hash: str
    created_at: Optional[datetime] = None
    last_sync: Optional[datetime] = None


@dataclass
class TaskFields:
    """The mutable, client-writable part of a task.

    ``mark_deleted`` only ever moves a task into the soft-deleted state;
    soft delete is terminal, so an update never clears ``deleted_at``.
    """

    title: str
    description: Optional[str] = None
    completed: bool = False
    priority: str = DEFAULT_PRIORITY
    category: str = DEFAULT_CATEGORY
    due_date: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    mark_deleted: bool = False
    # Modification time asserted by the writing client, if any
    client_updated_at: Optional[datetime] = None


@dataclass
class TaskRecord:
    """A task as held by the authoritative store."""

    id: int
    user_id: int
    title: str
    client_id: Optional[str] = None
    description: Optional[str] = None
    completed: bool = False
    priority: str = DEFAULT_PRIORITY
    category: str = DEFAULT_CATEGORY
    due_date: Optional[datetime] = None
    tags: List[str] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    version: int = 1
    client_updated_at: Optional[datetime] = None

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @property
    def conflict_stamp(self) -> Optional[datetime]:
        """Timestamp an incoming client copy is ordered against.

        A sync write records the writer's own ``updated_at`` so that the same
        client re-sending its copy is not mistaken for a stale edit. Writes
        without a client timestamp fall back to the server clock.
        """
        return self.client_updated_at or self.updated_at

    def fields(self) -> TaskFields:
        return TaskFields(
            title=self.title,
            description=self.description,
            completed=self.completed,
            priority=self.priority,
            category=self.category,
            due_date=self.due_date,
            tags=list(self.tags),
        )


class TaskStore(ABC):
    """Authoritative task and user storage."""

    # === Users ===

    @abstractmethod
    def create_user(self, email: str, name: str, password_hash: str) -> UserRecord:
        """Create a user. Raises DuplicateEmailError if the email exists."""

    @abstractmethod
    def get_user(self, user_id: int) -> Optional[UserRecord]:
        ...

    @abstractmethod
    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        ...

    @abstractmethod
    def set_last_sync(self, user_id: int, when: datetime) -> None:
        """Unconditionally record the user's last sync time."""

    # === Tasks ===

    @abstractmethod
    def get_task(self, owner_id: int, task_id: int) -> Optional[TaskRecord]:
        """Get a task by server id, including soft-deleted ones."""

    @abstractmethod
    def get_task_by_client_id(self, owner_id: int, client_id: str) -> Optional[TaskRecord]:
        """Get a task by its client correlation key, including soft-deleted ones."""

    @abstractmethod
    def insert_task(
        self, owner_id: int, fields: TaskFields, client_id: Optional[str] = None
    ) -> TaskRecord:
        """Insert a new task with version 1.

        Raises:
            DuplicateClientIdError: if ``client_id`` is already used by this owner.
        """

    @abstractmethod
    def update_task_if_version(
        self, owner_id: int, current: TaskRecord, fields: TaskFields
    ) -> Optional[TaskRecord]:
        """Overwrite mutable fields if the row still has ``current.version``.

        Bumps ``version`` and advances ``updated_at`` from ``current.updated_at``.
        Returns the new record, or None when the version moved underneath us.
        """

    @abstractmethod
    def soft_delete_task(self, owner_id: int, current: TaskRecord) -> Optional[TaskRecord]:
        """Set ``deleted_at`` under the same compare-and-swap rule."""

    @abstractmethod
    def list_tasks(self, owner_id: int) -> List[TaskRecord]:
        """Active (not deleted) tasks, most recently updated first."""

    @abstractmethod
    def changed_since(self, owner_id: int, since: Optional[datetime]) -> List[TaskRecord]:
        """All tasks with ``updated_at > since`` (all if None), deleted ones
        included, ordered by ``updated_at`` ascending then id."""

    @abstractmethod
    def count_tasks(self, owner_id: int) -> int:
        """Number of active tasks."""

    @abstractmethod
    def ping(self) -> None:
        """Raise if the backing store is unreachable."""

    def close(self) -> None:
        """Release resources (no-op by default)."""
        return None
