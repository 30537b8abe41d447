"""Pydantic models for API requests and responses."""

import json
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    ValidationError,
    field_validator,
)

from .errors import SyncValidationError
from .stores.base import DEFAULT_CATEGORY, DEFAULT_PRIORITY, TaskFields, TaskRecord
from .timeutils import parse_timestamp

Priority = Literal["low", "medium", "high", "urgent"]
Category = Literal[
    "personal", "work", "shopping", "health", "education", "finance", "travel", "hobbies"
]
Title = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
Tag = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=20)]

MAX_TAGS = 10


def _lenient_timestamp(value: Any) -> datetime | None:
    """Unparsable timestamps become None instead of failing the item."""
    try:
        return parse_timestamp(value)
    except (ValueError, OverflowError):
        return None


def _coerce_tags(value: Any) -> Any:
    if value is None or value == "":
        return []
    if isinstance(value, str):
        # Storage form: JSON-encoded array
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            raise ValueError("tags must be an array")
    return value


def describe_validation_error(exc: Exception) -> str:
    """One-line description of why a task payload was rejected."""
    if isinstance(exc, ValidationError):
        parts = []
        for err in exc.errors():
            loc = ".".join(str(p) for p in err.get("loc", ())) or "todo"
            parts.append(f"{loc}: {err.get('msg')}")
        return "; ".join(parts)
    return str(exc)


# =============================================================================
# Task Models
# =============================================================================


class TaskPayload(BaseModel):
    """A task as sent by a client, normalized to one canonical shape.

    Accepts both snake_case and camelCase field names.
    """

    model_config = ConfigDict(extra="ignore")

    id: int | None = Field(default=None, validation_alias=AliasChoices("id", "server_id", "serverId"))
    client_id: str | None = Field(
        default=None, max_length=128, validation_alias=AliasChoices("client_id", "clientId")
    )
    title: Title
    description: str | None = Field(default=None, max_length=5000)
    completed: bool = False
    priority: Priority = DEFAULT_PRIORITY
    category: Category = DEFAULT_CATEGORY
    due_date: datetime | None = Field(default=None, validation_alias=AliasChoices("due_date", "dueDate"))
    tags: list[Tag] = Field(default_factory=list, max_length=MAX_TAGS)
    created_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("created_at", "createdAt")
    )
    updated_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("updated_at", "updatedAt")
    )
    deleted_at: datetime | None = Field(
        default=None, validation_alias=AliasChoices("deleted_at", "deletedAt")
    )
    is_deleted: bool | None = Field(default=None, validation_alias=AliasChoices("is_deleted", "isDeleted"))
    version: int | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _server_id(cls, value: Any) -> int | None:
        # Only integers are well-formed server ids; client-local ids are ignored.
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        return None

    @field_validator("client_id", mode="before")
    @classmethod
    def _client_id(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("priority", mode="before")
    @classmethod
    def _default_priority(cls, value: Any) -> Any:
        return value or DEFAULT_PRIORITY

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, value: Any) -> Any:
        return value or DEFAULT_CATEGORY

    @field_validator("tags", mode="before")
    @classmethod
    def _tags(cls, value: Any) -> Any:
        return _coerce_tags(value)

    @field_validator("due_date", mode="before")
    @classmethod
    def _due_date(cls, value: Any) -> datetime | None:
        return parse_timestamp(value)

    @field_validator("created_at", "updated_at", "deleted_at", mode="before")
    @classmethod
    def _timestamps(cls, value: Any) -> datetime | None:
        return _lenient_timestamp(value)

    @classmethod
    def from_wire(cls, raw: Any) -> "TaskPayload":
        """Normalize one wire task.

        Raises:
            SyncValidationError: if the payload is not an object.
            pydantic.ValidationError: if a field is invalid.
        """
        if not isinstance(raw, dict):
            raise SyncValidationError("Task payload must be an object")
        return cls.model_validate(raw)

    @property
    def marks_deleted(self) -> bool:
        return self.deleted_at is not None or bool(self.is_deleted)

    def to_fields(self) -> TaskFields:
        return TaskFields(
            title=self.title,
            description=self.description,
            completed=self.completed,
            priority=self.priority,
            category=self.category,
            due_date=self.due_date,
            tags=list(dict.fromkeys(self.tags)),
            mark_deleted=self.marks_deleted,
            client_updated_at=self.updated_at,
        )


class TaskOut(BaseModel):
    """A task as returned by the API."""

    id: int
    client_id: str | None = None
    title: str
    description: str | None = None
    completed: bool = False
    priority: str = DEFAULT_PRIORITY
    category: str = DEFAULT_CATEGORY
    due_date: datetime | None = None
    tags: list[str] = []
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    client_updated_at: datetime | None = None
    version: int = 1
    is_deleted: bool = False

    @classmethod
    def from_record(cls, record: TaskRecord) -> "TaskOut":
        return cls(
            id=record.id,
            client_id=record.client_id,
            title=record.title,
            description=record.description,
            completed=record.completed,
            priority=record.priority,
            category=record.category,
            due_date=record.due_date,
            tags=list(record.tags),
            created_at=record.created_at,
            updated_at=record.updated_at,
            deleted_at=record.deleted_at,
            client_updated_at=record.client_updated_at,
            version=record.version,
            is_deleted=record.is_deleted,
        )


class TodoCreate(BaseModel):
    """Request to create a task directly (non-sync)."""
    client_id: str | None = Field(default=None, max_length=128)
    title: Title
    description: str | None = Field(default=None, max_length=5000)
    priority: Priority = DEFAULT_PRIORITY
    category: Category = DEFAULT_CATEGORY
    due_date: datetime | None = None
    tags: list[Tag] = Field(default_factory=list, max_length=MAX_TAGS)


class TodoUpdate(BaseModel):
    """Partial update of a task. ``version`` enables optimistic concurrency."""
    title: Title | None = None
    description: str | None = Field(default=None, max_length=5000)
    completed: bool | None = None
    priority: Priority | None = None
    category: Category | None = None
    due_date: datetime | None = None
    tags: list[Tag] | None = Field(default=None, max_length=MAX_TAGS)
    version: int | None = None


class TodoToggle(BaseModel):
    completed: bool


class TodoStats(BaseModel):
    """Aggregate counts over a user's active tasks."""
    total: int = 0
    completed: int = 0
    pending: int = 0
    overdue: int = 0
    by_priority: dict[str, int] = {}
    by_category: dict[str, int] = {}


class TodoSearchResponse(BaseModel):
    todos: list[TaskOut]
    total: int
    page: int
    limit: int
    total_pages: int


class ExportInfo(BaseModel):
    timestamp: datetime
    user_id: int
    user_email: str
    total_todos: int
    completed_todos: int
    pending_todos: int


class ExportUser(BaseModel):
    id: int
    name: str
    email: str
    created_at: datetime | None = None


class TodoExport(BaseModel):
    """JSON export of a user's active tasks."""
    export_info: ExportInfo
    user: ExportUser
    todos: list[TaskOut]


class TodoImportRequest(BaseModel):
    # Rows are validated one by one; a bad row is skipped, not fatal.
    todos: list[Any]
    replace_existing: bool = Field(
        default=False, validation_alias=AliasChoices("replace_existing", "replaceExisting")
    )


class ImportSummary(BaseModel):
    total_processed: int
    imported: int
    skipped: int
    has_errors: bool


class TodoImportResponse(BaseModel):
    message: str
    summary: ImportSummary
    errors: list[str] = []


# =============================================================================
# Sync Models
# =============================================================================


class SyncUploadRequest(BaseModel):
    """Request to upload the client's task set."""
    # Items are validated one by one so a bad item cannot fail the batch.
    todos: list[Any]
    last_sync: datetime | None = Field(
        default=None, validation_alias=AliasChoices("lastSync", "last_sync")
    )


class ProcessedItem(BaseModel):
    client_id: str | None = None
    server_id: int
    action: Literal["created", "updated"]


class SyncConflictOut(BaseModel):
    """One item that was not applied."""
    client_id: str | None = None
    conflict_type: Literal["update_conflict", "processing_error"]
    server_todo: TaskOut | None = None  # None when deleted on the server or unknown
    client_todo: Any = None
    error: str | None = None
    error_category: Literal["validation", "server"] | None = None


class SyncUploadResponse(BaseModel):
    success: bool = True
    processed: list[ProcessedItem]
    conflicts: list[SyncConflictOut] = []
    timestamp: datetime


class SyncDownloadResponse(BaseModel):
    todos: list[TaskOut]
    timestamp: datetime


class ResolveConflictRequest(BaseModel):
    client_id: str = Field(..., min_length=1, validation_alias=AliasChoices("client_id", "clientId"))
    # Checked by the resolver so unknown values map to a 400, not a schema error.
    resolution: str
    todo_data: dict[str, Any] | None = Field(
        default=None, validation_alias=AliasChoices("todo_data", "todoData")
    )


class ResolveConflictResponse(BaseModel):
    success: bool = True
    message: str


class SyncStatusResponse(BaseModel):
    last_sync: datetime | None
    todo_count: int
    server_time: datetime


# =============================================================================
# Auth Models
# =============================================================================


class UserRegister(BaseModel):
    """Request to register a new user."""
    email: str = Field(..., max_length=254, pattern=r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
    password: str = Field(..., min_length=6, max_length=72)
    name: Annotated[str, StringConstraints(strip_whitespace=True, min_length=2, max_length=100)]

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class UserLogin(BaseModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class UserInfo(BaseModel):
    id: int
    email: str
    name: str


class AuthResponse(BaseModel):
    """Token response for register/login."""
    message: str
    user: UserInfo
    token: str
    token_type: str = "bearer"
    expires_in: int


class VerifyResponse(BaseModel):
    valid: bool
    user: UserInfo
