"""Search, filtering and statistics over a user's active tasks.

These operate on the list returned by ``TaskStore.list_tasks`` so every store
backend gets identical semantics.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from .stores.base import CATEGORIES, PRIORITIES, TaskRecord
from .timeutils import utc_now

SORT_FIELDS = ("created_at", "updated_at", "title", "priority", "due_date", "completed")
MAX_PAGE_SIZE = 100

_PRIORITY_RANK = {name: rank for rank, name in enumerate(PRIORITIES)}


@dataclass
class SearchQuery:
    q: Optional[str] = None
    priority: Optional[str] = None
    category: Optional[str] = None
    completed: Optional[bool] = None
    tags: Optional[List[str]] = None
    due_after: Optional[datetime] = None
    due_before: Optional[datetime] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    overdue: bool = False
    sort_by: str = "created_at"
    sort_order: str = "desc"
    page: int = 1
    limit: int = 20


def is_overdue(task: TaskRecord, now: Optional[datetime] = None) -> bool:
    if task.completed or task.due_date is None:
        return False
    return task.due_date < (now or utc_now())


def _matches(task: TaskRecord, query: SearchQuery, now: datetime) -> bool:
    if query.q:
        needle = query.q.lower()
        haystack = [task.title, task.description or "", *task.tags]
        if not any(needle in text.lower() for text in haystack):
            return False
    if query.priority and task.priority != query.priority:
        return False
    if query.category and task.category != query.category:
        return False
    if query.completed is not None and task.completed != query.completed:
        return False
    if query.tags and not set(query.tags).issubset(task.tags):
        return False
    if query.due_after and (task.due_date is None or task.due_date < query.due_after):
        return False
    if query.due_before and (task.due_date is None or task.due_date > query.due_before):
        return False
    if query.created_after and (task.created_at is None or task.created_at < query.created_after):
        return False
    if query.created_before and (task.created_at is None or task.created_at > query.created_before):
        return False
    if query.overdue and not is_overdue(task, now):
        return False
    return True


def _sort_key(sort_by: str):
    if sort_by == "priority":
        return lambda task: _PRIORITY_RANK.get(task.priority, 0)
    if sort_by == "title":
        return lambda task: task.title.lower()
    if sort_by == "completed":
        return lambda task: task.completed
    # Timestamps: tasks without one sort first ascending
    return lambda task: (getattr(task, sort_by) is not None, getattr(task, sort_by) or datetime.min)


def search_tasks(tasks: Iterable[TaskRecord], query: SearchQuery) -> tuple[List[TaskRecord], int]:
    """Filter, sort and page ``tasks``.

    Returns:
        (page of tasks, total number of matches)

    Raises:
        ValueError: on an unknown sort field or order.
    """
    if query.sort_by not in SORT_FIELDS:
        raise ValueError(f"sort_by must be one of {', '.join(SORT_FIELDS)}")
    if query.sort_order not in ("asc", "desc"):
        raise ValueError("sort_order must be asc or desc")

    now = utc_now()
    matches = [task for task in tasks if _matches(task, query, now)]
    # Stable secondary order by id
    matches.sort(key=lambda task: task.id)
    matches.sort(key=_sort_key(query.sort_by), reverse=query.sort_order == "desc")

    limit = max(1, min(query.limit, MAX_PAGE_SIZE))
    page = max(1, query.page)
    start = (page - 1) * limit
    return matches[start:start + limit], len(matches)


def task_stats(tasks: Iterable[TaskRecord]) -> dict:
    """Counts over active tasks: totals, overdue, per priority and category."""
    now = utc_now()
    stats = {
        "total": 0,
        "completed": 0,
        "pending": 0,
        "overdue": 0,
        "by_priority": {name: 0 for name in PRIORITIES},
        "by_category": {name: 0 for name in CATEGORIES},
    }
    for task in tasks:
        if task.is_deleted:
            continue
        stats["total"] += 1
        stats["completed" if task.completed else "pending"] += 1
        if is_overdue(task, now):
            stats["overdue"] += 1
        stats["by_priority"][task.priority] = stats["by_priority"].get(task.priority, 0) + 1
        stats["by_category"][task.category] = stats["by_category"].get(task.category, 0) + 1
    return stats
