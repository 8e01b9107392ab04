"""Repository contract consumed by the built-in tools."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Protocol

TASK_STATUSES = ("pending", "in_progress", "completed", "cancelled")
TASK_PRIORITIES = ("low", "medium", "high", "urgent")


@dataclass(slots=True)
class TaskFilter:
    status: list[str] = field(default_factory=list)
    priority: str | None = None
    # Matches due_date or scheduled_date.
    date: str | None = None
    overdue: bool = False
    this_week: bool = False
    search: str | None = None
    tags: list[str] = field(default_factory=list)
    limit: int | None = None
    today: date | None = None


@dataclass(slots=True)
class TimeRange:
    start: datetime
    end: datetime


class TaskRepository(Protocol):
    """Async task and time-session store.

    Failures raise NotFoundError, ValidationError or StorageError.
    """

    async def find_tasks(self, task_filter: TaskFilter) -> list[dict[str, Any]]: ...

    async def get_task(self, task_id: str) -> dict[str, Any]: ...

    async def create_task(self, request: dict[str, Any]) -> dict[str, Any]: ...

    async def update_task(self, task_id: str, patch: dict[str, Any]) -> dict[str, Any]: ...

    async def delete_task(self, task_id: str) -> None: ...

    async def start_timer(self, task_id: str, notes: str = "") -> dict[str, Any]: ...

    async def stop_timer(self, session_id: str, notes: str | None = None) -> dict[str, Any]: ...

    async def active_timer(self) -> dict[str, Any] | None: ...

    async def time_stats(self, time_range: TimeRange) -> dict[str, Any]: ...

    def transaction(self) -> AbstractAsyncContextManager[Any]: ...
