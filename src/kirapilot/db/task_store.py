"""SQLite implementation of the task repository used by the built-in tools."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, date, datetime, timedelta
from typing import Any

from kirapilot.db.connection import connect
from kirapilot.db.queries import now_iso
from kirapilot.errors import NotFoundError, StorageError, ValidationError
from kirapilot.ids import new_id
from kirapilot.tools.repository import TASK_PRIORITIES, TASK_STATUSES, TaskFilter, TimeRange

logger = logging.getLogger(__name__)

_UPDATABLE = {
    "title",
    "description",
    "status",
    "priority",
    "due_date",
    "scheduled_date",
    "time_estimate",
    "tags",
}


def _task_from_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    try:
        item["tags"] = json.loads(item.get("tags") or "[]")
    except json.JSONDecodeError:
        item["tags"] = []
    return item


def _session_from_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    item["is_active"] = bool(item["is_active"])
    return item


def _check_date(field: str, value: Any) -> str | None:
    if value in (None, ""):
        return None
    try:
        return date.fromisoformat(str(value)[:10]).isoformat()
    except ValueError as exc:
        raise ValidationError(f"{field} must be YYYY-MM-DD, got {value!r}", field=field) from exc


def _check_choice(field: str, value: Any, choices: tuple[str, ...]) -> str:
    text = str(value).strip().lower().replace(" ", "_").replace("-", "_")
    if text not in choices:
        raise ValidationError(
            f"{field} must be one of {', '.join(choices)}, got {value!r}", field=field
        )
    return text


class SqliteTaskRepository:
    def __init__(self, path: str | None = None) -> None:
        self._path = path
        self._conn: sqlite3.Connection | None = None
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task[Any] | None = None
        self._depth = 0

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = connect(self._path)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE ... COMMIT; rolls back on any exception, cancellation included.

        Nested use from the task that owns the transaction joins it.
        """
        current = asyncio.current_task()
        if self._owner is not None and self._owner is current:
            self._depth += 1
            try:
                yield self._connection()
            finally:
                self._depth -= 1
            return
        async with self._lock:
            conn = self._connection()
            self._owner = current
            self._depth = 1
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                self._owner = None
                self._depth = 0
                raise StorageError(f"could not begin transaction: {exc}") from exc
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                logger.debug("task store transaction rolled back")
                raise
            else:
                conn.execute("COMMIT")
            finally:
                self._owner = None
                self._depth = 0

    # Tasks

    async def find_tasks(self, task_filter: TaskFilter) -> list[dict[str, Any]]:
        today = task_filter.today or date.today()
        clauses: list[str] = []
        params: list[Any] = []
        if task_filter.status:
            placeholders = ",".join("?" for _ in task_filter.status)
            clauses.append(f"status IN ({placeholders})")
            params.extend(task_filter.status)
        if task_filter.priority:
            clauses.append("priority=?")
            params.append(task_filter.priority)
        if task_filter.date:
            clauses.append("(due_date=? OR scheduled_date=?)")
            params.extend([task_filter.date, task_filter.date])
        if task_filter.overdue:
            clauses.append("due_date IS NOT NULL AND due_date < ? AND status != 'completed'")
            params.append(today.isoformat())
        if task_filter.this_week:
            monday = today - timedelta(days=today.weekday())
            sunday = monday + timedelta(days=6)
            clauses.append(
                "((due_date BETWEEN ? AND ?) OR (scheduled_date BETWEEN ? AND ?))"
            )
            params.extend([monday.isoformat(), sunday.isoformat()] * 2)
        if task_filter.search:
            clauses.append("(title LIKE ? OR description LIKE ?)")
            pattern = f"%{task_filter.search}%"
            params.extend([pattern, pattern])
        sql = "SELECT * FROM tasks"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at DESC, rowid DESC"
        async with self.transaction() as conn:
            rows = conn.execute(sql, params).fetchall()
        tasks = [_task_from_row(row) for row in rows]
        if task_filter.tags:
            wanted = {tag.lower() for tag in task_filter.tags}
            tasks = [
                task for task in tasks if wanted & {str(tag).lower() for tag in task["tags"]}
            ]
        if task_filter.limit is not None:
            tasks = tasks[: max(0, task_filter.limit)]
        return tasks

    async def get_task(self, task_id: str) -> dict[str, Any]:
        async with self.transaction() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE id=?", (task_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"task not found: {task_id}")
        return _task_from_row(row)

    async def create_task(self, request: dict[str, Any]) -> dict[str, Any]:
        title = str(request.get("title") or "").strip()
        if not title:
            raise ValidationError("title cannot be empty", field="title")
        status = _check_choice("status", request.get("status") or "pending", TASK_STATUSES)
        priority = _check_choice(
            "priority", request.get("priority") or "medium", TASK_PRIORITIES
        )
        task_id = new_id("task")
        stamp = now_iso()
        async with self.transaction() as conn:
            conn.execute(
                """
                INSERT INTO tasks(
                  id, title, description, status, priority, due_date, scheduled_date,
                  time_estimate, actual_time, tags, created_at, updated_at, completed_at
                ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)
                """,
                (
                    task_id,
                    title,
                    str(request.get("description") or ""),
                    status,
                    priority,
                    _check_date("due_date", request.get("due_date")),
                    _check_date("scheduled_date", request.get("scheduled_date")),
                    int(request.get("time_estimate") or 0),
                    0,
                    json.dumps(list(request.get("tags") or [])),
                    stamp,
                    stamp,
                    stamp if status == "completed" else None,
                ),
            )
            return await self.get_task(task_id)

    async def update_task(self, task_id: str, patch: dict[str, Any]) -> dict[str, Any]:
        unknown = sorted(set(patch) - _UPDATABLE)
        if unknown:
            raise ValidationError(f"cannot update field: {unknown[0]}", field=unknown[0])
        async with self.transaction() as conn:
            current = await self.get_task(task_id)
            values: dict[str, Any] = {}
            for key, value in patch.items():
                if key == "title":
                    value = str(value or "").strip()
                    if not value:
                        raise ValidationError("title cannot be empty", field="title")
                elif key == "status":
                    value = _check_choice("status", value, TASK_STATUSES)
                elif key == "priority":
                    value = _check_choice("priority", value, TASK_PRIORITIES)
                elif key in {"due_date", "scheduled_date"}:
                    value = _check_date(key, value)
                elif key == "tags":
                    value = json.dumps(list(value or []))
                elif key == "time_estimate":
                    value = int(value or 0)
                values[key] = value
            if not values:
                return current
            stamp = now_iso()
            values["updated_at"] = stamp
            if values.get("status") == "completed" and current["status"] != "completed":
                values["completed_at"] = stamp
            elif "status" in values and values["status"] != "completed":
                values["completed_at"] = None
            assignments = ", ".join(f"{key}=?" for key in values)
            conn.execute(
                f"UPDATE tasks SET {assignments} WHERE id=?", [*values.values(), task_id]
            )
            return await self.get_task(task_id)

    async def delete_task(self, task_id: str) -> None:
        async with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM tasks WHERE id=?", (task_id,))
            if not cursor.rowcount:
                raise NotFoundError(f"task not found: {task_id}")

    # Timer sessions

    async def active_timer(self) -> dict[str, Any] | None:
        async with self.transaction() as conn:
            row = conn.execute(
                """
                SELECT s.*, t.title AS task_title FROM time_sessions s
                LEFT JOIN tasks t ON t.id = s.task_id
                WHERE s.is_active=1 ORDER BY s.start_time DESC LIMIT 1
                """
            ).fetchone()
        return _session_from_row(row) if row is not None else None

    async def start_timer(self, task_id: str, notes: str = "") -> dict[str, Any]:
        async with self.transaction() as conn:
            task = await self.get_task(task_id)
            running = await self.active_timer()
            if running is not None:
                label = running.get("task_title") or running["task_id"]
                raise ValidationError(f"a timer is already running for \"{label}\"")
            session_id = new_id("ses")
            stamp = now_iso()
            conn.execute(
                """
                INSERT INTO time_sessions(
                  id, task_id, start_time, end_time, duration_seconds, notes, is_active, created_at
                ) VALUES(?,?,?,NULL,NULL,?,1,?)
                """,
                (session_id, task_id, stamp, notes, stamp),
            )
            session = await self._get_session(session_id)
        session["task_title"] = task["title"]
        return session

    async def stop_timer(self, session_id: str, notes: str | None = None) -> dict[str, Any]:
        async with self.transaction() as conn:
            session = await self._get_session(session_id)
            if not session["is_active"]:
                raise ValidationError(f"timer session already stopped: {session_id}")
            ended = datetime.now(UTC)
            started = datetime.fromisoformat(session["start_time"])
            duration = max(0, int((ended - started).total_seconds()))
            conn.execute(
                "UPDATE time_sessions SET end_time=?, duration_seconds=?, is_active=0, "
                "notes=COALESCE(?, notes) WHERE id=?",
                (ended.isoformat(), duration, notes, session_id),
            )
            conn.execute(
                "UPDATE tasks SET actual_time = actual_time + ?, updated_at=? WHERE id=?",
                (duration // 60, ended.isoformat(), session["task_id"]),
            )
            stopped = await self._get_session(session_id)
            title_row = conn.execute(
                "SELECT title FROM tasks WHERE id=?", (session["task_id"],)
            ).fetchone()
        stopped["task_title"] = title_row["title"] if title_row is not None else None
        return stopped

    async def _get_session(self, session_id: str) -> dict[str, Any]:
        async with self.transaction() as conn:
            row = conn.execute("SELECT * FROM time_sessions WHERE id=?", (session_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"timer session not found: {session_id}")
        return _session_from_row(row)

    async def time_stats(self, time_range: TimeRange) -> dict[str, Any]:
        # Stored stamps are UTC ISO strings; compare in the same zone.
        start = time_range.start.astimezone(UTC).isoformat()
        end = time_range.end.astimezone(UTC).isoformat()
        now = datetime.now(UTC)
        async with self.transaction() as conn:
            sessions = conn.execute(
                """
                SELECT s.*, t.title AS task_title FROM time_sessions s
                LEFT JOIN tasks t ON t.id = s.task_id
                WHERE s.start_time >= ? AND s.start_time < ?
                """,
                (start, end),
            ).fetchall()
            completed = conn.execute(
                "SELECT COUNT(*) FROM tasks WHERE completed_at >= ? AND completed_at < ?",
                (start, end),
            ).fetchone()[0]
            created = conn.execute(
                "SELECT COUNT(*) FROM tasks WHERE created_at >= ? AND created_at < ?",
                (start, end),
            ).fetchone()[0]
        per_task: dict[str, dict[str, Any]] = {}
        total = 0
        for row in sessions:
            seconds = row["duration_seconds"]
            if seconds is None:
                elapsed = now - datetime.fromisoformat(row["start_time"])
                seconds = max(0, int(elapsed.total_seconds()))
            total += seconds
            entry = per_task.setdefault(
                row["task_id"],
                {
                    "task_id": row["task_id"],
                    "title": row["task_title"],
                    "seconds": 0,
                    "sessions": 0,
                },
            )
            entry["seconds"] += seconds
            entry["sessions"] += 1
        by_task = sorted(per_task.values(), key=lambda item: item["seconds"], reverse=True)
        return {
            "start": start,
            "end": end,
            "total_seconds": total,
            "session_count": len(sessions),
            "average_session_seconds": total // len(sessions) if sessions else 0,
            "tasks_completed": int(completed),
            "tasks_created": int(created),
            "by_task": by_task,
        }
