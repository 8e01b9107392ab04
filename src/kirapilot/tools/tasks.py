"""Task CRUD tools."""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from kirapilot.errors import NotFoundError, ValidationError
from kirapilot.tools.inference import infer_priority, infer_status, infer_task_id
from kirapilot.tools.registry import ToolRegistry
from kirapilot.tools.repository import (
    TASK_PRIORITIES,
    TASK_STATUSES,
    TaskFilter,
    TaskRepository,
)
from kirapilot.tools.types import (
    PermissionLevel,
    ToolContext,
    ToolDefinition,
    ToolExample,
    ToolResult,
)

QUOTED = r"(?:^|\s)[\"“']([^\"”']+)[\"”'](?=$|\s|[.,!?])"

_CREATE_TITLE = re.compile(
    r"\b(?:create|add|new|make)\s+(?:a\s+)?(?:new\s+)?task\b"
    r"(?:\s+(?:called|named|titled))?\s*[:\-]?\s*(.+)$",
    re.IGNORECASE,
)
_TRAILING_DATE = re.compile(
    r"\s+(?:for|due|by|on)\s+(?:today|tonight|tomorrow|next\s+\w+|monday|tuesday|wednesday"
    r"|thursday|friday|saturday|sunday|\d{4}-\d{2}-\d{2})\b.*$",
    re.IGNORECASE,
)
_TRAILING_PRIORITY = re.compile(
    r"\s+(?:with\s+)?(?:low|medium|high|urgent)(?:[\s-]priority)?\s*$", re.IGNORECASE
)
_RENAME = re.compile(
    r"\b(?:rename|change\s+(?:the\s+)?title)(?:\s+.+?)?"
    r"\s+to\s+[\"“']?(.+?)[\"”']?\s*$",
    re.IGNORECASE,
)


def title_from_message(ctx: ToolContext) -> str | None:
    """Pull a task title out of "create task: X", "add task called X" or quoted text."""
    message = ctx.user_message.strip()
    quoted = re.search(QUOTED, message)
    if quoted:
        return quoted.group(1).strip() or None
    match = _CREATE_TITLE.search(message)
    if not match:
        return None
    title = _TRAILING_DATE.sub("", match.group(1))
    title = _TRAILING_PRIORITY.sub("", title)
    return title.strip(" \t.\"'") or None


def rename_from_message(ctx: ToolContext) -> str | None:
    match = _RENAME.search(ctx.user_message.strip())
    return match.group(1).strip(" \t.") if match else None


def _flag(*phrases: str) -> Callable[[ToolContext], bool | None]:
    def rule(ctx: ToolContext) -> bool | None:
        message = ctx.user_message.lower()
        return True if any(phrase in message for phrase in phrases) else None

    return rule


async def resolve_task(
    repo: TaskRepository, args: dict[str, Any], ctx: ToolContext
) -> dict[str, Any]:
    """Find the target task by id, by title, or from the conversation's recent tasks."""
    task_id = args.get("task_id")
    if task_id:
        return await repo.get_task(str(task_id))
    title = str(args.get("task_title") or "").strip()
    if title:
        matches = await repo.find_tasks(TaskFilter(search=title))
        if not matches:
            raise NotFoundError(f'no task matches "{title}"')
        exact = [task for task in matches if task["title"].lower() == title.lower()]
        return exact[0] if exact else matches[0]
    inferred = infer_task_id(ctx)
    if inferred:
        return await repo.get_task(inferred)
    raise ValidationError("missing required field: task_id", field="task_id")


def register_task_tools(registry: ToolRegistry, repo: TaskRepository) -> None:
    async def get_tasks(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        status = args.get("status")
        task_filter = TaskFilter(
            status=[str(status)] if status else [],
            priority=args.get("priority"),
            date=args.get("date"),
            overdue=bool(args.get("overdue", False)),
            this_week=bool(args.get("this_week", False)),
            search=args.get("search"),
            tags=list(args.get("tags") or []),
            limit=args.get("limit"),
            today=ctx.current_time.date(),
        )
        if task_filter.this_week or task_filter.overdue:
            # A relative range replaces the single-day filter.
            task_filter.date = None
        tasks = await repo.find_tasks(task_filter)
        for task in tasks[:3]:
            ctx.remember_task(task["id"])
        noun = "task" if len(tasks) == 1 else "tasks"
        return ToolResult.ok({"tasks": tasks, "total": len(tasks)}, f"Found {len(tasks)} {noun}")

    async def create_task(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        task = await repo.create_task(args)
        ctx.remember_task(task["id"])
        return ToolResult.ok(task, f'Created task: "{task["title"]}"')

    async def update_task(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        task = await resolve_task(repo, args, ctx)
        patch = {
            key: args[key]
            for key in ("title", "description", "status", "priority", "due_date", "scheduled_date")
            if args.get(key) is not None
        }
        if not patch:
            status = infer_status(ctx.user_message)
            priority = infer_priority(ctx.user_message)
            if status:
                patch["status"] = status
            if priority:
                patch["priority"] = priority
        if not patch:
            raise ValidationError("nothing to update; provide a field to change")
        updated = await repo.update_task(task["id"], patch)
        ctx.remember_task(updated["id"])
        changed = ", ".join(sorted(patch))
        return ToolResult.ok(updated, f'Updated task "{updated["title"]}" ({changed})')

    async def delete_task(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        task = await resolve_task(repo, args, ctx)
        await repo.delete_task(task["id"])
        if task["id"] in ctx.recent_task_ids:
            ctx.recent_task_ids.remove(task["id"])
        return ToolResult.ok(
            {"id": task["id"], "title": task["title"], "deleted": True},
            f'Deleted task: "{task["title"]}"',
        )

    date_field = {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}$"}

    registry.register(
        ToolDefinition(
            name="get_tasks",
            description="List tasks, optionally filtered by status, priority, date or search text",
            parameters={
                "type": "object",
                "properties": {
                    "status": {"type": "string", "enum": list(TASK_STATUSES)},
                    "priority": {"type": "string", "enum": list(TASK_PRIORITIES)},
                    "date": {**date_field, "description": "Due or scheduled on this day"},
                    "overdue": {"type": "boolean"},
                    "this_week": {"type": "boolean"},
                    "search": {"type": "string", "minLength": 1},
                    "tags": {"type": "array", "items": {"type": "string"}},
                    "limit": {"type": "integer", "minimum": 1, "maximum": 100},
                },
            },
            required_permissions=frozenset({PermissionLevel.READ_ONLY}),
            output_schema={
                "type": "object",
                "properties": {"tasks": {"type": "array"}, "total": {"type": "integer"}},
            },
            examples=[
                ToolExample("list tasks for today", {"date": "2024-05-01"}),
                ToolExample("show my completed tasks", {"status": "completed"}),
            ],
            triggers=("list tasks", "show tasks", "my tasks", "what tasks", "to do"),
            weight=0.1,
            rules={
                "search": QUOTED,
                "overdue": _flag("overdue", "late"),
                "this_week": _flag("this week"),
                "limit": lambda ctx: 10 if "recent" in ctx.user_message.lower() else None,
            },
            infer_optional=(
                "date",
                "status",
                "priority",
                "search",
                "overdue",
                "this_week",
                "limit",
            ),
        ),
        get_tasks,
    )
    registry.register(
        ToolDefinition(
            name="create_task",
            description="Create a new task with a title and optional priority or due date",
            parameters={
                "type": "object",
                "properties": {
                    "title": {"type": "string", "minLength": 1},
                    "description": {"type": "string"},
                    "priority": {"type": "string", "enum": list(TASK_PRIORITIES)},
                    "due_date": date_field,
                    "scheduled_date": date_field,
                    "time_estimate": {"type": "integer", "minimum": 0, "maximum": 1440},
                    "tags": {"type": "array", "items": {"type": "string"}},
                },
                "required": ["title"],
            },
            required_permissions=frozenset({PermissionLevel.MODIFY_TASKS}),
            examples=[ToolExample("create task: Review PR", {"title": "Review PR"})],
            triggers=("create task", "add task", "new task", "add a task", "remind me to"),
            weight=0.1,
            rules={"title": title_from_message},
            infer_optional=("priority", "due_date", "time_estimate"),
        ),
        create_task,
    )
    registry.register(
        ToolDefinition(
            name="update_task",
            description="Update a task's title, status, priority or dates",
            parameters={
                "type": "object",
                "properties": {
                    "task_id": {"type": "string"},
                    "task_title": {"type": "string", "description": "Find the task by title"},
                    "title": {"type": "string", "minLength": 1},
                    "description": {"type": "string"},
                    "status": {"type": "string", "enum": list(TASK_STATUSES)},
                    "priority": {"type": "string", "enum": list(TASK_PRIORITIES)},
                    "due_date": date_field,
                    "scheduled_date": date_field,
                },
            },
            required_permissions=frozenset({PermissionLevel.MODIFY_TASKS}),
            examples=[
                ToolExample(
                    'mark "Review PR" as done',
                    {"task_title": "Review PR", "status": "completed"},
                ),
            ],
            triggers=("update task", "mark", "rename", "change the title", "set priority"),
            rules={"task_title": QUOTED, "title": rename_from_message},
            infer_optional=("task_title", "title"),
        ),
        update_task,
    )
    registry.register(
        ToolDefinition(
            name="delete_task",
            description="Delete a task permanently",
            parameters={
                "type": "object",
                "properties": {
                    "task_id": {"type": "string"},
                    "task_title": {"type": "string"},
                },
            },
            required_permissions=frozenset({PermissionLevel.MODIFY_TASKS}),
            examples=[ToolExample('delete the task "Old draft"', {"task_title": "Old draft"})],
            triggers=("delete task", "remove task", "delete the task"),
            rules={"task_title": QUOTED},
            infer_optional=("task_title",),
        ),
        delete_task,
    )
