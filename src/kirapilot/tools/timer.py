"""Timer tools."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from kirapilot.errors import NotFoundError
from kirapilot.tools.registry import ToolRegistry
from kirapilot.tools.repository import TaskRepository
from kirapilot.tools.tasks import QUOTED, resolve_task
from kirapilot.tools.types import (
    PermissionLevel,
    ToolContext,
    ToolDefinition,
    ToolExample,
    ToolResult,
)


def _elapsed_seconds(session: dict[str, Any]) -> int:
    started = datetime.fromisoformat(session["start_time"])
    return max(0, int((datetime.now(UTC) - started).total_seconds()))


def format_duration(seconds: int) -> str:
    hours, rest = divmod(max(0, int(seconds)), 3600)
    minutes = rest // 60
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m" if minutes else f"{rest}s"


def register_timer_tools(registry: ToolRegistry, repo: TaskRepository) -> None:
    async def start_timer(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        task = await resolve_task(repo, args, ctx)
        session = await repo.start_timer(task["id"], str(args.get("notes") or ""))
        ctx.active_timer_session_id = session["id"]
        ctx.active_task_id = task["id"]
        ctx.remember_task(task["id"])
        return ToolResult.ok(session, f'Started timer for "{task["title"]}"')

    async def stop_timer(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        session_id = args.get("session_id") or ctx.active_timer_session_id
        if not session_id:
            active = await repo.active_timer()
            if active is None:
                raise NotFoundError("no timer is running")
            session_id = active["id"]
        session = await repo.stop_timer(str(session_id), args.get("notes"))
        if ctx.active_timer_session_id == session["id"]:
            ctx.active_timer_session_id = None
        title = session.get("task_title") or session["task_id"]
        spent = format_duration(session.get("duration_seconds") or 0)
        return ToolResult.ok(session, f'Stopped timer for "{title}" after {spent}')

    async def timer_status(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        active = await repo.active_timer()
        if active is None:
            return ToolResult.ok({"active": False}, "No timer is running")
        elapsed = _elapsed_seconds(active)
        data = {**active, "active": True, "elapsed_seconds": elapsed}
        title = active.get("task_title") or active["task_id"]
        return ToolResult.ok(data, f'Timer running for "{title}" ({format_duration(elapsed)})')

    registry.register(
        ToolDefinition(
            name="start_timer",
            description="Start tracking time on a task",
            parameters={
                "type": "object",
                "properties": {
                    "task_id": {"type": "string"},
                    "task_title": {"type": "string"},
                    "notes": {"type": "string"},
                },
            },
            required_permissions=frozenset({PermissionLevel.TIMER_CONTROL}),
            examples=[ToolExample('start a timer for "Review PR"', {"task_title": "Review PR"})],
            triggers=("start timer", "start a timer", "start tracking", "begin working"),
            rules={"task_title": QUOTED},
            infer_optional=("task_title",),
        ),
        start_timer,
    )
    registry.register(
        ToolDefinition(
            name="stop_timer",
            description="Stop the running timer and record the session",
            parameters={
                "type": "object",
                "properties": {
                    "session_id": {"type": "string"},
                    "notes": {"type": "string"},
                },
            },
            required_permissions=frozenset({PermissionLevel.TIMER_CONTROL}),
            examples=[ToolExample("stop the timer", {})],
            triggers=("stop timer", "stop the timer", "stop tracking", "pause timer"),
        ),
        stop_timer,
    )
    registry.register(
        ToolDefinition(
            name="timer_status",
            description="Show whether a timer is running and for how long",
            required_permissions=frozenset({PermissionLevel.READ_ONLY}),
            examples=[ToolExample("is my timer running?", {})],
            triggers=("timer running", "timer status", "how long have i"),
        ),
        timer_status,
    )
