"""Productivity analytics tool."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from kirapilot.tools.registry import ToolRegistry
from kirapilot.tools.repository import TaskFilter, TaskRepository, TimeRange
from kirapilot.tools.types import (
    PermissionLevel,
    ToolContext,
    ToolDefinition,
    ToolExample,
    ToolResult,
)

PERIODS = ("today", "week", "month")


def period_range(period: str, now: datetime) -> TimeRange:
    """Calendar range ending now's day: today, the current ISO week, or the current month."""
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == "today":
        start = start_of_day
    elif period == "month":
        start = start_of_day.replace(day=1)
    else:
        start = start_of_day - timedelta(days=start_of_day.weekday())
    return TimeRange(start=start, end=start_of_day + timedelta(days=1))


def _period_from_message(ctx: ToolContext) -> str | None:
    message = ctx.user_message.lower()
    if "today" in message:
        return "today"
    if "month" in message:
        return "month"
    if "week" in message:
        return "week"
    return None


def register_analytics_tools(registry: ToolRegistry, repo: TaskRepository) -> None:
    async def productivity_analytics(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        period = str(args.get("period") or "week")
        time_range = period_range(period, ctx.current_time)
        stats = await repo.time_stats(time_range)
        # Task counts are a current snapshot across every task, not scoped to the period.
        tasks = await repo.find_tasks(TaskFilter(today=ctx.current_time.date()))
        overdue = await repo.find_tasks(TaskFilter(overdue=True, today=ctx.current_time.date()))
        counts = {"pending": 0, "in_progress": 0, "completed": 0, "cancelled": 0}
        for task in tasks:
            counts[task["status"]] = counts.get(task["status"], 0) + 1
        open_or_done = counts["pending"] + counts["in_progress"] + counts["completed"]
        completion_rate = round(counts["completed"] / open_or_done, 3) if open_or_done else 0.0
        data = {
            "period": period,
            **stats,
            "focus_minutes": stats["total_seconds"] // 60,
            "all_time_task_counts": counts,
            "overdue": len(overdue),
            "all_time_completion_rate": completion_rate,
        }
        message = (
            f"{data['focus_minutes']} minutes tracked, "
            f"{stats['tasks_completed']} tasks completed ({period})"
        )
        return ToolResult.ok(data, message)

    registry.register(
        ToolDefinition(
            name="productivity_analytics",
            description="Summarize tracked time, completed tasks and completion rate for a period",
            parameters={
                "type": "object",
                "properties": {"period": {"type": "string", "enum": list(PERIODS)}},
            },
            required_permissions=frozenset({PermissionLevel.READ_ONLY}),
            examples=[ToolExample("how productive was I this week?", {"period": "week"})],
            triggers=("productivity", "how productive", "time spent", "analytics", "stats"),
            rules={"period": _period_from_message},
            infer_optional=("period",),
        ),
        productivity_analytics,
    )
