"""Compact tool-result summaries fed back to the model."""

from __future__ import annotations

import json
from typing import Any

from kirapilot.tools.types import ToolResult

MAX_LISTED_TASKS = 20
MAX_RAW_CHARS = 500

STATUS_GROUPS = (
    ("pending", "Pending"),
    ("in_progress", "In Progress"),
    ("completed", "Completed"),
)
_ENTITY_FIELDS = ("id", "title", "status", "priority", "due_date", "scheduled_date")


def group_tasks(tasks: list[dict[str, Any]]) -> dict[str, list[str]]:
    """Titles keyed by display group; unknown statuses land in Pending."""
    groups: dict[str, list[str]] = {label: [] for _, label in STATUS_GROUPS}
    labels = dict(STATUS_GROUPS)
    for task in tasks[:MAX_LISTED_TASKS]:
        title = task.get("title")
        if not isinstance(title, str):
            continue
        label = labels.get(str(task.get("status")), "Pending")
        groups[label].append(title)
    return groups


def summarize_tasks(tasks: list[dict[str, Any]], total: int | None = None) -> str:
    total = len(tasks) if total is None else total
    if not tasks:
        return "No tasks found"
    header = f"Found {total} task" + ("" if total == 1 else "s")
    if total > MAX_LISTED_TASKS:
        header += f" (showing first {MAX_LISTED_TASKS})"
    sections = [
        f"{label} ({len(titles)}): " + ", ".join(f'"{title}"' for title in titles)
        for label, titles in group_tasks(tasks).items()
        if titles
    ]
    return f"{header}: " + " ; ".join(sections)


def summarize_entity(data: dict[str, Any]) -> str:
    parts = [f"{key}={data[key]}" for key in _ENTITY_FIELDS if data.get(key) not in (None, "")]
    return ", ".join(parts)


def _compact(data: Any) -> str:
    text = json.dumps(data, default=str, separators=(",", ":"))
    return text if len(text) <= MAX_RAW_CHARS else text[:MAX_RAW_CHARS] + "..."


def format_observation(tool_name: str, result: ToolResult) -> str:
    """Summary text for an Observation line, without the ``Observation:`` prefix."""
    if not result.success:
        return f"Error: {result.error or result.message or 'tool failed'}"
    data = result.data
    if isinstance(data, dict) and isinstance(data.get("tasks"), list):
        total = data.get("total")
        return summarize_tasks(data["tasks"], total if isinstance(total, int) else None)
    if tool_name == "timer_status" and isinstance(data, dict):
        if not data.get("active"):
            return "No timer is currently running"
        return f'Timer is running for: "{data.get("task_title") or data.get("task_id")}"'
    if isinstance(data, dict) and "title" in data:
        details = summarize_entity(data)
        return f"{result.message} ({details})" if result.message else details
    if result.message:
        return result.message
    return f"Tool executed successfully: {_compact(data)}"


def synthesize_answer(tool_name: str | None, result: ToolResult | None, fallback: str) -> str:
    """Short user-facing answer built from the last observation when the model never answered."""
    if result is None:
        return fallback
    if not result.success:
        return f"I couldn't complete that: {result.error or result.message}"
    data = result.data
    if isinstance(data, dict) and isinstance(data.get("tasks"), list):
        tasks = data["tasks"]
        if not tasks:
            return "You have no tasks matching that request."
        lines = ["Here are your tasks:"]
        for label, titles in group_tasks(tasks).items():
            if titles:
                lines.append(f"{label}: " + ", ".join(titles))
        total = data.get("total") if isinstance(data.get("total"), int) else len(tasks)
        if total > MAX_LISTED_TASKS:
            lines.append(f"(showing {MAX_LISTED_TASKS} of {total})")
        return "\n".join(lines)
    if result.message:
        return result.message
    return format_observation(tool_name or "", result)
