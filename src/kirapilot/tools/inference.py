"""Argument inference from free-form user text."""

from __future__ import annotations

import re
from datetime import date, timedelta
from typing import Any

from kirapilot.tools.types import ToolContext, ToolDefinition

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
DATE_PARAMS = {"date", "due_date", "scheduled_date"}

_ISO_DATE = re.compile(r"\b(\d{4}-\d{2}-\d{2})\b")
_MINUTES = re.compile(r"(\d+)\s*(minute|min|hour|hr)s?\b", re.IGNORECASE)

_PRIORITY_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("urgent", re.compile(r"\b(urgent|critical|asap)\b")),
    ("high", re.compile(r"\b(high(?:[\s-]priority)?|important)\b")),
    ("low", re.compile(r"\b(low(?:[\s-]priority)?|minor)\b")),
    ("medium", re.compile(r"\b(medium|normal)(?:[\s-]priority)?\b")),
)

_STATUS_PATTERNS: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("in_progress", re.compile(r"\b(in[\s_-]progress|ongoing|working on|started)\b")),
    ("completed", re.compile(r"\b(completed?|done|finished)\b")),
    ("pending", re.compile(r"\b(pending|todo|to do|not started|open)\b")),
)


def _words(message: str) -> set[str]:
    return set(re.findall(r"[a-z']+", message.lower()))


def infer_date(message: str, now: date) -> str | None:
    """Resolve today/yesterday/tomorrow, ISO literals and weekday names to ``YYYY-MM-DD``."""
    lowered = message.lower()
    words = _words(lowered)
    if words & {"today", "today's", "tonight"}:
        return now.isoformat()
    if "tomorrow" in words or "tomorrow's" in words:
        return (now + timedelta(days=1)).isoformat()
    if "yesterday" in words or "yesterday's" in words:
        return (now - timedelta(days=1)).isoformat()
    match = _ISO_DATE.search(message)
    if match:
        try:
            return date.fromisoformat(match.group(1)).isoformat()
        except ValueError:
            pass
    for index, name in enumerate(WEEKDAYS):
        found = re.search(rf"\b(next\s+)?{name}\b", lowered)
        if not found:
            continue
        ahead = (index - now.weekday()) % 7
        if found.group(1) and ahead == 0:
            ahead = 7
        return (now + timedelta(days=ahead)).isoformat()
    return None


def infer_priority(message: str) -> str | None:
    lowered = message.lower()
    for value, pattern in _PRIORITY_PATTERNS:
        if pattern.search(lowered):
            return value
    return None


def infer_status(message: str) -> str | None:
    lowered = message.lower()
    for value, pattern in _STATUS_PATTERNS:
        if pattern.search(lowered):
            return value
    return None


def infer_task_id(ctx: ToolContext) -> str | None:
    if ctx.active_task_id:
        return ctx.active_task_id
    return ctx.recent_task_ids[0] if ctx.recent_task_ids else None


def infer_minutes(message: str) -> int | None:
    match = _MINUTES.search(message)
    if not match:
        return None
    amount = int(match.group(1))
    return amount * 60 if match.group(2).lower() in {"hour", "hr"} else amount


def extract_with_pattern(message: str, pattern: str) -> str | None:
    match = re.search(pattern, message, re.IGNORECASE)
    if not match:
        return None
    value = (match.group(1) if match.groups() else match.group(0)).strip()
    return value.strip(" \t\"'.") or None


def _coerce(value: Any, spec: dict[str, Any]) -> Any:
    kind = spec.get("type")
    if kind == "integer" and isinstance(value, str) and value.isdigit():
        return int(value)
    if kind == "boolean" and isinstance(value, str):
        return value.lower() in {"1", "true", "yes"}
    return value


def infer_parameter(definition: ToolDefinition, name: str, ctx: ToolContext) -> Any:
    """Best-effort value for one parameter; tool-declared rules take precedence."""
    spec = definition.properties.get(name, {})
    rule = definition.rules.get(name)
    if rule is not None:
        value = extract_with_pattern(ctx.user_message, rule) if isinstance(rule, str) else rule(ctx)
        if value is not None:
            return _coerce(value, spec)
    message = ctx.user_message
    if name in DATE_PARAMS:
        return infer_date(message, ctx.current_time.date())
    if name == "task_id":
        return infer_task_id(ctx)
    if name == "priority":
        return infer_priority(message)
    if name == "status":
        return infer_status(message)
    if name in {"time_estimate", "minutes"}:
        return infer_minutes(message)
    return None


def infer_arguments(
    definition: ToolDefinition, args: dict[str, Any], ctx: ToolContext
) -> dict[str, Any]:
    """Return ``args`` plus inferred values for missing required and opted-in parameters."""
    merged = dict(args)
    targets = [name for name in definition.required if name not in merged]
    targets += [
        name
        for name in definition.infer_optional
        if name not in merged and name not in targets and name in definition.properties
    ]
    for name in targets:
        value = infer_parameter(definition, name, ctx)
        if value is not None:
            merged[name] = value
    return merged
