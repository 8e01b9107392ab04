"""Tool catalogue types."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from kirapilot.ids import new_id


class PermissionLevel(str, Enum):
    READ_ONLY = "ReadOnly"
    MODIFY_TASKS = "ModifyTasks"
    TIMER_CONTROL = "TimerControl"
    FULL_ACCESS = "FullAccess"


def parse_permissions(value: str | Iterable[str | PermissionLevel]) -> frozenset[PermissionLevel]:
    items = value.split(",") if isinstance(value, str) else value
    granted: set[PermissionLevel] = set()
    for item in items:
        if isinstance(item, PermissionLevel):
            granted.add(item)
            continue
        token = item.strip()
        if not token:
            continue
        for level in PermissionLevel:
            if token.lower() in {level.value.lower(), level.name.lower()}:
                granted.add(level)
                break
        else:
            raise ValueError(f"unknown permission level: {token}")
    return frozenset(granted)


def permits(granted: frozenset[PermissionLevel], required: frozenset[PermissionLevel]) -> bool:
    return PermissionLevel.FULL_ACCESS in granted or required <= granted


@dataclass(slots=True)
class ToolCall:
    name: str
    args: dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: new_id("call"))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "args": dict(self.args)}


@dataclass(slots=True)
class ToolResult:
    success: bool
    data: Any = None
    message: str = ""
    execution_time_ms: int = 0
    error: str | None = None

    @classmethod
    def ok(cls, data: Any, message: str = "") -> ToolResult:
        return cls(success=True, data=data, message=message)

    @classmethod
    def failure(cls, error: str, message: str = "") -> ToolResult:
        return cls(success=False, data=None, message=message or error, error=error)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": self.data,
            "message": self.message,
            "execution_time_ms": self.execution_time_ms,
            "error": self.error,
        }


@dataclass(slots=True)
class ToolContext:
    user_message: str
    conversation_history: list[str] = field(default_factory=list)
    active_task_id: str | None = None
    active_timer_session_id: str | None = None
    # Most recent first.
    recent_task_ids: list[str] = field(default_factory=list)
    current_time: datetime = field(default_factory=lambda: datetime.now().astimezone())
    user_preferences: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    def remember_task(self, task_id: str, limit: int = 10) -> None:
        if task_id in self.recent_task_ids:
            self.recent_task_ids.remove(task_id)
        self.recent_task_ids.insert(0, task_id)
        del self.recent_task_ids[limit:]


@dataclass(slots=True)
class ToolSuggestion:
    tool_name: str
    score: float
    reason: str
    inferred_args: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ToolExample:
    request: str
    args: dict[str, Any]


# A rule is a regex (first group wins) or a callable over the context.
InferenceRule = str | Callable[[ToolContext], Any]
ToolExecutor = Callable[[dict[str, Any], ToolContext], Awaitable[ToolResult]]


@dataclass(slots=True)
class ToolDefinition:
    name: str
    description: str
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    required_permissions: frozenset[PermissionLevel] = frozenset({PermissionLevel.READ_ONLY})
    output_schema: dict[str, Any] | None = None
    examples: list[ToolExample] = field(default_factory=list)
    triggers: tuple[str, ...] = ()
    weight: float = 0.0
    rules: dict[str, InferenceRule] = field(default_factory=dict)
    infer_optional: tuple[str, ...] = ()

    @property
    def properties(self) -> dict[str, Any]:
        props = self.parameters.get("properties", {})
        return props if isinstance(props, dict) else {}

    @property
    def required(self) -> list[str]:
        required = self.parameters.get("required", [])
        return list(required) if isinstance(required, list) else []

    def signature_hint(self) -> str:
        """Compact ``{"arg": type}`` hint used in prompts."""
        parts: list[str] = []
        for name, spec in self.properties.items():
            kind = spec.get("type", "string") if isinstance(spec, dict) else "string"
            if isinstance(spec, dict) and "enum" in spec:
                kind = "|".join(str(v) for v in spec["enum"])
            marker = "" if name in self.required else "?"
            parts.append(f'"{name}{marker}": {kind}')
        return "{" + ", ".join(parts) + "}"


@dataclass(slots=True)
class ToolUsageStats:
    total_executions: int = 0
    successful_executions: int = 0
    average_execution_time_ms: float = 0.0
    last_used: datetime | None = None
