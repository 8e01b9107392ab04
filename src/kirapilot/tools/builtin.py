"""Assemble the built-in tool catalogue."""

from __future__ import annotations

from collections.abc import Iterable

from kirapilot.config import Settings, get_settings
from kirapilot.tools.analytics import register_analytics_tools
from kirapilot.tools.registry import SuggestionWeights, ToolExecutionRecorder, ToolRegistry
from kirapilot.tools.repository import TaskRepository
from kirapilot.tools.tasks import register_task_tools
from kirapilot.tools.timer import register_timer_tools
from kirapilot.tools.types import PermissionLevel, parse_permissions


def build_tool_registry(
    repo: TaskRepository,
    permissions: Iterable[PermissionLevel] | str | None = None,
    *,
    recorder: ToolExecutionRecorder | None = None,
    settings: Settings | None = None,
) -> ToolRegistry:
    settings = settings or get_settings()
    granted = parse_permissions(
        settings.default_permissions if permissions is None else permissions
    )
    registry = ToolRegistry(
        granted,
        weights=SuggestionWeights.from_settings(settings),
        transaction=repo.transaction,
        recorder=recorder,
    )
    register_task_tools(registry, repo)
    register_timer_tools(registry, repo)
    register_analytics_tools(registry, repo)
    registry.freeze()
    return registry
