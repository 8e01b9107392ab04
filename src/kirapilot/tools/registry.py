"""Permissioned tool registry with suggestion scoring and argument inference."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Callable, Iterable
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any, Protocol

from jsonschema import Draft202012Validator

from kirapilot.config import Settings, get_settings
from kirapilot.errors import KiraError, NotFoundError, PermissionDeniedError, classify_exception
from kirapilot.interactions.models import ToolExecutionLog
from kirapilot.tools.inference import infer_arguments
from kirapilot.tools.types import (
    PermissionLevel,
    ToolContext,
    ToolDefinition,
    ToolExecutor,
    ToolResult,
    ToolSuggestion,
    ToolUsageStats,
    permits,
)
from kirapilot.tools.validation import build_validator, validate_arguments

logger = logging.getLogger(__name__)

TransactionFactory = Callable[[], AbstractAsyncContextManager[Any]]


class ToolExecutionRecorder(Protocol):
    async def log_tool_execution(self, entry: ToolExecutionLog) -> None: ...


@dataclass(slots=True)
class SuggestionWeights:
    name_match: float = 0.8
    keyword: float = 0.2
    trigger: float = 0.6
    recency: float = 0.1
    threshold: float = 0.3

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> SuggestionWeights:
        settings = settings or get_settings()
        return cls(
            name_match=settings.suggest_name_weight,
            keyword=settings.suggest_keyword_weight,
            trigger=settings.suggest_trigger_weight,
            recency=settings.suggest_recency_weight,
            threshold=settings.suggest_threshold,
        )


@dataclass(slots=True)
class _RegisteredTool:
    definition: ToolDefinition
    executor: ToolExecutor
    validator: Draft202012Validator


class ToolRegistry:
    def __init__(
        self,
        permissions: Iterable[PermissionLevel] = (PermissionLevel.READ_ONLY,),
        *,
        weights: SuggestionWeights | None = None,
        transaction: TransactionFactory | None = None,
        recorder: ToolExecutionRecorder | None = None,
    ) -> None:
        self._tools: dict[str, _RegisteredTool] = {}
        self._granted = frozenset(permissions)
        self._weights = weights or SuggestionWeights()
        self._transaction = transaction
        self._recorder = recorder
        self._usage: dict[str, ToolUsageStats] = {}
        self._frozen = False

    @property
    def granted_permissions(self) -> frozenset[PermissionLevel]:
        return self._granted

    def register(self, definition: ToolDefinition, executor: ToolExecutor) -> None:
        if self._frozen:
            raise RuntimeError("tool registry is frozen; register tools at startup")
        if definition.name in self._tools:
            raise ValueError(f"tool already registered: {definition.name}")
        self._tools[definition.name] = _RegisteredTool(
            definition=definition,
            executor=executor,
            validator=build_validator(definition),
        )

    def freeze(self) -> None:
        self._frozen = True

    def with_permissions(self, permissions: Iterable[PermissionLevel]) -> ToolRegistry:
        """Same catalogue and usage stats, different grant set."""
        clone = ToolRegistry(
            permissions,
            weights=self._weights,
            transaction=self._transaction,
            recorder=self._recorder,
        )
        clone._tools = self._tools
        clone._usage = self._usage
        clone._frozen = True
        return clone

    def _admissible(self, tool: _RegisteredTool) -> bool:
        return permits(self._granted, tool.definition.required_permissions)

    def get_definition(self, name: str) -> ToolDefinition | None:
        tool = self._tools.get(name)
        return tool.definition if tool is not None else None

    def all_definitions(self) -> list[ToolDefinition]:
        return [tool.definition for tool in self._tools.values()]

    def definitions(self) -> list[ToolDefinition]:
        return [tool.definition for tool in self._tools.values() if self._admissible(tool)]

    def get_available_tools(self) -> list[str]:
        return [definition.name for definition in self.definitions()]

    def has_tool(self, name: str) -> bool:
        tool = self._tools.get(name)
        return tool is not None and self._admissible(tool)

    # Suggestions

    def _score(self, definition: ToolDefinition, ctx: ToolContext) -> tuple[float, list[str]]:
        weights = self._weights
        message = ctx.user_message.lower()
        score = 0.0
        reasons: list[str] = []
        if definition.name in message or definition.name.replace("_", " ") in message:
            score += weights.name_match
            reasons.append("mentions the tool name")
        keywords = {
            word for word in re.findall(r"[a-z]+", definition.description.lower()) if len(word) > 3
        }
        hits = sorted(word for word in keywords if re.search(rf"\b{word}\b", message))
        if hits:
            score += weights.keyword * len(hits)
            reasons.append("keywords: " + ", ".join(hits))
        triggers = [
            phrase
            for phrase in definition.triggers
            if re.search(rf"\b{re.escape(phrase)}\b", message)
        ]
        if triggers:
            score += weights.trigger
            reasons.append("trigger: " + triggers[0])
        if "task_id" in definition.properties and (ctx.active_task_id or ctx.recent_task_ids):
            score += weights.recency
            reasons.append("recent task in context")
        score += definition.weight
        return min(1.0, max(0.0, score)), reasons

    def suggest_tools(self, ctx: ToolContext) -> list[ToolSuggestion]:
        suggestions: list[ToolSuggestion] = []
        for tool in self._tools.values():
            if not self._admissible(tool):
                continue
            score, reasons = self._score(tool.definition, ctx)
            if score < self._weights.threshold:
                continue
            suggestions.append(
                ToolSuggestion(
                    tool_name=tool.definition.name,
                    score=round(score, 3),
                    reason="; ".join(reasons),
                    inferred_args=infer_arguments(tool.definition, {}, ctx),
                )
            )
        suggestions.sort(key=lambda item: item.score, reverse=True)
        return suggestions

    # Execution

    def _resolve(self, name: str) -> _RegisteredTool:
        tool = self._tools.get(name)
        if tool is None:
            known = ", ".join(self.get_available_tools()) or "none"
            raise NotFoundError(f"unknown tool '{name}' (available: {known})")
        if not self._admissible(tool):
            levels = tool.definition.required_permissions
            required = ", ".join(sorted(level.value for level in levels))
            raise PermissionDeniedError(
                f"You don't have permission to use the '{name}' tool. "
                f"Required permissions: {required}"
            )
        return tool

    async def _invoke(
        self, tool: _RegisteredTool, args: dict[str, Any], ctx: ToolContext
    ) -> ToolResult:
        if self._transaction is None:
            return await tool.executor(args, ctx)
        async with self._transaction():
            return await tool.executor(args, ctx)

    async def execute_tool(
        self, name: str, args: dict[str, Any] | None, ctx: ToolContext
    ) -> ToolResult:
        """Run one tool call; every failure comes back as an unsuccessful ToolResult."""
        started = time.monotonic()
        call_args: dict[str, Any] = dict(args or {})
        try:
            tool = self._resolve(name)
            call_args = infer_arguments(tool.definition, call_args, ctx)
            validate_arguments(tool.definition, call_args, tool.validator)
            result = await self._invoke(tool, call_args, ctx)
        except asyncio.CancelledError:
            raise
        except KiraError as exc:
            result = ToolResult.failure(exc.describe(), exc.user_message)
        except Exception as exc:
            logger.warning("tool %s raised %s: %s", name, type(exc).__name__, exc)
            error = classify_exception(exc)
            result = ToolResult.failure(error.describe(), error.user_message)
        result = replace(result, execution_time_ms=int((time.monotonic() - started) * 1000))
        if name in self._tools:
            self._record_usage(name, result)
        await self._record_execution(name, call_args, result, ctx)
        return result

    def _record_usage(self, name: str, result: ToolResult) -> None:
        stats = self._usage.setdefault(name, ToolUsageStats())
        stats.total_executions += 1
        if result.success:
            stats.successful_executions += 1
        stats.average_execution_time_ms += (
            result.execution_time_ms - stats.average_execution_time_ms
        ) / stats.total_executions
        stats.last_used = datetime.now(UTC)

    async def _record_execution(
        self, name: str, args: dict[str, Any], result: ToolResult, ctx: ToolContext
    ) -> None:
        if self._recorder is None:
            return
        chain_id = ctx.metadata.get("chain_id")
        entry = ToolExecutionLog(
            tool_name=name,
            arguments=args,
            result=result.to_dict(),
            execution_time_ms=result.execution_time_ms,
            success=result.success,
            interaction_log_id=str(chain_id) if chain_id else None,
            error=result.error,
        )
        try:
            await self._recorder.log_tool_execution(entry)
        except KiraError as exc:
            logger.warning("failed to record tool execution for %s: %s", name, exc.describe())

    def get_usage_stats(self) -> dict[str, ToolUsageStats]:
        return {name: replace(stats) for name, stats in self._usage.items()}
