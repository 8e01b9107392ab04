"""Reasoning chain records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from kirapilot.ids import new_id
from kirapilot.tools.types import ToolCall, ToolResult


class StepType(str, Enum):
    THOUGHT = "thought"
    ACTION = "action"
    OBSERVATION = "observation"
    FINAL_ANSWER = "final_answer"
    ERROR = "error"


@dataclass(slots=True)
class ReActStep:
    step_type: StepType
    content: str
    tool_call: ToolCall | None = None
    tool_result: ToolResult | None = None
    id: str = field(default_factory=lambda: new_id("step"))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    duration_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "step_type": self.step_type.value,
            "content": self.content,
            "tool_call": self.tool_call.to_dict() if self.tool_call else None,
            "tool_result": self.tool_result.to_dict() if self.tool_result else None,
            "timestamp": self.timestamp.isoformat(),
            "duration_ms": self.duration_ms,
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class ReActChain:
    user_request: str
    id: str = field(default_factory=lambda: new_id("chain"))
    steps: list[ReActStep] = field(default_factory=list)
    final_response: str = ""
    completed: bool = False
    iterations: int = 0
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    completed_at: datetime | None = None
    total_duration_ms: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def add_step(
        self,
        step_type: StepType,
        content: str,
        *,
        tool_call: ToolCall | None = None,
        tool_result: ToolResult | None = None,
        duration_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> ReActStep:
        step = ReActStep(
            step_type=step_type,
            content=content,
            tool_call=tool_call,
            tool_result=tool_result,
            duration_ms=duration_ms,
            metadata=dict(metadata or {}),
        )
        # Wall clocks can step backwards; keep step order and timestamps aligned.
        if self.steps and step.timestamp < self.steps[-1].timestamp:
            step.timestamp = self.steps[-1].timestamp
        self.steps.append(step)
        return step

    def finish(self, final_response: str, *, completed: bool) -> None:
        self.final_response = final_response
        self.completed = completed and bool(final_response.strip())
        self.completed_at = datetime.now(UTC)
        self.total_duration_ms = int((self.completed_at - self.started_at).total_seconds() * 1000)

    def step_breakdown(self) -> dict[str, int]:
        counts = {step_type.value: 0 for step_type in StepType}
        for step in self.steps:
            counts[step.step_type.value] += 1
        return counts

    def tool_steps(self) -> list[ReActStep]:
        return [step for step in self.steps if step.tool_result is not None]

    def last_observation(self) -> ReActStep | None:
        for step in reversed(self.steps):
            if step.step_type is StepType.OBSERVATION:
                return step
        return None

    def last_thought(self) -> ReActStep | None:
        for step in reversed(self.steps):
            if step.step_type is StepType.THOUGHT:
                return step
        return None

    def has_errors(self) -> bool:
        return any(step.step_type is StepType.ERROR for step in self.steps)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_request": self.user_request,
            "steps": [step.to_dict() for step in self.steps],
            "final_response": self.final_response,
            "completed": self.completed,
            "iterations": self.iterations,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "total_duration_ms": self.total_duration_ms,
            "metadata": dict(self.metadata),
        }


@dataclass(slots=True)
class ReActDebugInfo:
    chain_id: str
    total_iterations: int
    total_steps: int
    step_breakdown: dict[str, int]
    total_duration_ms: int
    total_tool_time_ms: int
    successful_tools: int
    failed_tools: int
    tool_success_rate: float
    average_step_duration_ms: float
    completion_status: str
    reasoning_quality_score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "chain_id": self.chain_id,
            "total_iterations": self.total_iterations,
            "total_steps": self.total_steps,
            "step_breakdown": dict(self.step_breakdown),
            "total_duration_ms": self.total_duration_ms,
            "total_tool_time_ms": self.total_tool_time_ms,
            "successful_tools": self.successful_tools,
            "failed_tools": self.failed_tools,
            "tool_success_rate": self.tool_success_rate,
            "average_step_duration_ms": self.average_step_duration_ms,
            "completion_status": self.completion_status,
            "reasoning_quality_score": self.reasoning_quality_score,
        }
