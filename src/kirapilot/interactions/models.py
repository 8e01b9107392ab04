"""Interaction log records."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from kirapilot.ids import new_id


class DataClassification(str, Enum):
    PUBLIC = "public"
    INTERNAL = "internal"
    CONFIDENTIAL = "confidential"
    SENSITIVE = "sensitive"


class LogLevel(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass(slots=True)
class PerformanceMetrics:
    total_time_ms: int = 0
    llm_time_ms: int = 0
    input_tokens: int | None = None
    output_tokens: int | None = None
    memory_usage_mb: float | None = None


@dataclass(slots=True)
class InteractionLog:
    session_id: str
    user_message: str
    ai_response: str
    model_info: dict[str, Any]
    system_prompt: str | None = None
    context: dict[str, Any] = field(default_factory=dict)
    actions: list[dict[str, Any]] = field(default_factory=list)
    suggestions: list[dict[str, Any]] = field(default_factory=list)
    reasoning: str | None = None
    performance_metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    error: str | None = None
    error_code: str | None = None
    contains_sensitive_data: bool = False
    data_classification: DataClassification = DataClassification.INTERNAL
    id: str = field(default_factory=lambda: new_id("log"))
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def model_type(self) -> str:
        return str(self.model_info.get("provider") or "unknown")


@dataclass(slots=True)
class ToolExecutionLog:
    tool_name: str
    arguments: dict[str, Any]
    result: dict[str, Any]
    execution_time_ms: int
    success: bool
    interaction_log_id: str | None = None
    error: str | None = None
    id: str = field(default_factory=lambda: new_id("tex"))
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


@dataclass(slots=True)
class LoggingConfig:
    enabled: bool = True
    max_logs: int = 10000
    retention_days: int = 30
    log_sensitive_data: bool = False
    log_level: LogLevel = LogLevel.INFO

    @property
    def debug(self) -> bool:
        return self.log_level is LogLevel.DEBUG

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["log_level"] = self.log_level.value
        return payload
