"""Append-only interaction log backed by SQLite.

Every public ``log_*`` method returns the stored row id, or ``None`` when logging is
disabled or the record is below the configured level. Storage failures surface as
``StorageError`` so callers can decide whether to ignore them.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import UTC, datetime, timedelta
from typing import Any, cast

from kirapilot.config import Settings, get_settings
from kirapilot.db import queries
from kirapilot.db.connection import get_conn
from kirapilot.errors import KiraError, StorageError
from kirapilot.interactions.models import (
    DataClassification,
    InteractionLog,
    LoggingConfig,
    LogLevel,
    PerformanceMetrics,
    ToolExecutionLog,
)
from kirapilot.orchestrator.chain import ReActChain, ReActStep, StepType

logger = logging.getLogger(__name__)

PROMPT_LOG_LIMIT = 2000
RESPONSE_LOG_LIMIT = 1000
TRUNCATED_SUFFIX = "...[truncated]"

SENSITIVE_KEYS = {
    "access_token",
    "refresh_token",
    "password",
    "api_key",
    "authorization",
    "secret",
    "token",
    "phone",
    "email",
}

_LEVEL_ORDER = {LogLevel.DEBUG: 0, LogLevel.INFO: 1, LogLevel.WARN: 2, LogLevel.ERROR: 3}


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[:limit] + TRUNCATED_SUFFIX


def _redact_value(value: Any) -> tuple[Any, bool]:
    if isinstance(value, dict):
        redacted: dict[str, Any] = {}
        found = False
        for key, nested in value.items():
            if str(key).lower() in SENSITIVE_KEYS:
                redacted[key] = "[REDACTED]"
                found = True
                continue
            redacted[key], hit = _redact_value(nested)
            found = found or hit
        return redacted, found
    if isinstance(value, list):
        items = [_redact_value(item) for item in value]
        return [item for item, _ in items], any(hit for _, hit in items)
    return value, False


def redact_payload(payload: dict[str, Any]) -> tuple[dict[str, Any], bool]:
    """Copy of ``payload`` with sensitive keys masked, and whether any were found."""
    redacted, found = _redact_value(payload)
    return cast(dict[str, Any], redacted), found


class InteractionLogger:
    def __init__(self, config: LoggingConfig | None = None, *, db_path: str | None = None) -> None:
        self._config = config or LoggingConfig()
        self._db_path = db_path

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, *, db_path: str | None = None
    ) -> InteractionLogger:
        settings = settings or get_settings()
        config = LoggingConfig(
            enabled=bool(settings.interaction_log_enabled),
            max_logs=settings.interaction_log_max_logs,
            retention_days=settings.interaction_log_retention_days,
            log_sensitive_data=bool(settings.interaction_log_sensitive),
            log_level=LogLevel(settings.interaction_log_level.lower()),
        )
        return cls(config, db_path=db_path)

    @property
    def config(self) -> LoggingConfig:
        return self._config

    def _run(self, action: str, fn: Any) -> Any:
        try:
            with get_conn(self._db_path) as conn:
                return fn(conn)
        except sqlite3.Error as exc:
            raise StorageError(f"failed to {action}: {exc}") from exc

    def _accepts(self, level: LogLevel) -> bool:
        return self._config.enabled and _LEVEL_ORDER[level] >= _LEVEL_ORDER[self._config.log_level]

    # Configuration

    async def load_config(self) -> LoggingConfig:
        """Adopt the persisted configuration when one has been saved."""
        stored = self._run("load logging config", queries.load_logging_config)
        if stored is not None:
            self._config = stored
        return self._config

    async def get_config(self) -> LoggingConfig:
        return self._config

    async def update_config(self, config: LoggingConfig) -> LoggingConfig:
        self._run("save logging config", lambda conn: queries.save_logging_config(conn, config))
        self._config = config
        logger.info("interaction logging config updated: %s", config.to_dict())
        return config

    # Writers

    def _prepare(self, log: InteractionLog) -> InteractionLog:
        context, found_context = redact_payload(log.context)
        model_info, found_model = redact_payload(log.model_info)
        sensitive = found_context or found_model or log.contains_sensitive_data
        if not self._config.log_sensitive_data:
            log.context = context
            log.model_info = model_info
            if sensitive:
                log.data_classification = DataClassification.CONFIDENTIAL
        elif sensitive:
            log.data_classification = DataClassification.SENSITIVE
        log.contains_sensitive_data = sensitive
        return log

    async def log_interaction(
        self, log: InteractionLog, *, level: LogLevel = LogLevel.INFO
    ) -> str | None:
        if not self._accepts(level):
            return None
        prepared = self._prepare(log)
        return cast(
            str,
            self._run(
                "write interaction log",
                lambda conn: queries.insert_interaction_log(conn, prepared),
            ),
        )

    async def log_interaction_simple(
        self,
        session_id: str,
        user_message: str,
        ai_response: str,
        model_info: dict[str, Any],
        *,
        context: dict[str, Any] | None = None,
        total_time_ms: int = 0,
        error: str | None = None,
    ) -> str | None:
        return await self.log_interaction(
            InteractionLog(
                session_id=session_id,
                user_message=user_message,
                ai_response=ai_response,
                model_info=model_info,
                context=dict(context or {}),
                performance_metrics=PerformanceMetrics(total_time_ms=total_time_ms),
                error=error,
            )
        )

    async def log_error(
        self,
        session_id: str,
        user_message: str,
        error: KiraError | str,
        model_info: dict[str, Any],
        *,
        context: dict[str, Any] | None = None,
    ) -> str | None:
        if isinstance(error, KiraError):
            message, code = error.describe(), error.error_code
            extra = {"severity": error.severity.value, "suggestions": list(error.suggestions)}
        else:
            message, code, extra = error, None, {}
        return await self.log_interaction(
            InteractionLog(
                session_id=session_id,
                user_message=user_message,
                ai_response="",
                model_info=model_info,
                context={"type": "error", **extra, **(context or {})},
                error=message,
                error_code=code,
            ),
            level=LogLevel.ERROR,
        )

    async def log_react_chain(self, chain: ReActChain, model_info: dict[str, Any]) -> str | None:
        """One summary row per chain; its id is the chain id so tool executions join to it."""
        thoughts = [step.content for step in chain.steps if step.step_type is StepType.THOUGHT]
        actions = [
            {
                **step.tool_call.to_dict(),
                "step_id": step.id,
            }
            for step in chain.steps
            if step.tool_call is not None
        ]
        results = [
            {"step_id": step.id, **step.tool_result.to_dict()}
            for step in chain.steps
            if step.tool_result is not None
        ]
        metrics = PerformanceMetrics(
            total_time_ms=chain.total_duration_ms or 0,
            llm_time_ms=int(chain.metadata.get("llm_time_ms", 0)),
            input_tokens=chain.metadata.get("input_tokens"),
            output_tokens=chain.metadata.get("output_tokens"),
        )
        system_prompt = chain.metadata.get("system_prompt")
        return await self.log_interaction(
            InteractionLog(
                id=chain.id,
                session_id=str(chain.metadata.get("session_id") or f"react-{chain.id}"),
                user_message=chain.user_request,
                ai_response=chain.final_response,
                model_info=model_info,
                system_prompt=truncate(system_prompt, PROMPT_LOG_LIMIT) if system_prompt else None,
                context={
                    "type": "react_chain",
                    "chain_id": chain.id,
                    "iterations": chain.iterations,
                    "completed": chain.completed,
                    "step_breakdown": chain.step_breakdown(),
                    "total_steps": len(chain.steps),
                    "total_duration_ms": chain.total_duration_ms,
                    "degraded": bool(chain.metadata.get("degraded")),
                    "tool_results": results,
                },
                actions=actions,
                reasoning="\n".join(thoughts) or None,
                performance_metrics=metrics,
                error=chain.metadata.get("error"),
                error_code=chain.metadata.get("error_code"),
            )
        )

    async def log_react_step(
        self, chain_id: str, step: ReActStep, model_info: dict[str, Any]
    ) -> str | None:
        return await self.log_interaction(
            InteractionLog(
                session_id=f"react-{chain_id}",
                user_message=f"[react step] {step.step_type.value}",
                ai_response=step.content,
                model_info=model_info,
                context={"type": "react_step", "chain_id": chain_id, "step": step.to_dict()},
                performance_metrics=PerformanceMetrics(total_time_ms=step.duration_ms or 0),
            ),
            level=LogLevel.DEBUG,
        )

    async def log_react_performance(
        self, chain: ReActChain, model_info: dict[str, Any]
    ) -> str | None:
        breakdown = chain.step_breakdown()
        tool_results = [step.tool_result for step in chain.steps if step.tool_result is not None]
        successes = sum(1 for result in tool_results if result.success)
        durations = [step.duration_ms for step in chain.steps if step.duration_ms is not None]
        metrics = {
            "iterations": chain.iterations,
            "step_breakdown": breakdown,
            "tool_executions": len(tool_results),
            "tool_success_rate": round(successes / len(tool_results), 3) if tool_results else 0.0,
            "average_step_duration_ms": (
                round(sum(durations) / len(durations), 1) if durations else 0.0
            ),
            "total_duration_ms": chain.total_duration_ms or 0,
        }
        summary = (
            f"{chain.iterations} iteration(s), {len(chain.steps)} step(s), "
            f"{len(tool_results)} tool call(s), {metrics['tool_success_rate']:.0%} tool success"
        )
        return await self.log_interaction(
            InteractionLog(
                session_id=f"react-{chain.id}",
                user_message=f"[react performance] {chain.id}",
                ai_response=summary,
                model_info=model_info,
                context={"type": "react_performance", "chain_id": chain.id, **metrics},
                performance_metrics=PerformanceMetrics(
                    total_time_ms=chain.total_duration_ms or 0,
                    llm_time_ms=int(chain.metadata.get("llm_time_ms", 0)),
                ),
            )
        )

    async def log_raw_llm_interaction(
        self,
        session_id: str,
        turn: int,
        prompt: str,
        response: str,
        model_info: dict[str, Any],
        duration_ms: int,
    ) -> str | None:
        return await self.log_interaction(
            InteractionLog(
                session_id=session_id,
                user_message=truncate(prompt, PROMPT_LOG_LIMIT),
                ai_response=truncate(response, RESPONSE_LOG_LIMIT),
                model_info=model_info,
                context={
                    "type": "raw_llm_interaction",
                    "turn": turn,
                    "prompt_length": len(prompt),
                    "response_length": len(response),
                },
                performance_metrics=PerformanceMetrics(
                    total_time_ms=duration_ms, llm_time_ms=duration_ms
                ),
            )
        )

    async def log_tool_execution(self, entry: ToolExecutionLog) -> str | None:
        if not self._config.enabled:
            return None
        if not self._config.log_sensitive_data:
            entry.arguments, _ = redact_payload(entry.arguments)
        return cast(
            str,
            self._run(
                "write tool execution log",
                lambda conn: queries.insert_tool_execution(conn, entry),
            ),
        )

    # Readers and maintenance

    async def get_recent_logs(
        self, limit: int = 50, session_id: str | None = None
    ) -> list[dict[str, Any]]:
        return cast(
            list[dict[str, Any]],
            self._run(
                "read interaction logs",
                lambda conn: queries.list_recent_logs(conn, limit=limit, session_id=session_id),
            ),
        )

    async def get_interaction(self, log_id: str) -> dict[str, Any] | None:
        return cast(
            dict[str, Any] | None,
            self._run(
                "read interaction log", lambda conn: queries.get_interaction_log(conn, log_id)
            ),
        )

    async def get_tool_executions(self, log_id: str) -> list[dict[str, Any]]:
        return cast(
            list[dict[str, Any]],
            self._run(
                "read tool executions", lambda conn: queries.list_tool_executions(conn, log_id)
            ),
        )

    async def cleanup_old_logs(self) -> dict[str, int]:
        """Delete rows older than ``retention_days``, then trim to ``max_logs``."""
        cutoff = datetime.now(UTC) - timedelta(days=self._config.retention_days)
        # Executions are written before their chain row; leave recent orphans alone.
        orphan_before = datetime.now(UTC) - timedelta(hours=1)

        def _cleanup(conn: sqlite3.Connection) -> dict[str, int]:
            expired = queries.delete_logs_before(conn, cutoff.isoformat())
            trimmed = queries.trim_logs(conn, self._config.max_logs)
            orphans = queries.delete_stale_tool_executions(
                conn, cutoff.isoformat(), orphan_before.isoformat()
            )
            return {"expired": expired, "trimmed": trimmed, "tool_executions": orphans}

        result = cast(dict[str, int], self._run("clean up interaction logs", _cleanup))
        logger.info("interaction log cleanup: %s", result)
        return result
