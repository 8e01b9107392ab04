"""Query helpers for the interaction log tables."""

import json
import sqlite3
from datetime import UTC, datetime
from typing import Any

from kirapilot.interactions.models import InteractionLog, LoggingConfig, LogLevel, ToolExecutionLog


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def insert_interaction_log(conn: sqlite3.Connection, log: InteractionLog) -> str:
    metrics = log.performance_metrics
    stamp = log.timestamp.isoformat()
    token_count = None
    if metrics.input_tokens is not None or metrics.output_tokens is not None:
        token_count = (metrics.input_tokens or 0) + (metrics.output_tokens or 0)
    conn.execute(
        """
        INSERT INTO ai_interaction_logs(
          id, timestamp, session_id, model_type, model_info, user_message,
          system_prompt, context, ai_response, actions, suggestions, reasoning,
          response_time, llm_time, token_count, input_tokens, output_tokens,
          memory_usage_mb, error, error_code, contains_sensitive_data,
          data_classification, created_at, updated_at
        ) VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
        """,
        (
            log.id,
            stamp,
            log.session_id,
            log.model_type,
            json.dumps(log.model_info, default=str),
            log.user_message,
            log.system_prompt,
            json.dumps(log.context, default=str),
            log.ai_response,
            json.dumps(log.actions, default=str),
            json.dumps(log.suggestions, default=str),
            log.reasoning,
            metrics.total_time_ms,
            metrics.llm_time_ms,
            token_count,
            metrics.input_tokens,
            metrics.output_tokens,
            metrics.memory_usage_mb,
            log.error,
            log.error_code,
            1 if log.contains_sensitive_data else 0,
            log.data_classification.value,
            stamp,
            stamp,
        ),
    )
    return log.id


def insert_tool_execution(conn: sqlite3.Connection, entry: ToolExecutionLog) -> str:
    conn.execute(
        """
        INSERT INTO tool_execution_logs(
          id, interaction_log_id, tool_name, arguments, result,
          execution_time, success, error, created_at
        ) VALUES(?,?,?,?,?,?,?,?,?)
        """,
        (
            entry.id,
            entry.interaction_log_id,
            entry.tool_name,
            json.dumps(entry.arguments, default=str),
            json.dumps(entry.result, default=str),
            entry.execution_time_ms,
            1 if entry.success else 0,
            entry.error,
            entry.created_at.isoformat(),
        ),
    )
    return entry.id


def _decode_log_row(row: sqlite3.Row) -> dict[str, Any]:
    item = dict(row)
    for key in ("model_info", "context", "actions", "suggestions"):
        raw = item.get(key)
        if isinstance(raw, str) and raw:
            try:
                item[key] = json.loads(raw)
            except json.JSONDecodeError:
                pass
    item["contains_sensitive_data"] = bool(item.get("contains_sensitive_data"))
    return item


def list_recent_logs(
    conn: sqlite3.Connection, limit: int = 50, session_id: str | None = None
) -> list[dict[str, Any]]:
    if session_id is None:
        rows = conn.execute(
            "SELECT * FROM ai_interaction_logs ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (max(1, limit),),
        ).fetchall()
    else:
        rows = conn.execute(
            "SELECT * FROM ai_interaction_logs WHERE session_id=? "
            "ORDER BY timestamp DESC, rowid DESC LIMIT ?",
            (session_id, max(1, limit)),
        ).fetchall()
    return [_decode_log_row(row) for row in rows]


def get_interaction_log(conn: sqlite3.Connection, log_id: str) -> dict[str, Any] | None:
    row = conn.execute("SELECT * FROM ai_interaction_logs WHERE id=?", (log_id,)).fetchone()
    return _decode_log_row(row) if row is not None else None


def list_tool_executions(conn: sqlite3.Connection, interaction_log_id: str) -> list[dict[str, Any]]:
    rows = conn.execute(
        "SELECT * FROM tool_execution_logs WHERE interaction_log_id=? "
        "ORDER BY created_at ASC, rowid ASC",
        (interaction_log_id,),
    ).fetchall()
    items: list[dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        item["arguments"] = json.loads(item["arguments"] or "{}")
        item["result"] = json.loads(item["result"] or "{}")
        item["success"] = bool(item["success"])
        items.append(item)
    return items


def delete_logs_before(conn: sqlite3.Connection, cutoff_iso: str) -> int:
    cursor = conn.execute("DELETE FROM ai_interaction_logs WHERE timestamp < ?", (cutoff_iso,))
    return int(cursor.rowcount or 0)


def trim_logs(conn: sqlite3.Connection, max_logs: int) -> int:
    """Keep only the newest ``max_logs`` interaction rows."""
    cursor = conn.execute(
        """
        DELETE FROM ai_interaction_logs WHERE id IN (
          SELECT id FROM ai_interaction_logs
          ORDER BY timestamp DESC, rowid DESC
          LIMIT -1 OFFSET ?
        )
        """,
        (max(0, max_logs),),
    )
    return int(cursor.rowcount or 0)


def load_logging_config(conn: sqlite3.Connection) -> LoggingConfig | None:
    row = conn.execute(
        "SELECT enabled, max_logs, retention_days, log_sensitive_data, log_level "
        "FROM logging_config WHERE id=1"
    ).fetchone()
    if row is None:
        return None
    return LoggingConfig(
        enabled=bool(row["enabled"]),
        max_logs=int(row["max_logs"]),
        retention_days=int(row["retention_days"]),
        log_sensitive_data=bool(row["log_sensitive_data"]),
        log_level=LogLevel(str(row["log_level"])),
    )


def save_logging_config(conn: sqlite3.Connection, config: LoggingConfig) -> None:
    conn.execute(
        """
        INSERT INTO logging_config(
          id, enabled, max_logs, retention_days, log_sensitive_data, log_level, updated_at
        ) VALUES(1,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          enabled=excluded.enabled,
          max_logs=excluded.max_logs,
          retention_days=excluded.retention_days,
          log_sensitive_data=excluded.log_sensitive_data,
          log_level=excluded.log_level,
          updated_at=excluded.updated_at
        """,
        (
            1 if config.enabled else 0,
            config.max_logs,
            config.retention_days,
            1 if config.log_sensitive_data else 0,
            config.log_level.value,
            now_iso(),
        ),
    )


def delete_stale_tool_executions(
    conn: sqlite3.Connection, cutoff_iso: str, orphan_before_iso: str
) -> int:
    """Drop executions past retention, and orphans whose interaction row is gone."""
    cursor = conn.execute(
        """
        DELETE FROM tool_execution_logs
        WHERE created_at < ?
           OR (
             created_at < ?
             AND (
               interaction_log_id IS NULL
               OR interaction_log_id NOT IN (SELECT id FROM ai_interaction_logs)
             )
           )
        """,
        (cutoff_iso, orphan_before_iso),
    )
    return int(cursor.rowcount or 0)
