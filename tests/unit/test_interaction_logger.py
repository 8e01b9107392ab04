from datetime import UTC, datetime, timedelta

import pytest

from kirapilot.errors import NetworkError, StorageError
from kirapilot.interactions.logger import TRUNCATED_SUFFIX, InteractionLogger, redact_payload
from kirapilot.interactions.models import (
    InteractionLog,
    LoggingConfig,
    LogLevel,
    ToolExecutionLog,
)
from kirapilot.orchestrator.chain import ReActChain, StepType
from kirapilot.tools.types import ToolCall, ToolResult

MODEL = {"id": "gemini-2.0-flash", "provider": "gemini"}


def _log(**kwargs) -> InteractionLog:
    kwargs.setdefault("session_id", "s1")
    kwargs.setdefault("user_message", "hi")
    kwargs.setdefault("ai_response", "hello")
    kwargs.setdefault("model_info", MODEL)
    return InteractionLog(**kwargs)


def test_redact_payload_masks_nested_keys() -> None:
    payload, found = redact_payload(
        {"user": {"email": "a@b.c", "name": "Ana"}, "items": [{"token": "t"}], "x": 1}
    )
    assert found is True
    assert payload == {
        "user": {"email": "[REDACTED]", "name": "Ana"},
        "items": [{"token": "[REDACTED]"}],
        "x": 1,
    }
    assert redact_payload({"x": 1}) == ({"x": 1}, False)


@pytest.mark.asyncio
async def test_log_interaction_roundtrip() -> None:
    interactions = InteractionLogger()
    log_id = await interactions.log_interaction(_log(context={"type": "chat"}))

    row = await interactions.get_interaction(log_id)
    assert row["user_message"] == "hi"
    assert row["model_type"] == "gemini"
    assert row["model_info"] == MODEL
    assert row["context"] == {"type": "chat"}
    assert row["data_classification"] == "internal"
    assert row["contains_sensitive_data"] is False
    assert await interactions.get_interaction("missing") is None


@pytest.mark.asyncio
async def test_sensitive_context_is_redacted_by_default() -> None:
    interactions = InteractionLogger()
    log_id = await interactions.log_interaction(_log(context={"api_key": "sk-1", "q": "x"}))

    row = await interactions.get_interaction(log_id)
    assert row["context"] == {"api_key": "[REDACTED]", "q": "x"}
    assert row["contains_sensitive_data"] is True
    assert row["data_classification"] == "confidential"


@pytest.mark.asyncio
async def test_sensitive_context_kept_when_allowed() -> None:
    interactions = InteractionLogger(LoggingConfig(log_sensitive_data=True))
    log_id = await interactions.log_interaction(_log(context={"api_key": "sk-1"}))

    row = await interactions.get_interaction(log_id)
    assert row["context"] == {"api_key": "sk-1"}
    assert row["data_classification"] == "sensitive"


@pytest.mark.asyncio
async def test_disabled_logging_writes_nothing() -> None:
    interactions = InteractionLogger(LoggingConfig(enabled=False))
    assert await interactions.log_interaction(_log()) is None
    entry = ToolExecutionLog("get_tasks", {}, {}, 3, True)
    assert await interactions.log_tool_execution(entry) is None
    assert await interactions.get_recent_logs() == []


@pytest.mark.asyncio
async def test_level_filtering() -> None:
    interactions = InteractionLogger(LoggingConfig(log_level=LogLevel.WARN))
    assert await interactions.log_interaction_simple("s1", "hi", "hello", MODEL) is None

    error = NetworkError("connection reset")
    log_id = await interactions.log_error("s1", "hi", error, MODEL, context={"turn": 2})

    row = await interactions.get_interaction(log_id)
    assert row["error"] == error.describe()
    assert row["error_code"] == error.error_code
    assert row["context"]["type"] == "error"
    assert row["context"]["turn"] == 2


@pytest.mark.asyncio
async def test_react_steps_only_logged_at_debug() -> None:
    chain = ReActChain("hi")
    step = chain.add_step(StepType.THOUGHT, "thinking")

    assert await InteractionLogger().log_react_step(chain.id, step, MODEL) is None
    debug = InteractionLogger(LoggingConfig(log_level=LogLevel.DEBUG))
    log_id = await debug.log_react_step(chain.id, step, MODEL)

    row = await debug.get_interaction(log_id)
    assert row["context"]["type"] == "react_step"
    assert row["context"]["step"]["content"] == "thinking"


@pytest.mark.asyncio
async def test_raw_llm_interaction_is_truncated() -> None:
    interactions = InteractionLogger()
    log_id = await interactions.log_raw_llm_interaction(
        "s1", 1, "p" * 2500, "r" * 1500, MODEL, 120
    )

    row = await interactions.get_interaction(log_id)
    assert row["user_message"] == "p" * 2000 + TRUNCATED_SUFFIX
    assert row["ai_response"] == "r" * 1000 + TRUNCATED_SUFFIX
    assert row["context"] == {
        "type": "raw_llm_interaction",
        "turn": 1,
        "prompt_length": 2500,
        "response_length": 1500,
    }
    assert row["llm_time"] == 120


@pytest.mark.asyncio
async def test_react_chain_row_uses_chain_id() -> None:
    interactions = InteractionLogger()
    chain = ReActChain("what's due?", metadata={"session_id": "sess-9"})
    chain.add_step(StepType.THOUGHT, "I need the tasks.")
    call = ToolCall("get_tasks", {"date": "2024-05-01"})
    chain.add_step(StepType.ACTION, "get_tasks", tool_call=call)
    chain.add_step(
        StepType.OBSERVATION, "Found 0 tasks", tool_result=ToolResult.ok([], "Found 0 tasks")
    )
    chain.add_step(StepType.FINAL_ANSWER, "Nothing is due.")
    chain.iterations = 1
    chain.finish("Nothing is due.", completed=True)

    log_id = await interactions.log_react_chain(chain, MODEL)

    assert log_id == chain.id
    row = await interactions.get_interaction(chain.id)
    assert row["session_id"] == "sess-9"
    assert row["ai_response"] == "Nothing is due."
    assert row["reasoning"] == "I need the tasks."
    assert row["actions"][0]["name"] == "get_tasks"
    assert row["context"]["type"] == "react_chain"
    assert row["context"]["completed"] is True
    assert row["context"]["step_breakdown"]["observation"] == 1
    assert row["context"]["tool_results"][0]["success"] is True


@pytest.mark.asyncio
async def test_react_performance_summary() -> None:
    interactions = InteractionLogger()
    chain = ReActChain("hi")
    chain.add_step(
        StepType.OBSERVATION, "ok", tool_result=ToolResult.ok(1), duration_ms=10
    )
    chain.add_step(
        StepType.OBSERVATION, "bad", tool_result=ToolResult.failure("boom"), duration_ms=30
    )
    chain.iterations = 2
    chain.finish("done", completed=True)

    row = await interactions.get_interaction(
        await interactions.log_react_performance(chain, MODEL)
    )
    assert row["context"]["tool_executions"] == 2
    assert row["context"]["tool_success_rate"] == 0.5
    assert row["context"]["average_step_duration_ms"] == 20.0
    assert row["ai_response"].startswith("2 iteration(s), 2 step(s), 2 tool call(s), 50%")


@pytest.mark.asyncio
async def test_tool_execution_arguments_redacted() -> None:
    interactions = InteractionLogger()
    entry = ToolExecutionLog(
        tool_name="create_task",
        arguments={"title": "Call bank", "password": "hunter2"},
        result={"success": True},
        execution_time_ms=4,
        success=True,
        interaction_log_id="chain_1",
    )
    await interactions.log_tool_execution(entry)

    rows = await interactions.get_tool_executions("chain_1")
    assert len(rows) == 1
    assert rows[0]["arguments"] == {"title": "Call bank", "password": "[REDACTED]"}
    assert rows[0]["success"] is True
    assert rows[0]["execution_time"] == 4


@pytest.mark.asyncio
async def test_recent_logs_filter_by_session() -> None:
    interactions = InteractionLogger()
    await interactions.log_interaction(_log(session_id="a"))
    await interactions.log_interaction(_log(session_id="b", ai_response="second"))

    assert [row["session_id"] for row in await interactions.get_recent_logs()] == ["b", "a"]
    rows = await interactions.get_recent_logs(session_id="a")
    assert [row["session_id"] for row in rows] == ["a"]


@pytest.mark.asyncio
async def test_update_config_persists() -> None:
    interactions = InteractionLogger()
    config = LoggingConfig(retention_days=7, max_logs=50, log_level=LogLevel.DEBUG)
    await interactions.update_config(config)

    reloaded = await InteractionLogger().load_config()
    assert reloaded == config
    assert reloaded.debug is True


@pytest.mark.asyncio
async def test_load_config_keeps_defaults_when_nothing_saved() -> None:
    interactions = InteractionLogger(LoggingConfig(max_logs=5))
    assert (await interactions.load_config()).max_logs == 5


@pytest.mark.asyncio
async def test_cleanup_removes_expired_rows() -> None:
    interactions = InteractionLogger(LoggingConfig(retention_days=30))
    old = datetime.now(UTC) - timedelta(days=40)
    await interactions.log_interaction(_log(timestamp=old))
    fresh = await interactions.log_interaction(_log())

    result = await interactions.cleanup_old_logs()

    assert result == {"expired": 1, "trimmed": 0, "tool_executions": 0}
    assert [row["id"] for row in await interactions.get_recent_logs()] == [fresh]


@pytest.mark.asyncio
async def test_cleanup_trims_to_max_logs() -> None:
    interactions = InteractionLogger(LoggingConfig(max_logs=2))
    now = datetime.now(UTC)
    for minutes in (3, 2, 1):
        await interactions.log_interaction(_log(timestamp=now - timedelta(minutes=minutes)))

    result = await interactions.cleanup_old_logs()

    assert result["trimmed"] == 1
    assert len(await interactions.get_recent_logs()) == 2


@pytest.mark.asyncio
async def test_cleanup_removes_stale_orphan_executions() -> None:
    interactions = InteractionLogger()
    stale = datetime.now(UTC) - timedelta(hours=2)
    await interactions.log_tool_execution(
        ToolExecutionLog("get_tasks", {}, {}, 1, True, interaction_log_id=None, created_at=stale)
    )
    await interactions.log_tool_execution(
        ToolExecutionLog("get_tasks", {}, {}, 1, True, interaction_log_id="pending_chain")
    )

    result = await interactions.cleanup_old_logs()

    assert result["tool_executions"] == 1
    assert len(await interactions.get_tool_executions("pending_chain")) == 1


@pytest.mark.asyncio
async def test_storage_failure_raises_storage_error(tmp_path) -> None:
    interactions = InteractionLogger(db_path=str(tmp_path))
    with pytest.raises(StorageError, match="failed to write interaction log"):
        await interactions.log_interaction(_log())
