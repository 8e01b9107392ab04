from __future__ import annotations

import json

import pytest
from click.testing import CliRunner

from kirapilot.cli.main import cli
from kirapilot.config import get_settings
from kirapilot.errors import ConfigError

CREATE_TURN = 'Thought: Add it.\nAction: create_task: {"title": "Buy milk"}\nPAUSE'


@pytest.fixture
def local_script(monkeypatch, scripted_provider):
    """Patch provider construction so every AgentService gets one scripted local model."""
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    provider = scripted_provider(name="local", local=True)
    monkeypatch.setattr(
        "kirapilot.service.build_providers",
        lambda settings=None, transport=None: {"local": provider},
    )
    return provider


def test_migrate_reports_up_to_date() -> None:
    result = CliRunner().invoke(cli, ["migrate"])
    assert result.exit_code == 0
    assert "database is up to date" in result.stdout


def test_ask_prints_answer(local_script) -> None:
    local_script.responses = ["Answer: You have nothing planned."]

    result = CliRunner().invoke(cli, ["ask", "what is on today?"])

    assert result.exit_code == 0
    assert result.stdout.strip() == "You have nothing planned."


def test_ask_debug_prints_steps(local_script) -> None:
    local_script.responses = [CREATE_TURN, 'Answer: Created "Buy milk".']

    result = CliRunner().invoke(cli, ["ask", "add buy milk", "--debug"])

    assert result.exit_code == 0
    lines = result.stdout.splitlines()
    assert lines[0] == 'Created "Buy milk".'
    assert "[thought] Add it." in lines
    assert any(line.startswith("[action] ") for line in lines)
    assert "1 iteration(s)" in lines[-1]


def test_ask_json_then_logs_show(local_script) -> None:
    local_script.responses = [CREATE_TURN, 'Answer: Created "Buy milk".']
    runner = CliRunner()

    result = runner.invoke(cli, ["ask", "add buy milk", "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.stdout)
    assert payload["completed"] is True
    assert payload["final_response"] == 'Created "Buy milk".'
    assert "system_prompt" not in payload["metadata"]
    assert payload["debug"]["chain_id"] == payload["id"]

    shown = runner.invoke(cli, ["logs", "show", payload["id"]])
    assert shown.exit_code == 0
    row = json.loads(shown.stdout)
    assert row["context"]["type"] == "react_chain"
    assert [item["tool_name"] for item in row["tool_executions"]] == ["create_task"]


def test_ask_incomplete_exits_nonzero(local_script) -> None:
    local_script.responses = [ConfigError("bad model path")]

    result = CliRunner().invoke(cli, ["ask", "hello"])

    assert result.exit_code == 1


def test_ask_rejects_unknown_permission(local_script) -> None:
    result = CliRunner().invoke(cli, ["ask", "hello", "--permissions", "Root"])
    assert result.exit_code == 2
    assert "--permissions" in result.output
    assert local_script.prompts == []


def test_providers_json(local_script) -> None:
    result = CliRunner().invoke(cli, ["providers", "--json"])

    assert result.exit_code == 0
    status = json.loads(result.stdout)
    assert status["active_provider"] == "local"
    assert status["providers"]["local"]["active"] is True
    assert "get_tasks" in status["tools"]


def test_tools_respects_permissions(local_script) -> None:
    result = CliRunner().invoke(cli, ["tools", "--permissions", "ReadOnly"])

    assert result.exit_code == 0
    names = [line.split(" ", 1)[0] for line in result.stdout.splitlines()]
    assert "get_tasks" in names
    assert "create_task" not in names
    assert "start_timer" not in names


def test_logs_list_and_cleanup(local_script) -> None:
    local_script.responses = ["Answer: Hi."]
    runner = CliRunner()
    assert runner.invoke(cli, ["ask", "hello", "--session-id", "cli-1"]).exit_code == 0

    listed = runner.invoke(cli, ["logs", "list", "--session-id", "cli-1", "--json"])
    assert listed.exit_code == 0
    rows = [json.loads(line) for line in listed.stdout.splitlines()]
    assert rows
    assert {row["session_id"] for row in rows} == {"cli-1"}

    cleaned = runner.invoke(cli, ["logs", "cleanup"])
    assert cleaned.exit_code == 0
    assert cleaned.stdout.startswith("removed 0 expired, 0 over limit")


def test_logs_show_unknown_id() -> None:
    result = CliRunner().invoke(cli, ["logs", "show", "log_missing"])
    assert result.exit_code == 1
    assert "interaction log not found: log_missing" in result.output


def test_logs_config_updates_level() -> None:
    runner = CliRunner()
    result = runner.invoke(cli, ["logs", "config", "--level", "debug", "--retention-days", "7"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["log_level"] == "debug"

    shown = json.loads(runner.invoke(cli, ["logs", "config"]).stdout)
    assert shown["retention_days"] == 7
    assert shown["log_level"] == "debug"


def test_logs_show_rejects_task_ids() -> None:
    task_id = "task_" + "0" * 32
    result = CliRunner().invoke(cli, ["logs", "show", task_id])
    assert result.exit_code == 1
    assert f"{task_id} is a task id, not an interaction log id" in result.output


def test_migrate_check(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("APP_DB", str(tmp_path / "other.db"))
    get_settings.cache_clear()
    runner = CliRunner()

    pending = runner.invoke(cli, ["migrate", "--check"])
    assert pending.exit_code == 1
    assert pending.stdout.startswith("pending: 001_interaction_logs.sql")

    assert runner.invoke(cli, ["migrate"]).stdout.startswith("applied: 001_interaction_logs.sql")
    assert runner.invoke(cli, ["migrate", "--check"]).exit_code == 0
