"""Click CLI group: migrate, ask, providers, tools, and interaction-log commands."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any, TypeVar

import click

from kirapilot.config import get_settings
from kirapilot.db.migrations.runner import pending_migrations, run_migrations
from kirapilot.errors import KiraError
from kirapilot.ids import id_kind
from kirapilot.interactions.logger import InteractionLogger
from kirapilot.interactions.models import LogLevel
from kirapilot.logging import configure_logging
from kirapilot.orchestrator.chain import ReActChain
from kirapilot.service import AgentService
from kirapilot.tools.types import parse_permissions

T = TypeVar("T")


def _run(fn: Callable[[], Awaitable[T]]) -> T:
    try:
        return asyncio.run(fn())
    except KiraError as exc:
        raise click.ClickException(f"{exc.user_message} ({exc.describe()})") from exc


def _interaction_logger() -> InteractionLogger:
    settings = get_settings()
    run_migrations(settings.app_db)
    return InteractionLogger.from_settings(settings, db_path=settings.app_db)


def format_chain(chain: ReActChain, debug: dict[str, Any] | None = None) -> str:
    lines = [chain.final_response]
    if debug is not None:
        lines.append("")
        for step in chain.steps:
            content = step.content if len(step.content) <= 200 else step.content[:197] + "..."
            lines.append(f"[{step.step_type.value}] {content}")
        lines.append(
            f"-- {debug['completion_status']}, {debug['total_iterations']} iteration(s), "
            f"{debug['total_duration_ms']} ms, quality {debug['reasoning_quality_score']:.0f}"
        )
    return "\n".join(lines)


@click.group()
def cli() -> None:
    """KiraPilot reasoning agent CLI."""
    configure_logging(get_settings().log_level)


@cli.command()
@click.option("--check", is_flag=True, help="List pending migrations without applying them.")
def migrate(check: bool) -> None:
    """Apply pending database migrations."""
    if check:
        pending = pending_migrations(get_settings().app_db)
        click.echo(f"pending: {', '.join(pending)}" if pending else "database is up to date")
        if pending:
            raise SystemExit(1)
        return
    applied = run_migrations(get_settings().app_db)
    click.echo(f"applied: {', '.join(applied)}" if applied else "database is up to date")


@cli.command()
@click.argument("message")
@click.option("--session-id", type=str, default=None, help="Group the request under a session.")
@click.option(
    "--permissions",
    type=str,
    default=None,
    help="Comma-separated grant set, e.g. ReadOnly,ModifyTasks (default: DEFAULT_PERMISSIONS).",
)
@click.option("--max-iterations", type=click.IntRange(1, 10), default=None)
@click.option("--debug", is_flag=True, help="Print the reasoning steps and chain metrics.")
@click.option("--json", "json_output", is_flag=True, help="Print the chain as JSON.")
def ask(
    message: str,
    session_id: str | None,
    permissions: str | None,
    max_iterations: int | None,
    debug: bool,
    json_output: bool,
) -> None:
    """Send one request through the reasoning loop and print the answer."""
    if permissions is not None:
        try:
            parse_permissions(permissions)
        except ValueError as exc:
            raise click.BadParameter(str(exc), param_hint="--permissions") from exc

    async def _ask() -> tuple[ReActChain, dict[str, Any]]:
        async with AgentService() as service:
            chain = await service.ask(
                message,
                session_id=session_id,
                permissions=permissions,
                max_iterations=max_iterations,
            )
            return chain, service.debug_info(chain).to_dict()

    chain, debug_info = _run(_ask)
    if json_output:
        payload = chain.to_dict()
        payload["metadata"].pop("system_prompt", None)
        payload["debug"] = debug_info
        click.echo(json.dumps(payload, default=str))
        return
    click.echo(format_chain(chain, debug_info if debug else None))
    if not chain.completed:
        raise SystemExit(1)


@cli.command()
@click.option("--check", is_flag=True, help="Probe every provider before reporting.")
@click.option("--json", "json_output", is_flag=True, help="Print the health report as JSON.")
def providers(check: bool, json_output: bool) -> None:
    """Show registered providers, their health and which one is active."""

    async def _report() -> dict[str, Any]:
        async with AgentService() as service:
            if check:
                await service.manager.check_health()
            return await service.status()

    status = _run(_report)
    if json_output:
        click.echo(json.dumps(status, default=str))
        return
    for name, health in status["providers"].items():
        marker = "*" if health["active"] else " "
        state = health["status"]["state"]
        detail = health["status"].get("reason") or health["status"].get("message") or ""
        click.echo(
            f"{marker} {name}: {state}"
            f" (requests={health['total_requests']}, failures={health['consecutive_failures']},"
            f" circuit={health['circuit']['state']})"
            + (f" {detail}" if detail else "")
        )


@cli.command()
@click.option("--permissions", type=str, default=None, help="Grant set to list tools for.")
def tools(permissions: str | None) -> None:
    """List the tools the agent may call."""
    try:
        granted = parse_permissions(permissions) if permissions is not None else None
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--permissions") from exc

    async def _list() -> list[tuple[str, str, str]]:
        async with AgentService() as service:
            registry = service.registry
            if granted is not None:
                registry = registry.with_permissions(granted)
            return [
                (
                    definition.name,
                    ",".join(sorted(level.value for level in definition.required_permissions)),
                    definition.description,
                )
                for definition in registry.definitions()
            ]

    for name, required, description in _run(_list):
        click.echo(f"{name} [{required}] {description}")


@cli.group("logs")
def logs_group() -> None:
    """Interaction log commands."""


@logs_group.command("list")
@click.option("--limit", type=click.IntRange(1, 1000), default=20, show_default=True)
@click.option("--session-id", type=str, default=None)
@click.option("--json", "json_output", is_flag=True, help="Print rows as JSON lines.")
def logs_list(limit: int, session_id: str | None, json_output: bool) -> None:
    """Show the most recent interaction log rows."""
    interactions = _interaction_logger()
    rows = _run(lambda: interactions.get_recent_logs(limit=limit, session_id=session_id))
    for row in rows:
        if json_output:
            click.echo(json.dumps(row, default=str))
            continue
        kind = row["context"].get("type", "-") if isinstance(row["context"], dict) else "-"
        response = str(row["ai_response"]).replace("\n", " ")
        if len(response) > 80:
            response = response[:77] + "..."
        error = f" error={row['error']}" if row.get("error") else ""
        click.echo(f"{row['timestamp']} {row['id']} [{kind}] {response}{error}")


@logs_group.command("show")
@click.argument("log_id")
def logs_show(log_id: str) -> None:
    """Print one interaction row with its tool executions."""
    interactions = _interaction_logger()

    async def _show() -> dict[str, Any] | None:
        row = await interactions.get_interaction(log_id)
        if row is not None:
            row["tool_executions"] = await interactions.get_tool_executions(log_id)
        return row

    row = _run(_show)
    if row is None:
        kind = id_kind(log_id)
        if kind is not None and not log_id.startswith(("chain_", "log_")):
            raise click.ClickException(f"{log_id} is a {kind} id, not an interaction log id")
        raise click.ClickException(f"interaction log not found: {log_id}")
    click.echo(json.dumps(row, default=str, indent=2))


@logs_group.command("cleanup")
def logs_cleanup() -> None:
    """Apply retention and size limits to the interaction log."""
    interactions = _interaction_logger()

    async def _cleanup() -> dict[str, int]:
        await interactions.load_config()
        return await interactions.cleanup_old_logs()

    result = _run(_cleanup)
    click.echo(
        f"removed {result['expired']} expired, {result['trimmed']} over limit, "
        f"{result['tool_executions']} tool execution rows"
    )


@logs_group.command("config")
@click.option("--enable/--disable", "enabled", default=None)
@click.option("--level", type=click.Choice([level.value for level in LogLevel]), default=None)
@click.option("--retention-days", type=click.IntRange(1, 3650), default=None)
@click.option("--max-logs", type=click.IntRange(1), default=None)
@click.option("--sensitive/--no-sensitive", "sensitive", default=None)
def logs_config(
    enabled: bool | None,
    level: str | None,
    retention_days: int | None,
    max_logs: int | None,
    sensitive: bool | None,
) -> None:
    """Show or update the persisted interaction logging configuration."""
    interactions = _interaction_logger()

    async def _configure() -> dict[str, Any]:
        config = await interactions.load_config()
        changes: dict[str, Any] = {}
        if enabled is not None:
            changes["enabled"] = enabled
        if level is not None:
            changes["log_level"] = LogLevel(level)
        if retention_days is not None:
            changes["retention_days"] = retention_days
        if max_logs is not None:
            changes["max_logs"] = max_logs
        if sensitive is not None:
            changes["log_sensitive_data"] = sensitive
        if changes:
            config = await interactions.update_config(replace(config, **changes))
        return config.to_dict()

    click.echo(json.dumps(_run(_configure)))


if __name__ == "__main__":
    cli()
