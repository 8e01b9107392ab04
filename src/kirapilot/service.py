"""Application wiring: providers, task store, interaction log, tools and the reasoning engine."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import replace
from typing import Any

import httpx

from kirapilot.config import Settings, get_settings, validate_settings_for_env
from kirapilot.db.migrations.runner import run_migrations
from kirapilot.db.task_store import SqliteTaskRepository
from kirapilot.errors import InvalidRequestError, KiraError
from kirapilot.interactions.logger import InteractionLogger
from kirapilot.orchestrator.chain import ReActChain, ReActDebugInfo
from kirapilot.orchestrator.engine import ReActConfig, ReActEngine
from kirapilot.providers.base import LLMProvider
from kirapilot.providers.factory import build_provider_manager, build_providers
from kirapilot.providers.manager import ProviderManager
from kirapilot.tools.builtin import build_tool_registry
from kirapilot.tools.registry import ToolRegistry
from kirapilot.tools.types import PermissionLevel, ToolContext, parse_permissions

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20


class AgentService:
    """Owns one configured agent and the per-session state carried between requests."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        providers: dict[str, LLMProvider] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._providers = providers
        self._transport = transport
        self._manager: ProviderManager | None = None
        self._repo: SqliteTaskRepository | None = None
        self._interactions: InteractionLogger | None = None
        self._registry: ToolRegistry | None = None
        self._engine: ReActEngine | None = None
        self._sessions: dict[str, ToolContext] = {}

    @property
    def started(self) -> bool:
        return self._engine is not None

    def _require(self, value: Any, name: str) -> Any:
        if value is None:
            raise RuntimeError(f"agent service not started ({name} missing)")
        return value

    @property
    def manager(self) -> ProviderManager:
        return self._require(self._manager, "provider manager")

    @property
    def repository(self) -> SqliteTaskRepository:
        return self._require(self._repo, "task repository")

    @property
    def interaction_logger(self) -> InteractionLogger:
        return self._require(self._interactions, "interaction logger")

    @property
    def registry(self) -> ToolRegistry:
        return self._require(self._registry, "tool registry")

    @property
    def engine(self) -> ReActEngine:
        return self._require(self._engine, "engine")

    async def startup(self, *, monitor: bool = False) -> None:
        if self.started:
            return
        settings = self.settings
        validate_settings_for_env(settings)
        run_migrations(settings.app_db)
        providers = self._providers
        if providers is None:
            providers = build_providers(settings, transport=self._transport)
        self._manager = await build_provider_manager(settings, providers=providers)
        self._repo = SqliteTaskRepository(settings.app_db)
        self._interactions = InteractionLogger.from_settings(settings, db_path=settings.app_db)
        await self._interactions.load_config()
        self._registry = build_tool_registry(
            self._repo, recorder=self._interactions, settings=settings
        )
        self._engine = ReActEngine(ReActConfig.from_settings(settings))
        if monitor:
            self._manager.start_health_monitoring()
        logger.info(
            "agent ready: providers=%s active=%s tools=%d",
            ",".join(self._manager.provider_names()),
            self._manager.active_provider,
            len(self._registry.get_available_tools()),
        )

    def session_context(self, session_id: str, message: str) -> ToolContext:
        """Fresh context for ``message`` that keeps the session's task and timer focus."""
        previous = self._sessions.get(session_id)
        ctx = ToolContext(user_message=message)
        if previous is not None:
            ctx.conversation_history = list(previous.conversation_history)
            ctx.recent_task_ids = list(previous.recent_task_ids)
            ctx.active_task_id = previous.active_task_id
            ctx.active_timer_session_id = previous.active_timer_session_id
            ctx.user_preferences = dict(previous.user_preferences)
        return ctx

    async def ask(
        self,
        message: str,
        *,
        session_id: str | None = None,
        permissions: Iterable[PermissionLevel] | str | None = None,
        max_iterations: int | None = None,
    ) -> ReActChain:
        if not message.strip():
            raise InvalidRequestError("message cannot be empty")
        await self.startup()
        engine = self.engine
        if max_iterations is not None:
            engine = ReActEngine(replace(engine.config, max_iterations=max_iterations))
        registry = self.registry
        if permissions is not None:
            registry = registry.with_permissions(parse_permissions(permissions))
        chain = engine.create_chain(message)
        session = session_id or f"react-{chain.id}"
        ctx = self.session_context(session, message)
        await engine.run(
            chain,
            self.manager,
            registry,
            self.interaction_logger,
            context=ctx,
            session_id=session,
        )
        ctx.conversation_history.extend([f"user: {message}", f"assistant: {chain.final_response}"])
        del ctx.conversation_history[:-HISTORY_LIMIT]
        self._sessions[session] = ctx
        return chain

    def debug_info(self, chain: ReActChain) -> ReActDebugInfo:
        return self.engine.extract_debug_info(chain)

    async def status(self) -> dict[str, Any]:
        await self.startup()
        config = await self.interaction_logger.get_config()
        return {
            "active_provider": self.manager.active_provider,
            "providers": self.manager.health_report(),
            "permissions": sorted(level.value for level in self.registry.granted_permissions),
            "tools": self.registry.get_available_tools(),
            "max_iterations": self.engine.max_iterations,
            "interaction_logging": config.to_dict(),
        }

    async def shutdown(self) -> None:
        if self._manager is not None:
            await self._manager.shutdown()
        if self._repo is not None:
            self._repo.close()
        self._manager = self._repo = self._interactions = None
        self._registry = self._engine = None
        self._sessions.clear()
        logger.info("agent stopped")

    async def __aenter__(self) -> AgentService:
        await self.startup()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        try:
            await self.shutdown()
        except KiraError as exc:
            logger.warning("agent shutdown failed: %s", exc.describe())
