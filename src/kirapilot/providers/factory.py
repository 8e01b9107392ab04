"""Provider construction from settings."""

from __future__ import annotations

import httpx

from kirapilot.config import Settings, get_settings
from kirapilot.providers.base import LLMProvider
from kirapilot.providers.chat_template import ChatTemplateProvider
from kirapilot.providers.completions import CompletionsProvider
from kirapilot.providers.gemini import GeminiProvider
from kirapilot.providers.local import LocalProvider
from kirapilot.providers.manager import ProviderManager, ProviderPreferences, SwitchingConfig
from kirapilot.retry import CircuitBreaker


def build_providers(
    settings: Settings | None = None,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> dict[str, LLMProvider]:
    settings = settings or get_settings()
    providers: dict[str, LLMProvider] = {
        "local": ChatTemplateProvider(LocalProvider(transport=transport), "gemma"),
        "gemini": GeminiProvider(transport=transport),
    }
    if settings.completions_base_url.strip():
        providers["completions"] = ChatTemplateProvider(
            CompletionsProvider(transport=transport), "gemma"
        )
    return providers


async def build_provider_manager(
    settings: Settings | None = None,
    *,
    providers: dict[str, LLMProvider] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> ProviderManager:
    settings = settings or get_settings()
    manager = ProviderManager(
        ProviderPreferences.from_settings(settings),
        SwitchingConfig.from_settings(settings),
        breaker_factory=lambda name: CircuitBreaker.from_settings(name, settings),
    )
    for name, provider in (providers or build_providers(settings, transport=transport)).items():
        await manager.register_provider(name, provider)
    return manager
