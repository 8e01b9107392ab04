"""Provider contracts."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol, runtime_checkable

LOCAL_CAPABILITY = "offline"


@dataclass(slots=True)
class GenerationOptions:
    max_tokens: int | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop_sequences: list[str] | None = None
    # Advisory only; every generation is returned as one complete string.
    stream: bool = False


@dataclass(slots=True)
class ModelInfo:
    id: str
    name: str
    provider: str
    version: str | None = None
    max_context_length: int | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "version": self.version,
            "max_context_length": self.max_context_length,
            "metadata": dict(self.metadata),
        }


class ProviderState(str, Enum):
    INITIALIZING = "initializing"
    READY = "ready"
    UNAVAILABLE = "unavailable"
    ERROR = "error"


@dataclass(slots=True, frozen=True)
class ProviderStatus:
    state: ProviderState
    detail: str | None = None

    @classmethod
    def initializing(cls) -> ProviderStatus:
        return cls(ProviderState.INITIALIZING)

    @classmethod
    def ready(cls) -> ProviderStatus:
        return cls(ProviderState.READY)

    @classmethod
    def unavailable(cls, reason: str) -> ProviderStatus:
        return cls(ProviderState.UNAVAILABLE, reason)

    @classmethod
    def error(cls, message: str) -> ProviderStatus:
        return cls(ProviderState.ERROR, message)

    @property
    def is_ready(self) -> bool:
        return self.state is ProviderState.READY

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"state": self.state.value}
        if self.detail is not None:
            key = "reason" if self.state is ProviderState.UNAVAILABLE else "message"
            payload[key] = self.detail
        return payload


@runtime_checkable
class LLMProvider(Protocol):
    async def generate(self, prompt: str, options: GenerationOptions) -> str: ...

    def is_ready(self) -> bool: ...

    async def status(self) -> ProviderStatus: ...

    def model_info(self) -> ModelInfo: ...

    async def initialize(self) -> None: ...

    async def cleanup(self) -> None: ...

    def capabilities(self) -> set[str]: ...

    def validate_prompt(self, prompt: str) -> None: ...


def is_local(provider: LLMProvider) -> bool:
    return LOCAL_CAPABILITY in provider.capabilities()
