"""Provider for OpenAI-compatible ``/v1/completions`` servers hosting a local model."""

from __future__ import annotations

from typing import Any

import httpx

from kirapilot.config import get_settings
from kirapilot.errors import (
    InvalidRequestError,
    LLMError,
    NetworkError,
    RequestTimeoutError,
    error_for_status,
)
from kirapilot.providers.base import GenerationOptions, ModelInfo, ProviderStatus


class CompletionsProvider:
    name = "completions"

    def __init__(
        self,
        base_url: str | None = None,
        model: str | None = None,
        *,
        timeout: float | None = None,
        context_size: int = 8192,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = self._normalize_base_url(base_url or settings.completions_base_url)
        self.model = model or settings.completions_model
        self.timeout = (
            timeout if timeout is not None else float(settings.completions_timeout_seconds)
        )
        self.context_size = context_size
        self._transport = transport
        self._reachable: bool | None = None

    @staticmethod
    def _normalize_base_url(base_url: str) -> str:
        return base_url.rstrip("/").removesuffix("/v1")

    @staticmethod
    def _parse_response(payload: Any) -> str:
        if not isinstance(payload, dict):
            raise LLMError("completions response is not an object")
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise LLMError("completions response missing choices")
        first = choices[0]
        if not isinstance(first, dict) or not isinstance(first.get("text"), str):
            raise LLMError("completions response choice missing text")
        return str(first["text"])

    async def initialize(self) -> None:
        if self.base_url and self._reachable is None:
            self._reachable = (await self.status()).is_ready

    async def cleanup(self) -> None:
        self._reachable = None

    def is_ready(self) -> bool:
        return bool(self.base_url) and self._reachable is not False

    async def status(self) -> ProviderStatus:
        if not self.base_url:
            return ProviderStatus.unavailable("completions server URL not configured")
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/v1/models")
        except httpx.HTTPError as exc:
            self._reachable = False
            return ProviderStatus.unavailable(f"{type(exc).__name__}: {exc}")
        self._reachable = response.status_code < 400
        if not self._reachable:
            return ProviderStatus.error(f"HTTP {response.status_code}")
        return ProviderStatus.ready()

    def model_info(self) -> ModelInfo:
        return ModelInfo(
            id=self.model,
            name=self.model,
            provider=self.name,
            max_context_length=self.context_size,
            metadata={"provider_type": "local", "base_url": self.base_url},
        )

    def capabilities(self) -> set[str]:
        return {"text_generation", "conversation", "offline"}

    def validate_prompt(self, prompt: str) -> None:
        if not prompt.strip():
            raise InvalidRequestError("Prompt cannot be empty")

    async def generate(self, prompt: str, options: GenerationOptions) -> str:
        self.validate_prompt(prompt)
        body: dict[str, Any] = {
            "model": self.model,
            "prompt": prompt,
            "max_tokens": options.max_tokens or 512,
            "temperature": 0.7 if options.temperature is None else options.temperature,
            "top_p": 0.9 if options.top_p is None else options.top_p,
        }
        if options.stop_sequences:
            body["stop"] = list(options.stop_sequences)
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(f"{self.base_url}/v1/completions", json=body)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"completions request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"completions request failed: {type(exc).__name__}: {exc}") from exc
        if not response.is_success:
            raise error_for_status(response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            raise LLMError("completions response is not JSON") from exc
        return self._parse_response(payload)
