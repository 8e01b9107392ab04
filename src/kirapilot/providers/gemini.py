"""Gemini cloud provider using the generateContent REST endpoint."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from kirapilot.config import get_settings
from kirapilot.errors import (
    ConfigError,
    InvalidRequestError,
    LLMError,
    NetworkError,
    RequestTimeoutError,
    error_for_status,
)
from kirapilot.providers.base import GenerationOptions, ModelInfo, ProviderStatus

logger = logging.getLogger(__name__)

API_VERSION = "v1beta"
CONTEXT_WINDOW = 1_048_576


def build_request_body(prompt: str, options: GenerationOptions) -> dict[str, Any]:
    generation_config: dict[str, Any] = {}
    if options.max_tokens is not None:
        generation_config["maxOutputTokens"] = options.max_tokens
    if options.temperature is not None:
        generation_config["temperature"] = options.temperature
    if options.top_p is not None:
        generation_config["topP"] = options.top_p
    if options.stop_sequences:
        # The API accepts at most five stop sequences.
        generation_config["stopSequences"] = list(options.stop_sequences)[:5]
    body: dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
    if generation_config:
        body["generationConfig"] = generation_config
    return body


def parse_response_text(payload: Any) -> str:
    if not isinstance(payload, dict):
        raise LLMError("Invalid response format from Gemini API: body is not an object")
    candidates = payload.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        raise LLMError("Invalid response format from Gemini API: missing candidates")
    first = candidates[0]
    content = first.get("content") if isinstance(first, dict) else None
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list) or not parts or not isinstance(parts[0], dict):
        raise LLMError("Invalid response format from Gemini API: missing content parts")
    text = parts[0].get("text")
    if not isinstance(text, str):
        raise LLMError("Invalid response format from Gemini API: missing text")
    return text


class GeminiProvider:
    name = "gemini"

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        *,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        self.api_key = (api_key if api_key is not None else settings.gemini_api_key).strip()
        self.model = model or settings.gemini_model
        self.base_url = (base_url or settings.gemini_base_url).rstrip("/")
        self.timeout = timeout if timeout is not None else float(settings.gemini_timeout_seconds)
        self._transport = transport
        self._initialized = False

    def _model_url(self) -> str:
        return f"{self.base_url}/{API_VERSION}/models/{self.model}"

    async def initialize(self) -> None:
        if self._initialized:
            return
        if not self.api_key:
            logger.warning("gemini provider registered without an API key")
        self._initialized = True

    async def cleanup(self) -> None:
        self._initialized = False

    def is_ready(self) -> bool:
        return bool(self.api_key)

    async def status(self) -> ProviderStatus:
        if not self.api_key:
            return ProviderStatus.unavailable("API key not configured")
        try:
            async with httpx.AsyncClient(timeout=10, transport=self._transport) as client:
                response = await client.get(self._model_url(), params={"key": self.api_key})
        except httpx.HTTPError as exc:
            return ProviderStatus.error(f"{type(exc).__name__}: {exc}")
        if response.status_code in {401, 403}:
            return ProviderStatus.unavailable("API key rejected")
        if response.status_code >= 400:
            return ProviderStatus.error(f"HTTP {response.status_code}")
        return ProviderStatus.ready()

    def model_info(self) -> ModelInfo:
        return ModelInfo(
            id=self.model,
            name=f"Gemini {self.model}",
            provider=self.name,
            version=API_VERSION,
            max_context_length=CONTEXT_WINDOW,
            metadata={"api_version": API_VERSION, "provider_type": "cloud"},
        )

    def capabilities(self) -> set[str]:
        return {"text_generation", "conversation", "code_generation", "analysis"}

    def validate_prompt(self, prompt: str) -> None:
        if not prompt.strip():
            raise InvalidRequestError("Prompt cannot be empty")

    async def generate(self, prompt: str, options: GenerationOptions) -> str:
        if not self.api_key:
            raise ConfigError("Gemini API key not configured")
        self.validate_prompt(prompt)
        body = build_request_body(prompt, options)
        url = f"{self._model_url()}:generateContent"
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(url, params={"key": self.api_key}, json=body)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"gemini request timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"gemini request failed: {type(exc).__name__}: {exc}") from exc
        if not response.is_success:
            raise error_for_status(response.status_code, response.text)
        try:
            payload = response.json()
        except ValueError as exc:
            raise LLMError("Invalid response format from Gemini API: body is not JSON") from exc
        return parse_response_text(payload)
