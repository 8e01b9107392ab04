"""Local provider backed by an embedded llama.cpp generator."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx

from kirapilot.config import get_settings
from kirapilot.errors import (
    DownloadFailedError,
    GenerationFailedError,
    InitializationError,
    InsufficientResourcesError,
    InvalidRequestError,
    KiraError,
    ModelLoadFailedError,
    ModelNotFoundError,
    ProviderUnavailableError,
)
from kirapilot.providers.base import GenerationOptions, ModelInfo, ProviderStatus
from kirapilot.retry import RetryPolicy

logger = logging.getLogger(__name__)

MODEL_SUFFIX = ".gguf"
DEFAULT_STOP_SEQUENCES = ["<end_of_turn>", "\n<start_of_turn>user"]
DOWNLOAD_RETRY = RetryPolicy(max_attempts=3, initial_delay=1.0, max_delay=60.0, jitter=True)

ModelLoader = Callable[[Path, int, int], Any]


def default_model_dir() -> Path:
    """OS-appropriate data directory for downloaded model files."""
    if sys.platform == "win32":
        base = Path(os.environ.get("LOCALAPPDATA") or Path.home() / "AppData" / "Local")
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share")
    return base / "kirapilot" / "models"


def load_llama_model(path: Path, context_size: int, threads: int) -> Any:
    try:
        from llama_cpp import Llama
    except ImportError as exc:
        raise InitializationError(
            "llama-cpp-python is not installed (install the 'local' extra)"
        ) from exc
    try:
        return Llama(
            model_path=str(path),
            n_ctx=context_size,
            n_threads=threads or None,
            verbose=False,
        )
    except MemoryError as exc:
        raise InsufficientResourcesError(f"not enough memory to load {path.name}") from exc
    except (OSError, RuntimeError, ValueError) as exc:
        raise ModelLoadFailedError(f"failed to load {path.name}: {exc}") from exc


class LocalProvider:
    name = "local"

    def __init__(
        self,
        model_dir: str | Path | None = None,
        *,
        model_file: str | None = None,
        model_url: str | None = None,
        auto_download: bool | None = None,
        context_size: int | None = None,
        max_prompt_chars: int | None = None,
        threads: int | None = None,
        loader: ModelLoader = load_llama_model,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        settings = get_settings()
        configured_dir = model_dir or settings.local_model_dir
        self.model_dir = (
            Path(configured_dir).expanduser() if configured_dir else default_model_dir()
        )
        self.model_file = model_file or settings.local_model_file
        self.model_url = model_url or settings.local_model_url or (
            f"https://huggingface.co/{settings.local_model_repo}/resolve/main/{self.model_file}"
        )
        self.auto_download = (
            bool(settings.local_auto_download) if auto_download is None else auto_download
        )
        self.context_size = context_size or settings.local_context_size
        self.max_prompt_chars = max_prompt_chars or settings.local_max_prompt_chars
        self.threads = settings.local_threads if threads is None else threads
        self._loader = loader
        self._transport = transport
        self._llm: Any = None
        self._model_path: Path | None = None
        self._status = ProviderStatus.initializing()
        self._init_attempted = False
        self._download_attempted = False
        self._init_lock = asyncio.Lock()
        # llama.cpp contexts are not thread-safe; generation is serialized.
        self._generate_lock = threading.Lock()

    def find_model_file(self) -> Path | None:
        if not self.model_dir.is_dir():
            return None
        preferred = self.model_dir / self.model_file
        if preferred.is_file():
            return preferred
        candidates = sorted(
            path for path in self.model_dir.iterdir() if path.suffix.lower() == MODEL_SUFFIX
        )
        return candidates[0] if candidates else None

    async def download_model(self) -> Path:
        target = self.model_dir / self.model_file
        partial = target.with_name(target.name + ".part")
        self.model_dir.mkdir(parents=True, exist_ok=True)

        async def _fetch() -> Path:
            try:
                async with httpx.AsyncClient(
                    timeout=httpx.Timeout(60.0, read=300.0),
                    follow_redirects=True,
                    transport=self._transport,
                ) as client:
                    async with client.stream("GET", self.model_url) as response:
                        if not response.is_success:
                            raise DownloadFailedError(
                                f"HTTP {response.status_code} downloading {self.model_url}"
                            )
                        with partial.open("wb") as handle:
                            async for chunk in response.aiter_bytes():
                                handle.write(chunk)
            except httpx.HTTPError as exc:
                raise DownloadFailedError(f"{type(exc).__name__}: {exc}") from exc
            partial.replace(target)
            return target

        logger.info("downloading local model from %s", self.model_url)
        try:
            return await DOWNLOAD_RETRY.run(_fetch, label="model download")
        finally:
            if partial.exists():
                partial.unlink()

    async def _resolve_model_path(self) -> Path:
        found = self.find_model_file()
        if found is not None:
            return found
        if not self.auto_download or self._download_attempted:
            raise ModelNotFoundError(f"no {MODEL_SUFFIX} model found in {self.model_dir}")
        self._download_attempted = True
        return await self.download_model()

    async def initialize(self) -> None:
        async with self._init_lock:
            if self._llm is not None or self._init_attempted:
                return
            self._init_attempted = True
            self._status = ProviderStatus.initializing()
            try:
                path = await self._resolve_model_path()
                self._llm = await asyncio.to_thread(
                    self._loader, path, self.context_size, self.threads
                )
            except KiraError as exc:
                self._status = ProviderStatus.unavailable(exc.message or exc.user_message)
                logger.warning("local provider unavailable: %s", exc.describe())
                return
            except (ImportError, OSError) as exc:
                self._status = ProviderStatus.unavailable(f"{type(exc).__name__}: {exc}")
                logger.warning("local provider unavailable: %s", exc)
                return
            self._model_path = path
            self._status = ProviderStatus.ready()
            logger.info("local model loaded from %s", path)

    async def cleanup(self) -> None:
        async with self._init_lock:
            llm, self._llm = self._llm, None
            self._init_attempted = False
            self._status = ProviderStatus.initializing()
        close = getattr(llm, "close", None)
        if callable(close):
            await asyncio.to_thread(close)

    def is_ready(self) -> bool:
        return self._llm is not None

    async def status(self) -> ProviderStatus:
        return self._status

    def model_info(self) -> ModelInfo:
        path = self._model_path or self.model_dir / self.model_file
        return ModelInfo(
            id=path.stem,
            name=f"{path.stem} (local)",
            provider=self.name,
            max_context_length=self.context_size,
            metadata={
                "provider_type": "local",
                "model_path": str(path),
                "loaded": self._llm is not None,
            },
        )

    def capabilities(self) -> set[str]:
        return {"text_generation", "conversation", "offline"}

    def validate_prompt(self, prompt: str) -> None:
        if not prompt.strip():
            raise InvalidRequestError("Prompt cannot be empty")
        if len(prompt) > self.max_prompt_chars:
            raise InvalidRequestError(
                f"Prompt too long for local model (max {self.max_prompt_chars} characters)"
            )

    def _complete(self, prompt: str, options: GenerationOptions) -> Any:
        kwargs: dict[str, Any] = {
            "max_tokens": options.max_tokens or 512,
            "stop": list(options.stop_sequences or DEFAULT_STOP_SEQUENCES),
        }
        if options.temperature is not None:
            kwargs["temperature"] = options.temperature
        if options.top_p is not None:
            kwargs["top_p"] = options.top_p
        with self._generate_lock:
            return self._llm(prompt, **kwargs)

    async def generate(self, prompt: str, options: GenerationOptions) -> str:
        if self._llm is None:
            raise ProviderUnavailableError(
                "local model is not loaded", provider=self.name
            )
        self.validate_prompt(prompt)
        try:
            output = await asyncio.to_thread(self._complete, prompt, options)
        except MemoryError as exc:
            raise InsufficientResourcesError("local generation ran out of memory") from exc
        except (RuntimeError, ValueError) as exc:
            raise GenerationFailedError(f"local generation failed: {exc}") from exc
        try:
            text = output["choices"][0]["text"]
        except (KeyError, IndexError, TypeError) as exc:
            raise GenerationFailedError("local generator returned no text") from exc
        return str(text)
