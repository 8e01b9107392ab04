"""Instruction-format wrapping for chat-tuned models (Gemma turn tokens)."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace

from kirapilot.providers.base import GenerationOptions, LLMProvider, ModelInfo, ProviderStatus

START_TURN = "<start_of_turn>"
END_TURN = "<end_of_turn>"
USER_TURN = f"{START_TURN}user\n"
MODEL_TURN = f"{START_TURN}model\n"

_REQUEST_PREFIXES = ("Question:", "User Request:", "Request:")


def _last_line_starting(lines: list[str], prefixes: tuple[str, ...]) -> int | None:
    for index in range(len(lines) - 1, -1, -1):
        if lines[index].strip().startswith(prefixes):
            return index
    return None


def extract_system_and_user(prompt: str) -> tuple[str, str] | None:
    """Split a prompt into (system preamble, user part), or None when no preamble is found.

    The user part starts at the last request line, so worked examples that
    contain their own Question: line stay in the preamble.
    """
    lowered = prompt.lower()
    lines = prompt.splitlines()
    if lowered.startswith("you are"):
        index = _last_line_starting(lines, ("Question:",))
        if index is not None:
            return "\n".join(lines[:index]).strip(), "\n".join(lines[index:]).strip()

    if len(lines) > 10:
        index = _last_line_starting(lines, _REQUEST_PREFIXES)
        if index is not None:
            return "\n".join(lines[:index]), "\n".join(lines[index:])

    if "available tools:" in lowered and "format:" in lowered and lines:
        last = lines[-1]
        if last.strip() and "Format:" not in last and "Example:" not in last:
            return "\n".join(lines[:-1]), f"Question: {last.strip()}"
    return None


def format_gemma_prompt(prompt: str) -> str:
    split = extract_system_and_user(prompt)
    if split is not None:
        system_part, user_part = split
        return f"{USER_TURN}{system_part.strip()}\n\n{user_part.strip()}{END_TURN}\n{MODEL_TURN}"
    return f"{USER_TURN}{prompt.strip()}{END_TURN}\n{MODEL_TURN}"


def parse_gemma_response(response: str) -> str:
    """Strip turn tokens and return the model's text.

    When the echoed prompt is present, only the text after the last model turn
    marker is kept.
    """
    text = response
    marker = text.rfind(MODEL_TURN)
    if marker >= 0:
        text = text[marker + len(MODEL_TURN) :]
    else:
        # A raw completion may run on into a new user turn.
        next_user = text.find(USER_TURN)
        if next_user > 0:
            text = text[:next_user]
    end = text.find(END_TURN)
    if end >= 0:
        text = text[:end]
    text = text.replace(START_TURN, "").replace(END_TURN, "")
    if marker < 0:
        stripped = text.lstrip()
        while stripped.startswith(("model\n", "user\n")):
            stripped = stripped.split("\n", 1)[1].lstrip()
        text = stripped
    return text.strip()


@dataclass(frozen=True, slots=True)
class ChatTemplate:
    family: str
    format_prompt: Callable[[str], str]
    parse_response: Callable[[str], str]
    stop_sequences: tuple[str, ...]


GEMMA_TEMPLATE = ChatTemplate(
    family="gemma",
    format_prompt=format_gemma_prompt,
    parse_response=parse_gemma_response,
    stop_sequences=(END_TURN, f"\n{START_TURN}user"),
)

TEMPLATES: dict[str, ChatTemplate] = {GEMMA_TEMPLATE.family: GEMMA_TEMPLATE}


class ChatTemplateProvider:
    """Wraps another provider so prompts and completions use the model's turn format."""

    def __init__(self, inner: LLMProvider, template: ChatTemplate | str = GEMMA_TEMPLATE) -> None:
        self.inner = inner
        self.template = TEMPLATES[template] if isinstance(template, str) else template

    @property
    def name(self) -> str:
        return str(getattr(self.inner, "name", self.inner.model_info().provider))

    async def generate(self, prompt: str, options: GenerationOptions) -> str:
        stops = list(options.stop_sequences or [])
        for stop in self.template.stop_sequences:
            if stop not in stops:
                stops.append(stop)
        raw = await self.inner.generate(
            self.template.format_prompt(prompt), replace(options, stop_sequences=stops)
        )
        return self.template.parse_response(raw)

    def is_ready(self) -> bool:
        return self.inner.is_ready()

    async def status(self) -> ProviderStatus:
        return await self.inner.status()

    def model_info(self) -> ModelInfo:
        info = self.inner.model_info()
        return replace(info, metadata={**info.metadata, "chat_template": self.template.family})

    async def initialize(self) -> None:
        await self.inner.initialize()

    async def cleanup(self) -> None:
        await self.inner.cleanup()

    def capabilities(self) -> set[str]:
        return set(self.inner.capabilities())

    def validate_prompt(self, prompt: str) -> None:
        self.inner.validate_prompt(prompt)
