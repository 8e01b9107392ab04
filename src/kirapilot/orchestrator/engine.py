"""ReAct loop: drive a provider through Thought / Action / Observation / Answer turns."""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Any

from kirapilot.config import Settings, get_settings
from kirapilot.errors import (
    ErrorKind,
    KiraError,
    RequestTimeoutError,
    classify_exception,
)
from kirapilot.interactions.logger import InteractionLogger
from kirapilot.logging import chain_context
from kirapilot.orchestrator.chain import ReActChain, ReActDebugInfo, StepType
from kirapilot.orchestrator.observation import format_observation, synthesize_answer
from kirapilot.orchestrator.parser import ParsedTurn, parse_response
from kirapilot.orchestrator.prompt_builder import (
    CONFIRM_NUDGE,
    CONTINUE_NUDGE,
    FAILURE_NUDGE,
    REPAIR_NUDGE,
    RETRIEVAL_NUDGE,
    build_continuation,
    build_initial_prompt,
    estimate_tokens,
)
from kirapilot.providers.base import GenerationOptions, LLMProvider, is_local
from kirapilot.retry import RetryPolicy
from kirapilot.tools.registry import ToolRegistry
from kirapilot.tools.types import ToolCall, ToolContext, ToolResult

logger = logging.getLogger(__name__)

MIN_ITERATIONS = 1
MAX_ITERATIONS = 10
MAX_TEMPERATURE = 0.7
MAX_TOKENS = 2048
DEFAULT_STOP_SEQUENCES = ("PAUSE", "\nObservation:")
READ_ONLY_TOOLS = frozenset({"get_tasks", "timer_status", "productivity_analytics"})
NO_ANSWER_FALLBACK = "I couldn't finish working on that request. Please try rephrasing it."


@dataclass(slots=True)
class ReActConfig:
    max_iterations: int = 5
    turn_timeout_seconds: float = 60.0
    temperature: float = 0.3
    max_tokens: int = 1024
    stop_sequences: list[str] = field(default_factory=lambda: list(DEFAULT_STOP_SEQUENCES))
    detailed_logging: bool = False
    tool_hints: bool = True
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        self.max_iterations = max(MIN_ITERATIONS, min(MAX_ITERATIONS, int(self.max_iterations)))
        self.temperature = max(0.0, min(MAX_TEMPERATURE, float(self.temperature)))
        self.max_tokens = max(1, min(MAX_TOKENS, int(self.max_tokens)))

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ReActConfig:
        settings = settings or get_settings()
        return cls(
            max_iterations=settings.react_max_iterations,
            turn_timeout_seconds=settings.react_turn_timeout_seconds,
            temperature=settings.react_temperature,
            max_tokens=settings.react_max_tokens,
            detailed_logging=bool(settings.react_detailed_logging),
            retry=RetryPolicy.from_settings(settings),
        )

    def generation_options(self) -> GenerationOptions:
        return GenerationOptions(
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            stop_sequences=list(self.stop_sequences),
        )


def _turn_text(response: str) -> str:
    """The model's turn up to and including its PAUSE line."""
    kept: list[str] = []
    for line in response.strip().splitlines():
        if line.strip().startswith("Observation:"):
            break
        kept.append(line)
        if line.strip() == "PAUSE":
            break
    return "\n".join(kept)


def _clip(text: str, limit: int = 300) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[: limit - 3].rstrip() + "..."


class ReActEngine:
    def __init__(self, config: ReActConfig | None = None) -> None:
        self.config = config or ReActConfig()

    @property
    def max_iterations(self) -> int:
        return self.config.max_iterations

    def create_chain(self, user_request: str) -> ReActChain:
        return ReActChain(user_request=user_request)

    async def process_request(
        self,
        user_request: str,
        provider: LLMProvider,
        tool_registry: ToolRegistry | None = None,
        interaction_logger: InteractionLogger | None = None,
        *,
        context: ToolContext | None = None,
        session_id: str | None = None,
    ) -> ReActChain:
        chain = self.create_chain(user_request)
        return await self.run(
            chain,
            provider,
            tool_registry,
            interaction_logger,
            context=context,
            session_id=session_id,
        )

    async def run(
        self,
        chain: ReActChain,
        provider: LLMProvider,
        tool_registry: ToolRegistry | None = None,
        interaction_logger: InteractionLogger | None = None,
        *,
        context: ToolContext | None = None,
        session_id: str | None = None,
    ) -> ReActChain:
        """Drive ``chain`` to an answer, a degraded answer, or a terminal error.

        Cancellation marks the chain aborted, skips logging and re-raises.
        """
        ctx = context or ToolContext(user_message=chain.user_request)
        ctx.metadata["chain_id"] = chain.id
        chain.metadata.setdefault("session_id", session_id or f"react-{chain.id}")
        with chain_context(chain.id):
            logger.info("chain started (max_iterations=%d)", self.config.max_iterations)
            try:
                await self._drive(chain, provider, tool_registry, interaction_logger, ctx)
            except asyncio.CancelledError:
                chain.add_step(
                    StepType.ERROR,
                    "Aborted: request cancelled",
                    metadata={"error_kind": ErrorKind.ABORTED.value},
                )
                chain.completed = False
                chain.metadata["aborted"] = True
                logger.info("chain aborted after %d iteration(s)", chain.iterations)
                raise
            logger.info(
                "chain finished: completed=%s iterations=%d steps=%d duration_ms=%s",
                chain.completed,
                chain.iterations,
                len(chain.steps),
                chain.total_duration_ms,
            )
            if interaction_logger is not None:
                await self._log_chain(chain, provider, interaction_logger)
        return chain

    async def _drive(
        self,
        chain: ReActChain,
        provider: LLMProvider,
        tool_registry: ToolRegistry | None,
        interaction_logger: InteractionLogger | None,
        ctx: ToolContext,
    ) -> None:
        definitions = tool_registry.definitions() if tool_registry is not None else []
        hint = None
        if tool_registry is not None and self.config.tool_hints and is_local(provider):
            suggestions = tool_registry.suggest_tools(ctx)
            hint = suggestions[0] if suggestions else None
        prompt = build_initial_prompt(chain.user_request, definitions, ctx.current_time, hint=hint)
        chain.metadata["system_prompt"] = prompt
        chain.metadata.update({"llm_time_ms": 0, "input_tokens": 0, "output_tokens": 0, "turns": 0})
        repair_used = False

        while chain.iterations < self.config.max_iterations:
            turn = chain.metadata["turns"] + 1
            chain.metadata["turns"] = turn
            try:
                response, elapsed_ms = await self._generate(
                    chain, provider, prompt, turn, interaction_logger
                )
            except KiraError as exc:
                self._fail(chain, exc)
                return
            parsed = parse_response(response)

            if parsed.answer is not None:
                if parsed.thought:
                    chain.add_step(StepType.THOUGHT, parsed.thought)
                chain.add_step(StepType.FINAL_ANSWER, parsed.answer, duration_ms=elapsed_ms)
                chain.finish(parsed.answer, completed=True)
                return

            chain.iterations += 1
            if parsed.thought:
                chain.add_step(StepType.THOUGHT, parsed.thought, duration_ms=elapsed_ms)

            if parsed.action is not None:
                observation, nudge = await self._act(chain, parsed.action, tool_registry, ctx)
                prompt = build_continuation(prompt, _turn_text(response), observation, nudge=nudge)
            elif parsed.action_error is not None and not repair_used:
                repair_used = True
                chain.add_step(
                    StepType.ERROR,
                    f"malformed action: {parsed.action_error}",
                    metadata={"raw": _clip(response, 500)},
                )
                prompt = build_continuation(
                    prompt,
                    _turn_text(response),
                    f"Error: malformed action ({parsed.action_error})",
                    nudge=REPAIR_NUDGE,
                )
            else:
                self._demote(chain, parsed)
                prompt = "\n".join(
                    part for part in (prompt.rstrip(), _turn_text(response), CONTINUE_NUDGE) if part
                ) + "\n"

        self._degrade(chain)

    async def _generate(
        self,
        chain: ReActChain,
        provider: LLMProvider,
        prompt: str,
        turn: int,
        interaction_logger: InteractionLogger | None,
    ) -> tuple[str, int]:
        provider.validate_prompt(prompt)
        options = self.config.generation_options()
        timeout = self.config.turn_timeout_seconds

        async def attempt() -> str:
            try:
                return await asyncio.wait_for(provider.generate(prompt, options), timeout)
            except TimeoutError as exc:
                raise RequestTimeoutError(f"turn exceeded the {timeout:g}s budget") from exc
            except KiraError:
                raise
            except Exception as exc:
                raise classify_exception(exc) from exc

        started = time.monotonic()
        response = await self.config.retry.run(attempt, label=f"generate turn {turn}")
        elapsed_ms = int((time.monotonic() - started) * 1000)
        chain.metadata["llm_time_ms"] += elapsed_ms
        chain.metadata["input_tokens"] += estimate_tokens(prompt)
        chain.metadata["output_tokens"] += estimate_tokens(response)
        logger.debug(
            "turn %d: prompt %d chars, response %d chars, %d ms",
            turn,
            len(prompt),
            len(response),
            elapsed_ms,
        )
        if interaction_logger is not None:
            await self._safe_log(
                interaction_logger.log_raw_llm_interaction(
                    str(chain.metadata["session_id"]),
                    turn,
                    prompt,
                    response,
                    self._model_info(provider),
                    elapsed_ms,
                )
            )
        return response, elapsed_ms

    async def _act(
        self,
        chain: ReActChain,
        call: ToolCall,
        tool_registry: ToolRegistry | None,
        ctx: ToolContext,
    ) -> tuple[str, str]:
        action_step = chain.add_step(
            StepType.ACTION,
            f"{call.name}: {json.dumps(call.args, default=str)}",
            tool_call=call,
        )
        if tool_registry is None:
            result = ToolResult.failure("NotFound: no tools are available")
        else:
            result = await tool_registry.execute_tool(call.name, call.args, ctx)
        action_step.duration_ms = result.execution_time_ms
        observation = format_observation(call.name, result)
        chain.add_step(
            StepType.OBSERVATION,
            observation,
            tool_result=result,
            metadata={"tool_name": call.name, "call_id": call.id},
        )
        logger.info(
            "tool %s -> success=%s in %d ms", call.name, result.success, result.execution_time_ms
        )
        if not result.success:
            return observation, FAILURE_NUDGE
        return observation, RETRIEVAL_NUDGE if call.name in READ_ONLY_TOOLS else CONFIRM_NUDGE

    def _demote(self, chain: ReActChain, parsed: ParsedTurn) -> None:
        """A second malformed action is kept as a plain thought."""
        if parsed.action_error is not None and not parsed.thought and parsed.raw.strip():
            chain.add_step(
                StepType.THOUGHT,
                parsed.raw.strip(),
                metadata={"demoted_action": parsed.action_error},
            )

    def _fail(self, chain: ReActChain, exc: KiraError) -> None:
        logger.error("chain failed: %s", exc.describe())
        chain.add_step(
            StepType.ERROR,
            exc.describe(),
            metadata={
                "error_kind": exc.kind.value,
                "error_code": exc.error_code,
                "retryable": exc.retryable,
            },
        )
        chain.metadata["error"] = exc.describe()
        chain.metadata["error_code"] = exc.error_code
        chain.finish(exc.user_message, completed=False)

    def _degrade(self, chain: ReActChain) -> None:
        observation = chain.last_observation()
        thought = chain.last_thought()
        fallback = _clip(thought.content) if thought is not None else NO_ANSWER_FALLBACK
        tool_name = observation.metadata.get("tool_name") if observation is not None else None
        answer = synthesize_answer(
            tool_name, observation.tool_result if observation is not None else None, fallback
        )
        if not answer.strip():
            answer = NO_ANSWER_FALLBACK
        logger.info("iteration limit reached; answering from the last observation")
        chain.add_step(StepType.FINAL_ANSWER, answer, metadata={"degraded": True})
        chain.metadata["degraded"] = True
        chain.finish(answer, completed=True)

    @staticmethod
    def _model_info(provider: LLMProvider) -> dict[str, Any]:
        try:
            return provider.model_info().to_dict()
        except KiraError:
            return {"id": "unknown", "name": "unknown", "provider": "unknown"}

    @staticmethod
    async def _safe_log(write: Awaitable[Any]) -> None:
        try:
            await write
        except KiraError as exc:
            logger.warning("interaction log write failed: %s", exc.describe())

    async def _log_chain(
        self, chain: ReActChain, provider: LLMProvider, interaction_logger: InteractionLogger
    ) -> None:
        model_info = self._model_info(provider)
        if self.config.detailed_logging:
            for step in chain.steps:
                await self._safe_log(interaction_logger.log_react_step(chain.id, step, model_info))
        await self._safe_log(interaction_logger.log_react_chain(chain, model_info))
        await self._safe_log(interaction_logger.log_react_performance(chain, model_info))

    def extract_debug_info(self, chain: ReActChain) -> ReActDebugInfo:
        tool_steps = chain.tool_steps()
        successful = sum(1 for step in tool_steps if step.tool_result and step.tool_result.success)
        failed = len(tool_steps) - successful
        durations = [step.duration_ms for step in chain.steps if step.duration_ms is not None]
        if chain.completed:
            status = "completed_with_errors" if chain.has_errors() else "completed_successfully"
        else:
            status = "incomplete"
        return ReActDebugInfo(
            chain_id=chain.id,
            total_iterations=chain.iterations,
            total_steps=len(chain.steps),
            step_breakdown=chain.step_breakdown(),
            total_duration_ms=chain.total_duration_ms or 0,
            total_tool_time_ms=sum(
                step.tool_result.execution_time_ms for step in tool_steps if step.tool_result
            ),
            successful_tools=successful,
            failed_tools=failed,
            tool_success_rate=round(successful / len(tool_steps), 3) if tool_steps else 0.0,
            average_step_duration_ms=(
                round(sum(durations) / len(durations), 1) if durations else 0.0
            ),
            completion_status=status,
            reasoning_quality_score=self.reasoning_quality_score(chain),
        )

    def reasoning_quality_score(self, chain: ReActChain) -> float:
        """Heuristic 0-100 score from completion, tool success, iterations used and thoughts."""
        if not chain.steps:
            return 0.0
        breakdown = chain.step_breakdown()
        score = 0.0
        if chain.completed:
            score += 30.0
        if breakdown[StepType.THOUGHT.value] > 0:
            score += 20.0
        tool_steps = chain.tool_steps()
        if tool_steps:
            successful = sum(
                1 for step in tool_steps if step.tool_result and step.tool_result.success
            )
            score += 15.0 + 15.0 * successful / len(tool_steps)
        if chain.iterations > self.config.max_iterations / 2:
            score -= 10.0
        if len(chain.final_response.strip()) > 10:
            score += 10.0
        score -= 5.0 * breakdown[StepType.ERROR.value]
        return max(0.0, min(100.0, score))
