"""Prompt assembly for the reasoning loop."""

from __future__ import annotations

import json
from datetime import datetime

from kirapilot.tools.types import ToolDefinition, ToolSuggestion

OBSERVATION_BUDGET_CHARS = 1600

PREAMBLE = (
    "You are KiraPilot, a concise task and time management assistant. "
    "You answer the user's question by reasoning step by step and calling tools when you "
    "need data or need to change something."
)

FORMAT_RULES = """Use exactly this format:
Thought: one short sentence about what to do next
Action: tool_name: {"arg": "value"}
PAUSE

You will then receive:
Observation: the tool result

When you can answer, reply with:
Answer: your reply to the user

Rules:
- Call at most one tool per turn and stop after PAUSE.
- Arguments must be a single-line JSON object; use {} when there are none.
- Keep answers short and direct.
- For simple look-ups just list what was found; do not add analysis or advice."""

EXAMPLE = """Example:
Question: what's on my list for today?
Thought: I need today's tasks.
Action: get_tasks: {"date": "2024-05-01"}
PAUSE
Observation: Found 2 tasks: Pending (1): "Write report" ; Completed (1): "Email Sam"
Answer: Here are your tasks for today:
Pending: Write report
Completed: Email Sam"""


def estimate_tokens(text: str) -> int:
    # ~4 chars/token for mixed English content.
    return max(1, len(text) // 4)


def clip(text: str, budget_chars: int = OBSERVATION_BUDGET_CHARS) -> str:
    normalized = text.strip()
    if len(normalized) <= budget_chars:
        return normalized
    head = int(budget_chars * 0.75)
    tail = int(budget_chars * 0.2)
    return f"{normalized[:head]}\n[...truncated...]\n{normalized[-tail:]}"


def render_tool_list(definitions: list[ToolDefinition]) -> str:
    if not definitions:
        return "Available tools: none. Answer from what you know."
    lines = ["Available tools:"]
    for definition in definitions:
        hint = definition.signature_hint()
        lines.append(f"- {definition.name}: {definition.description}. Args: {hint}")
    return "\n".join(lines)


def render_tool_hint(suggestion: ToolSuggestion) -> str:
    args = json.dumps(suggestion.inferred_args, default=str)
    return f"Hint: the {suggestion.tool_name} tool looks relevant; suggested args {args}."


def build_initial_prompt(
    user_request: str,
    definitions: list[ToolDefinition],
    now: datetime,
    *,
    hint: ToolSuggestion | None = None,
) -> str:
    context = (
        f"Current date: {now.date().isoformat()} ({now.strftime('%A')}), "
        f"time {now.strftime('%H:%M')}"
    )
    parts = [PREAMBLE, context, render_tool_list(definitions), FORMAT_RULES, EXAMPLE]
    if hint is not None:
        parts.append(render_tool_hint(hint))
    parts.append(f"Question: {user_request.strip()}")
    return "\n\n".join(parts)


def build_continuation(
    transcript: str, turn_text: str, observation: str, *, nudge: str = ""
) -> str:
    """Transcript plus the model's last turn and its observation, ready for the next turn."""
    parts = [transcript.rstrip(), turn_text.strip(), f"Observation: {clip(observation)}"]
    if nudge:
        parts.append(nudge)
    return "\n".join(part for part in parts if part) + "\n"


RETRIEVAL_NUDGE = (
    "If this answers the question, reply now with Answer: and list the results briefly."
)
REPAIR_NUDGE = (
    'Your last Action could not be parsed. Reply with exactly one line like: '
    'Action: tool_name: {"arg": "value"} followed by PAUSE, or give the Answer:.'
)
CONTINUE_NUDGE = "Continue. Call a tool with Action: or finish with Answer:."
CONFIRM_NUDGE = "The action succeeded. Reply with Answer: confirming it in one short sentence."
FAILURE_NUDGE = "The tool failed. Try a different Action or explain the problem in an Answer:."
