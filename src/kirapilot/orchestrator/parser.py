"""Best-effort parsing of Thought / Action / Answer model output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from kirapilot.tools.types import ToolCall

MARKERS = ("Thought:", "Action:", "Observation:", "Answer:", "Question:", "PAUSE")

_ACTION_BODY = re.compile(
    r"^[`*]*([A-Za-z_][A-Za-z0-9_\-]*)[`*]*\s*(?:with\s+args\s*)?:?\s*(.*)$", re.DOTALL
)
_QUOTED_KEY = re.compile(r"'([^'\"]+)'\s*:")
_TRAILING_COMMA = re.compile(r",\s*([}\]])")


@dataclass(slots=True)
class ParsedTurn:
    raw: str
    thought: str | None = None
    action: ToolCall | None = None
    # Set when an Action line was present but could not be parsed.
    action_error: str | None = None
    answer: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.raw.strip()


def _strip_markup(line: str) -> str:
    """Drop markdown emphasis around a leading marker (``**Answer:**``)."""
    stripped = line.strip()
    match = re.match(r"^[*_#>\s]*(Thought|Action|Observation|Answer|Question)\s*:[*_]*", stripped)
    if not match:
        return stripped
    return f"{match.group(1)}:{stripped[match.end():]}"


def _marker(line: str) -> str | None:
    cleaned = _strip_markup(line)
    for marker in MARKERS:
        if cleaned.startswith(marker):
            return marker
    return None


def repair_json(raw: str) -> str:
    """Single-quote to double-quote and trailing-comma trim."""
    fixed = raw.strip()
    if "'" in fixed and '"' not in fixed:
        fixed = fixed.replace("'", '"')
    else:
        fixed = _QUOTED_KEY.sub(r'"\1":', fixed)
    fixed = _TRAILING_COMMA.sub(r"\1", fixed)
    if fixed.endswith(","):
        fixed = fixed[:-1]
    return fixed


def parse_action_args(raw: str) -> dict[str, Any]:
    """Parse an action's argument text into an object; raises ValueError when it is not one."""
    text = raw.strip()
    if text.endswith("PAUSE"):
        text = text[: -len("PAUSE")].strip()
    if not text:
        return {}
    try:
        value = json.loads(text)
    except json.JSONDecodeError:
        try:
            value = json.loads(repair_json(text))
        except json.JSONDecodeError as exc:
            raise ValueError(f"arguments are not valid JSON: {exc.msg}") from exc
    if not isinstance(value, dict):
        raise ValueError("arguments must be a JSON object")
    return value


def parse_action_line(line: str) -> ToolCall:
    """``Action: <tool_name>: <json-object>``; raises ValueError on anything else."""
    body = _strip_markup(line)[len("Action:"):].strip()
    match = _ACTION_BODY.match(body)
    if not match:
        raise ValueError(f"invalid tool name in action: {body[:40]!r}")
    return ToolCall(name=match.group(1), args=parse_action_args(match.group(2)))


def _section(lines: list[str], start: int) -> str:
    """Text of the marker line at ``start`` up to the next protocol marker."""
    first = _strip_markup(lines[start])
    parts = [first.split(":", 1)[1].strip() if ":" in first else ""]
    for line in lines[start + 1 :]:
        if _marker(line) is not None:
            break
        parts.append(line.rstrip())
    return "\n".join(parts).strip()


def _action_text(lines: list[str], start: int) -> str:
    """The action line plus continuation lines of a JSON object spread over several lines."""
    text = lines[start]
    depth = text.count("{") - text.count("}")
    for line in lines[start + 1 :]:
        if depth <= 0 or _marker(line) is not None:
            break
        text += "\n" + line
        depth += line.count("{") - line.count("}")
    return text


def parse_response(text: str) -> ParsedTurn:
    turn = ParsedTurn(raw=text)
    lines = text.splitlines()
    action_index = answer_index = thought_index = None
    for index, line in enumerate(lines):
        marker = _marker(line)
        if marker == "Action:" and action_index is None:
            action_index = index
        elif marker == "Answer:" and answer_index is None:
            answer_index = index
        elif marker == "Thought:" and thought_index is None:
            thought_index = index

    if thought_index is not None:
        turn.thought = _section(lines, thought_index) or None

    # An Answer that precedes any Action ends the chain; one after it is ignored.
    if answer_index is not None and (action_index is None or answer_index < action_index):
        turn.answer = _section(lines, answer_index) or None
        if turn.thought is None and answer_index > 0:
            turn.thought = "\n".join(lines[:answer_index]).strip() or None
        return turn

    if action_index is not None:
        try:
            turn.action = parse_action_line(_action_text(lines, action_index))
        except ValueError as exc:
            turn.action_error = str(exc)
        if turn.thought is None and action_index > 0:
            turn.thought = "\n".join(lines[:action_index]).strip() or None
        return turn

    if turn.thought is None:
        kept = [line for line in lines if line.strip() != "PAUSE"]
        turn.thought = "\n".join(kept).strip() or None
    return turn
