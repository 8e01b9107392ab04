"""Identifier helpers.

Ids are ``<prefix>_<uuid4 hex>``; the prefix names the record kind so a log row or CLI
argument can be recognised at a glance.
"""

from uuid import uuid4

PREFIXES = {
    "chain": "reasoning chain",
    "step": "chain step",
    "call": "tool call",
    "log": "interaction log row",
    "tex": "tool execution row",
    "task": "task",
    "ses": "timer session",
}


def new_id(prefix: str) -> str:
    if prefix not in PREFIXES:
        raise ValueError(f"unknown id prefix: {prefix}")
    return f"{prefix}_{uuid4().hex}"


def id_kind(value: str) -> str | None:
    """Record kind for an id produced by ``new_id``, or None for foreign strings."""
    prefix, sep, rest = value.partition("_")
    if not sep or len(rest) != 32:
        return None
    return PREFIXES.get(prefix)
