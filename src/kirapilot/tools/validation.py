"""JSON-schema validation of tool arguments."""

from __future__ import annotations

from typing import Any

from jsonschema import Draft202012Validator

from kirapilot.errors import ValidationError
from kirapilot.tools.types import ToolDefinition


def build_validator(definition: ToolDefinition) -> Draft202012Validator:
    Draft202012Validator.check_schema(definition.parameters)
    return Draft202012Validator(definition.parameters)


def validate_arguments(
    definition: ToolDefinition,
    args: dict[str, Any],
    validator: Draft202012Validator | None = None,
) -> None:
    """Raise ValidationError naming the first offending field."""
    validator = validator or build_validator(definition)
    errors = sorted(validator.iter_errors(args), key=lambda err: (len(err.path), str(err.path)))
    if not errors:
        return
    missing = [name for name in definition.required if name not in args]
    if missing:
        raise ValidationError(f"missing required field: {missing[0]}", field=missing[0])
    first = errors[0]
    field = ".".join(str(part) for part in first.absolute_path) or None
    if field is None:
        raise ValidationError(f"invalid arguments for {definition.name}: {first.message}")
    raise ValidationError(f"invalid value for {field}: {first.message}", field=field)
