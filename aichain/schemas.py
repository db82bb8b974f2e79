"""Schema adapter: pydantic models <-> call specs and validated values.

This module uses Pydantic as "real schema validation":
- A tool's input schema is a pydantic model class.
- The model renders the JSON Schema handed to the LLM as the call spec.
- Raw arguments from the model are validated (and coerced) before execution.
"""

from __future__ import annotations

import json
import re
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from aichain.errors import SchemaError, ValidationFailure, ValidationIssue

ModelT = TypeVar('ModelT', bound=BaseModel)

CALL_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_]{1,64}$')


class CallSpec(BaseModel):
    """The machine-readable description of a tool for the model.

    Examples:
        >>> CallSpec(name='get_weather', description='Weather lookup', parameters={'type': 'object'})
        CallSpec(name='get_weather', description='Weather lookup', parameters={'type': 'object'})
    """

    model_config = ConfigDict(frozen=True)

    name: str
    description: str = ''
    parameters: dict[str, Any] = Field(default_factory=dict)

    @field_validator('name')
    @classmethod
    def _check_name(cls, value: str) -> str:
        if not CALL_NAME_PATTERN.match(value):
            raise ValueError('name must match [A-Za-z0-9_]{1,64}')
        return value

    def to_function_spec(self) -> dict[str, Any]:
        """Spec for the legacy `functions` request field."""
        spec: dict[str, Any] = {'name': self.name}
        if self.description:
            spec['description'] = self.description
        spec['parameters'] = self.parameters
        return spec

    def to_tool_spec(self) -> dict[str, Any]:
        """Spec for the `tools` request field."""
        return {'type': 'function', 'function': self.to_function_spec()}


def to_call_spec(name: str, description: str, schema: type[BaseModel]) -> CallSpec:
    """Derive a call spec from a schema.

    Args:
        name: Tool name exposed to the model.
        description: What the tool does, in words the model will read.
        schema: Pydantic model describing the call arguments.

    Returns:
        A CallSpec whose `parameters` is a JSON Schema object.

    Raises:
        SchemaError: If the schema is not an object-of-fields model or the name is invalid.
    """
    if not isinstance(schema, type) or not issubclass(schema, BaseModel):
        raise SchemaError(f'Tool {name!r}: schema must be a pydantic model class, got {schema!r}')
    if not CALL_NAME_PATTERN.match(name):
        raise SchemaError(f'Tool name {name!r} must match [A-Za-z0-9_]{{1,64}}')

    parameters = _strip_titles(schema.model_json_schema())
    if parameters.get('type') != 'object':
        raise SchemaError(f'Tool {name!r}: call arguments must be a JSON object schema')
    parameters.setdefault('properties', {})

    return CallSpec(name=name, description=description.strip(), parameters=parameters)


def dump_call_spec(spec: CallSpec) -> str:
    """Canonical JSON encoding of a call spec (stable across runs)."""
    return json.dumps(spec.model_dump(), sort_keys=True, separators=(',', ':'), ensure_ascii=False)


def validate(schema: type[ModelT], raw_value: Any) -> ModelT:
    """Validate and coerce a decoded JSON value against a schema.

    Args:
        schema: Pydantic model class.
        raw_value: Decoded JSON (usually a dict).

    Returns:
        A validated model instance.

    Raises:
        ValidationFailure: With one issue per failing field path, in order of first occurrence.
    """
    try:
        return schema.model_validate(raw_value)
    except ValidationError as exc:
        raise ValidationFailure(schema.__name__, issues_from_validation_error(exc)) from exc


def issues_from_validation_error(exc: ValidationError) -> list[ValidationIssue]:
    """Flatten a pydantic ValidationError into ordered, de-duplicated issues."""
    issues: list[ValidationIssue] = []
    seen: set[str] = set()
    for err in exc.errors():
        path = '.'.join(str(part) for part in err.get('loc', ())) or '$'
        if path in seen:
            continue
        seen.add(path)
        issues.append(ValidationIssue(path=path, reason=err.get('msg', 'invalid value')))
    return issues


def _strip_titles(node: Any) -> Any:
    # Pydantic adds "title" to every model and field; providers don't need it.
    # A property literally named "title" lives under "properties" and is kept.
    if isinstance(node, dict):
        out: dict[str, Any] = {}
        for key, value in node.items():
            if key == 'title' and isinstance(value, str):
                continue
            if key in ('properties', '$defs') and isinstance(value, dict):
                out[key] = {k: _strip_titles(v) for k, v in value.items()}
            else:
                out[key] = _strip_titles(value)
        return out
    if isinstance(node, list):
        return [_strip_titles(item) for item in node]
    return node
