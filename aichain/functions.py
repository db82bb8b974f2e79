"""Tool bindings: a schema, an implementation and the call spec derived from them.

A ToolBinding:
- exposes a CallSpec so the model knows how to request it
- parses raw arguments (a JSON string or a call message) into the schema
- invokes the implementation with the validated value

Bindings do not retry. Retry policy belongs to the chain.
"""

from __future__ import annotations

import inspect
import json
from collections.abc import Callable, Iterator
from typing import Any, Generic, TypeVar

from pydantic import BaseModel

from aichain.errors import ParseError, SchemaError
from aichain.messages import FunctionCallMessage, MessageLike, RawMessage, ToolCallMessage, narrow
from aichain.schemas import CallSpec, to_call_spec, validate

InputT = TypeVar('InputT', bound=BaseModel)

ToolImpl = Callable[[Any], Any]


class ToolBinding(Generic[InputT]):
    """A schema-validated function the model may ask to call."""

    __slots__ = ('_schema', '_impl', '_spec')

    def __init__(self, schema: type[InputT], impl: Callable[[InputT], Any], spec: CallSpec) -> None:
        self._schema = schema
        self._impl = impl
        self._spec = spec

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def description(self) -> str:
        return self._spec.description

    @property
    def input_schema(self) -> type[InputT]:
        return self._schema

    @property
    def impl(self) -> Callable[[InputT], Any]:
        """The underlying implementation, without argument parsing."""
        return self._impl

    @property
    def spec(self) -> CallSpec:
        return self._spec

    def tool_spec(self) -> dict[str, Any]:
        return self._spec.to_tool_spec()

    def parse_input(self, raw: str | MessageLike, *, tool_call_id: str | None = None) -> InputT:
        """Parse and validate call arguments.

        Args:
            raw: JSON-encoded arguments, or a FunctionCall / ToolCall message.
            tool_call_id: When `raw` is a ToolCall message, pick this entry.

        Returns:
            The validated schema instance.

        Raises:
            ParseError: If the payload is missing, not JSON, or not a JSON object.
            ValidationFailure: If the JSON does not match the schema.
        """
        arguments = raw if isinstance(raw, str) else self._arguments_from_message(raw, tool_call_id)

        try:
            payload = json.loads(arguments) if arguments.strip() else {}
        except json.JSONDecodeError as exc:
            raise ParseError(f'Invalid JSON arguments for {self.name}: {exc.msg}') from exc

        if not isinstance(payload, dict):
            raise ParseError(f'Arguments for {self.name} must be a JSON object, got {type(payload).__name__}')

        return validate(self._schema, payload)

    async def invoke(self, raw: str | MessageLike, *, tool_call_id: str | None = None) -> Any:
        """Parse the arguments and run the implementation.

        Errors from parsing or from the implementation propagate unchanged.
        """
        params = self.parse_input(raw, tool_call_id=tool_call_id)
        result = self._impl(params)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def __call__(self, raw: str | MessageLike, *, tool_call_id: str | None = None) -> Any:
        return await self.invoke(raw, tool_call_id=tool_call_id)

    def _arguments_from_message(self, message: MessageLike, tool_call_id: str | None) -> str:
        if isinstance(message, RawMessage) or not isinstance(message, (FunctionCallMessage, ToolCallMessage)):
            message = narrow(message)

        if isinstance(message, FunctionCallMessage):
            if message.function_call.name != self.name:
                raise ParseError(f'Function call targets {message.function_call.name!r}, not {self.name!r}')
            return message.function_call.arguments

        if isinstance(message, ToolCallMessage):
            for entry in message.tool_calls:
                if entry.function.name != self.name:
                    continue
                if tool_call_id is not None and entry.id != tool_call_id:
                    continue
                return entry.function.arguments
            raise ParseError(f'No tool call for {self.name!r} in message')

        raise ParseError(f'{type(message).__name__} carries no call arguments for {self.name!r}')

    def __repr__(self) -> str:
        return f'ToolBinding(name={self.name!r}, schema={self._schema.__name__})'


def bind(
    schema: type[InputT],
    description: str,
    impl: Callable[[InputT], Any],
    *,
    name: str | None = None,
) -> ToolBinding[InputT]:
    """Bind a schema and an implementation into a tool.

    Args:
        schema: Pydantic model for the call arguments.
        description: Description shown to the model.
        impl: Sync or async callable receiving the validated model.
        name: Tool name; defaults to `impl.__name__`.

    Raises:
        SchemaError: If the schema or name cannot be used for function calling.
    """
    tool_name = name or getattr(impl, '__name__', '')
    if not tool_name or tool_name == '<lambda>':
        raise SchemaError('Tool name is required when the implementation has no usable __name__')
    return ToolBinding(schema, impl, to_call_spec(tool_name, description, schema))


class ToolSet:
    """Registry of tool bindings keyed by name.

    Built explicitly at setup time and treated as read-only afterwards.
    """

    def __init__(self, bindings: list[ToolBinding[Any]] | None = None) -> None:
        self._bindings: dict[str, ToolBinding[Any]] = {}
        for binding in bindings or []:
            self.register(binding)

    def register(self, binding: ToolBinding[Any]) -> ToolBinding[Any]:
        """Add a binding; names must be unique."""
        if binding.name in self._bindings:
            raise SchemaError(f'Duplicate tool name: {binding.name}')
        self._bindings[binding.name] = binding
        return binding

    def get(self, name: str) -> ToolBinding[Any] | None:
        return self._bindings.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._bindings

    def __iter__(self) -> Iterator[ToolBinding[Any]]:
        return iter(self._bindings.values())

    def __len__(self) -> int:
        return len(self._bindings)

    @property
    def names(self) -> list[str]:
        return list(self._bindings)

    @property
    def specs(self) -> list[CallSpec]:
        return [b.spec for b in self._bindings.values()]

    def tool_specs(self) -> list[dict[str, Any]]:
        return [b.tool_spec() for b in self._bindings.values()]
