"""Chat message protocol.

Messages are a closed set of variants tagged by role and shape:

- SystemMessage, UserMessage, AssistantMessage: text turns
- FunctionCallMessage / FunctionResultMessage: legacy single function calls
- ToolCallMessage / ToolResultMessage: (parallel) tool calls correlated by id

`narrow()` turns an untyped message (`RawMessage` or a plain dict, as returned
by a chat-completions API) into exactly one variant, or raises ProtocolError.
"""

from __future__ import annotations

import json
import re
import textwrap
from collections.abc import Mapping
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from aichain.errors import ProtocolError

Role = Literal['system', 'user', 'assistant', 'function', 'tool']


class FunctionCall(BaseModel):
    """Name and JSON-encoded arguments of a function the model wants called."""

    model_config = ConfigDict(frozen=True)

    name: str
    arguments: str = '{}'


class ToolCallEntry(BaseModel):
    """One entry of an assistant's `tool_calls` list."""

    model_config = ConfigDict(frozen=True)

    id: str
    type: Literal['function'] = 'function'
    function: FunctionCall


class RawMessage(BaseModel):
    """Message as it appears on the wire, before narrowing.

    `content` may be None for assistant messages carrying a call request.
    """

    model_config = ConfigDict(extra='ignore')

    role: Role
    content: str | None = None
    name: str | None = None
    function_call: FunctionCall | None = None
    tool_calls: list[ToolCallEntry] | None = None
    tool_call_id: str | None = None


class _Message(BaseModel):
    model_config = ConfigDict(frozen=True)


class SystemMessage(_Message):
    """Instruction context for the model."""

    role: Literal['system'] = 'system'
    content: str
    name: str | None = None


class UserMessage(_Message):
    """End-user input."""

    role: Literal['user'] = 'user'
    content: str
    name: str | None = None


class AssistantMessage(_Message):
    """Natural-language answer from the model."""

    role: Literal['assistant'] = 'assistant'
    content: str
    name: str | None = None


class FunctionCallMessage(_Message):
    """Assistant request to call a single (legacy) function."""

    role: Literal['assistant'] = 'assistant'
    content: None = None
    function_call: FunctionCall
    name: str | None = None


class ToolCallMessage(_Message):
    """Assistant request to call one or more tools."""

    role: Literal['assistant'] = 'assistant'
    content: None = None
    tool_calls: list[ToolCallEntry] = Field(min_length=1)
    name: str | None = None


class FunctionResultMessage(_Message):
    """Result of a legacy function call."""

    role: Literal['function'] = 'function'
    content: str
    name: str


class ToolResultMessage(_Message):
    """Result of one tool call, correlated by `tool_call_id`."""

    role: Literal['tool'] = 'tool'
    content: str
    tool_call_id: str
    name: str | None = None


Message = Union[
    SystemMessage,
    UserMessage,
    AssistantMessage,
    FunctionCallMessage,
    ToolCallMessage,
    FunctionResultMessage,
    ToolResultMessage,
]

ResponseMessage = Union[AssistantMessage, FunctionCallMessage, ToolCallMessage]

MessageLike = Union[Message, RawMessage, Mapping[str, Any]]


# ------------------------------
# Content helpers
# ------------------------------

_BLANK_RUNS = re.compile(r'\n{3,}')


def clean_string_for_model(text: str) -> str:
    """De-indent, trim and collapse runs of blank lines."""
    text = textwrap.dedent(text.replace('\r\n', '\n'))
    text = _BLANK_RUNS.sub('\n\n', text)
    return text.strip()


def stringify_for_model(value: Any) -> str:
    """Render a tool result payload as message content."""
    if value is None:
        return ''
    if isinstance(value, str):
        return value
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return json.dumps(value, ensure_ascii=False, default=str)


# ------------------------------
# Constructors
# ------------------------------


def system(content: str, *, name: str | None = None, clean_content: bool = True) -> SystemMessage:
    """Create a system message. Cleans indentation and newlines by default."""
    return SystemMessage(content=clean_string_for_model(content) if clean_content else content, name=name)


def user(content: str, *, name: str | None = None, clean_content: bool = True) -> UserMessage:
    """Create a user message. Cleans indentation and newlines by default."""
    return UserMessage(content=clean_string_for_model(content) if clean_content else content, name=name)


def assistant(content: str, *, name: str | None = None, clean_content: bool = True) -> AssistantMessage:
    """Create an assistant message. Cleans indentation and newlines by default."""
    return AssistantMessage(content=clean_string_for_model(content) if clean_content else content, name=name)


def function_call(name: str, arguments: str | Mapping[str, Any], *, message_name: str | None = None) -> FunctionCallMessage:
    """Create a legacy function call message."""
    if not isinstance(arguments, str):
        arguments = json.dumps(dict(arguments), ensure_ascii=False)
    return FunctionCallMessage(function_call=FunctionCall(name=name, arguments=arguments), name=message_name)


def function_result(content: Any, name: str) -> FunctionResultMessage:
    """Create a legacy function result message."""
    return FunctionResultMessage(content=stringify_for_model(content), name=name)


def tool_call(tool_calls: list[ToolCallEntry] | list[Mapping[str, Any]], *, name: str | None = None) -> ToolCallMessage:
    """Create a tool call message from entries or their dict form."""
    entries = [t if isinstance(t, ToolCallEntry) else ToolCallEntry.model_validate(t) for t in tool_calls]
    return ToolCallMessage(tool_calls=entries, name=name)


def tool_result(content: Any, tool_call_id: str, *, name: str | None = None) -> ToolResultMessage:
    """Create a tool result message."""
    return ToolResultMessage(content=stringify_for_model(content), tool_call_id=tool_call_id, name=name)


# ------------------------------
# Predicates
# ------------------------------


def _get(message: MessageLike, key: str) -> Any:
    if isinstance(message, Mapping):
        return message.get(key)
    return getattr(message, key, None)


def _has_tool_calls(message: MessageLike) -> bool:
    return bool(_get(message, 'tool_calls'))


def is_system(message: MessageLike) -> bool:
    return _get(message, 'role') == 'system'


def is_user(message: MessageLike) -> bool:
    return _get(message, 'role') == 'user'


def is_assistant(message: MessageLike) -> bool:
    """Assistant message with text content (not a call request)."""
    return _get(message, 'role') == 'assistant' and _get(message, 'content') is not None


def is_function_call(message: MessageLike) -> bool:
    return (
        _get(message, 'role') == 'assistant'
        and _get(message, 'content') is None
        and not _has_tool_calls(message)
        and _get(message, 'function_call') is not None
    )


def is_tool_call(message: MessageLike) -> bool:
    return _get(message, 'role') == 'assistant' and _get(message, 'content') is None and _has_tool_calls(message)


def is_function_result(message: MessageLike) -> bool:
    return _get(message, 'role') == 'function' and bool(_get(message, 'name'))


def is_tool_result(message: MessageLike) -> bool:
    return _get(message, 'role') == 'tool' and bool(_get(message, 'tool_call_id'))


# ------------------------------
# Narrowing
# ------------------------------


def to_raw(message: MessageLike) -> RawMessage:
    """Coerce any message-like value into a RawMessage.

    Raises:
        ProtocolError: If the value is not a message shape at all.
    """
    if isinstance(message, RawMessage):
        return message
    if isinstance(message, BaseModel):
        return RawMessage.model_validate(message.model_dump())
    try:
        return RawMessage.model_validate(message)
    except ValidationError as exc:
        raise ProtocolError(f'Malformed message: {exc}', raw=message) from exc


def narrow(message: MessageLike) -> Message:
    """Classify a message into exactly one variant.

    Order (first match wins):
    1. content is None and tool_calls present -> ToolCallMessage
    2. content is None and function_call present -> FunctionCallMessage
    3. content is not None -> role-specific variant

    Raises:
        ProtocolError: content is None with no call payload, or a role's
            required field (name / tool_call_id) is missing.
    """
    if isinstance(message, _Message):
        return message  # type: ignore[return-value]

    raw = to_raw(message)

    if raw.content is None:
        if raw.role != 'assistant':
            raise ProtocolError(f'{raw.role} message has no content', raw=raw)
        if raw.tool_calls:
            return ToolCallMessage(tool_calls=raw.tool_calls, name=raw.name)
        if raw.function_call is not None:
            return FunctionCallMessage(function_call=raw.function_call, name=raw.name)
        raise ProtocolError('Invalid message: content is null and no function_call or tool_calls present', raw=raw)

    if raw.role == 'system':
        return SystemMessage(content=raw.content, name=raw.name)
    if raw.role == 'user':
        return UserMessage(content=raw.content, name=raw.name)
    if raw.role == 'assistant':
        return AssistantMessage(content=raw.content, name=raw.name)
    if raw.role == 'function':
        if not raw.name:
            raise ProtocolError('function message requires a name', raw=raw)
        return FunctionResultMessage(content=raw.content, name=raw.name)
    if not raw.tool_call_id:
        raise ProtocolError('tool message requires a tool_call_id', raw=raw)
    return ToolResultMessage(content=raw.content, tool_call_id=raw.tool_call_id, name=raw.name)


def narrow_response(message: MessageLike) -> ResponseMessage:
    """Narrow a message received from the model. Only assistant shapes are legal."""
    narrowed = narrow(message)
    if not isinstance(narrowed, (AssistantMessage, FunctionCallMessage, ToolCallMessage)):
        raise ProtocolError(f'Model responded with a {narrowed.role} message', raw=message)
    return narrowed


def to_payload(message: MessageLike) -> dict[str, Any]:
    """Wire form of a message for a chat-completions request."""
    msg = narrow(message)
    payload = msg.model_dump(exclude_none=True)
    if isinstance(msg, (FunctionCallMessage, ToolCallMessage)):
        payload['content'] = None
    return payload
