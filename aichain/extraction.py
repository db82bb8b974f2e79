"""Structured output extraction from free-form model text.

Used when the model is asked to emit a structured value as plain text, for
example a final answer in JSON wrapped in prose or markdown fences.
"""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator, Sequence
from typing import TYPE_CHECKING, Any, TypeVar

from pydantic import BaseModel

from aichain.errors import AIChainError, ParseError, RetryableError, ValidationFailure
from aichain.schemas import validate

if TYPE_CHECKING:
    from aichain.llm.base import ChatModel
    from aichain.messages import MessageLike

ModelT = TypeVar('ModelT', bound=BaseModel)

_OPENERS = {'{': '}', '[': ']'}


def find_json_text(text: str) -> str | None:
    """Return the first balanced JSON object/array substring, or None.

    Brackets inside JSON strings (and escaped quotes) are ignored. A candidate
    that does not decode is skipped and the scan continues after its opener.
    """
    for candidate, _ in _json_candidates(text):
        return candidate
    return None


def _json_candidates(text: str) -> Iterator[tuple[str, Any]]:
    # Yields (substring, decoded value) for every decodable balanced span, left to right.
    start = 0
    while True:
        begin = _next_opener(text, start)
        if begin == -1:
            return
        end = _match_close(text, begin)
        if end != -1:
            candidate = text[begin : end + 1]
            try:
                value = json.loads(candidate)
            except json.JSONDecodeError:
                pass
            else:
                yield candidate, value
        start = begin + 1


def _next_opener(text: str, start: int) -> int:
    for i in range(start, len(text)):
        if text[i] in _OPENERS:
            return i
    return -1


def _match_close(text: str, begin: int) -> int:
    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(begin, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == '\\':
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch in _OPENERS:
            stack.append(_OPENERS[ch])
        elif ch in ('}', ']'):
            if not stack or stack.pop() != ch:
                return -1
            if not stack:
                return i
    return -1


def parse_structured_output(schema: type[ModelT], raw_text: str) -> ModelT:
    """Locate, decode and validate a structured value embedded in model text.

    Every decodable JSON span is tried in order, so stray brackets in the
    surrounding prose (citations like `[1]`, an empty `{}`) do not hide the
    payload.

    Raises:
        ParseError: If no JSON is found, or no candidate matches the schema
            (issues of the first failing candidate are carried on the error).
    """
    first_failure: ValidationFailure | None = None
    for _, value in _json_candidates(raw_text or ''):
        try:
            return validate(schema, value)
        except ValidationFailure as exc:
            if first_failure is None:
                first_failure = exc

    if first_failure is None:
        raise ParseError(f'No JSON value found in model output for {schema.__name__}')
    raise ParseError(str(first_failure), issues=first_failure.issues) from first_failure


async def extract_object(
    chat_model: ChatModel,
    messages: str | Sequence[MessageLike],
    schema: type[ModelT],
    *,
    max_attempts: int = 3,
    on_retry_prompt: Callable[[RetryableError], str] | None = None,
    system_prompt: str | None = None,
    model_timeout: float | None = None,
) -> ModelT:
    """Ask the model for a structured value and return it validated.

    Re-prompts on unparseable output up to `max_attempts` total attempts.

    Raises:
        RetryExhaustedError: If every attempt produced unusable output.
        AIChainError: Any other fatal chain failure (timeout, protocol, ...).
    """
    from aichain.chain import AIChain

    chain = AIChain(
        chat_model=chat_model,
        output_schema=schema,
        max_attempts=max_attempts,
        max_iterations=max_attempts,
        on_retry_prompt=on_retry_prompt,
        system_prompt=system_prompt,
        model_timeout=model_timeout,
    )
    result = await chain.run(messages)
    if result.error is not None:
        raise result.error
    if not result.ok:
        raise AIChainError(result.failure.message if result.failure else 'Structured extraction failed')
    value: Any = result.value
    return value
