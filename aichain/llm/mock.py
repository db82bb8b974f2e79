"""Scripted chat model.

Use this for:
- deterministic tests
- offline development
- unit tests for chain logic
"""

from __future__ import annotations

import inspect
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from aichain.llm.base import ChatModel, ChatRequest, ChatResponse
from aichain.messages import RawMessage, to_raw

ScriptItem = Mapping[str, Any] | RawMessage | str


class ScriptedChatModel(ChatModel):
    """A chat model that replays pre-canned responses.

    Provide either:
    - a sequence of responses (dicts, RawMessages, or plain strings meaning
      assistant text), returned in order, or
    - a callable mapping request -> response (may be async).

    Every request is recorded on `requests` for assertions.
    """

    def __init__(
        self,
        responses: Sequence[ScriptItem] | None = None,
        fn: Callable[[ChatRequest], Any] | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._fn = fn
        self.requests: list[ChatRequest] = []

    async def complete(self, request: ChatRequest) -> ChatResponse:
        self.requests.append(request)

        item: Any
        if self._fn is not None:
            item = self._fn(request)
            if inspect.isawaitable(item):
                item = await item
        else:
            index = len(self.requests) - 1
            if index >= len(self._responses):
                raise IndexError(f'ScriptedChatModel ran out of responses after {len(self._responses)} call(s)')
            item = self._responses[index]

        if isinstance(item, str):
            item = {'role': 'assistant', 'content': item}
        message = to_raw(item)
        return ChatResponse(message=message, raw={'mock': True, 'message': message.model_dump()})

    @property
    def call_count(self) -> int:
        return len(self.requests)
