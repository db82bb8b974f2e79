"""OpenAI-compatible Chat Completions adapter (HTTP-based).

Why HTTP directly?
- Keeps the adapter isolated and explicit.
- Works against any server speaking the Chat Completions wire format.
- Makes it easier to mock with httpx transports.

The httpx client is injected. When none is given the adapter creates one on
first use and owns it: close it with `aclose()` or use the adapter as an async
context manager.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import ValidationError

from aichain.config import Settings, get_settings
from aichain.errors import CallTimeoutError, ProtocolError
from aichain.llm.base import ChatModel, ChatRequest, ChatResponse, LLMUsage
from aichain.messages import RawMessage, to_payload


@dataclass(frozen=True)
class OpenAIChatConfig:
    """Configuration for the Chat Completions adapter."""

    api_key: str
    base_url: str = 'https://api.openai.com/v1'
    model: str = 'gpt-4o-mini'
    temperature: float | None = None
    timeout: float = 60.0


class OpenAIChatModel(ChatModel):
    """ChatModel that calls `POST {base_url}/chat/completions`."""

    def __init__(self, config: OpenAIChatConfig, client: httpx.AsyncClient | None = None) -> None:
        self._cfg = config
        self._client = client
        self._owns_client = client is None

    @staticmethod
    def from_env(
            *,
            model: str | None = None,
            temperature: float | None = None,
            settings: Settings | None = None,
            client: httpx.AsyncClient | None = None,
    ) -> 'OpenAIChatModel':
        settings = settings or get_settings()
        api_key = (settings.openai_api_key or '').strip()
        if not api_key:
            raise RuntimeError('AICHAIN_OPENAI_API_KEY is required to use OpenAIChatModel.')
        cfg = OpenAIChatConfig(
            api_key=api_key,
            base_url=settings.openai_base_url,
            model=model or settings.openai_model,
            temperature=temperature if temperature is not None else settings.temperature,
            timeout=settings.model_timeout,
        )
        return OpenAIChatModel(cfg, client=client)

    async def complete(self, request: ChatRequest) -> ChatResponse:
        url = f'{self._cfg.base_url.rstrip("/")}/chat/completions'
        headers = {
            'Authorization': f'Bearer {self._cfg.api_key}',
            'Content-Type': 'application/json',
        }

        body: dict[str, Any] = {
            'model': self._cfg.model,
            'messages': [to_payload(m) for m in request.messages],
        }
        if request.tools:
            body['tools'] = [spec.to_tool_spec() for spec in request.tools]
            body['tool_choice'] = 'auto'
        if self._cfg.temperature is not None:
            body['temperature'] = self._cfg.temperature

        client = self._get_client()
        try:
            resp = await client.post(url, json=body, headers=headers, timeout=self._cfg.timeout)
        except httpx.TimeoutException as exc:
            raise CallTimeoutError(f'Chat completion timed out after {self._cfg.timeout}s') from exc
        resp.raise_for_status()
        data = resp.json()

        return ChatResponse(
            message=_extract_message(data),
            raw=data,
            usage=_extract_usage(data),
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        """Close the httpx client if this adapter created it."""
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> 'OpenAIChatModel':
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


def _extract_message(payload: dict[str, Any]) -> RawMessage:
    """Pull `choices[0].message` out of a Chat Completions payload."""
    choices = payload.get('choices')
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        raise ProtocolError('Chat completion payload has no choices', raw=payload)

    message = choices[0].get('message')
    if not isinstance(message, dict):
        raise ProtocolError('Chat completion choice has no message', raw=payload)

    message = dict(message)
    # Some servers send "" alongside tool calls; the protocol wants null there.
    if message.get('tool_calls') and message.get('content') == '':
        message['content'] = None

    try:
        return RawMessage.model_validate(message)
    except ValidationError as exc:
        raise ProtocolError(f'Malformed response message: {exc}', raw=payload) from exc


def _extract_usage(payload: dict[str, Any]) -> LLMUsage:
    usage = payload.get('usage')
    if not isinstance(usage, dict):
        return LLMUsage()

    input_tokens = usage.get('prompt_tokens')
    output_tokens = usage.get('completion_tokens')
    total_tokens = usage.get('total_tokens')

    return LLMUsage(
        input_tokens=int(input_tokens) if isinstance(input_tokens, int) else None,
        output_tokens=int(output_tokens) if isinstance(output_tokens, int) else None,
        total_tokens=int(total_tokens) if isinstance(total_tokens, int) else None,
    )
