from __future__ import annotations

import json

import httpx
import pytest

from aichain.config import Settings
from aichain.errors import CallTimeoutError, ProtocolError
from aichain.llm import ChatRequest, OpenAIChatConfig, OpenAIChatModel
from aichain.messages import narrow_response, user

from tests.fixtures.weather_tools import build_tool_set


def _config() -> OpenAIChatConfig:
    return OpenAIChatConfig(api_key='test-key', base_url='https://api.openai.com/v1', model='gpt-4o-mini')


@pytest.mark.asyncio
async def test_openai_chat_adapter_sends_tools_and_parses_tool_calls() -> None:
    # Arrange: a typical Chat Completions payload requesting one tool call
    fake_payload = {
        'id': 'chatcmpl_test',
        'choices': [
            {
                'index': 0,
                'message': {
                    'role': 'assistant',
                    'content': '',
                    'tool_calls': [
                        {
                            'id': 'call_1',
                            'type': 'function',
                            'function': {'name': 'get_weather', 'arguments': '{"city": "Oslo"}'},
                        }
                    ],
                },
                'finish_reason': 'tool_calls',
            }
        ],
        'usage': {'prompt_tokens': 12, 'completion_tokens': 7, 'total_tokens': 19},
    }
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith('/v1/chat/completions')
        assert request.headers['Authorization'] == 'Bearer test-key'
        seen.update(json.loads(request.content))
        return httpx.Response(200, json=fake_payload)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        llm = OpenAIChatModel(_config(), client=client)

        # Act
        resp = await llm.complete(
            ChatRequest(messages=[user('Weather in Oslo?')], tools=build_tool_set().specs)
        )

    # Assert
    assert seen['model'] == 'gpt-4o-mini'
    assert seen['messages'] == [{'role': 'user', 'content': 'Weather in Oslo?'}]
    assert [t['function']['name'] for t in seen['tools']] == ['get_weather', 'add']
    assert seen['tool_choice'] == 'auto'
    assert 'temperature' not in seen

    assert resp.message.content is None
    assert resp.raw['id'] == 'chatcmpl_test'
    assert resp.usage.total_tokens == 19
    narrowed = narrow_response(resp.message)
    assert narrowed.tool_calls[0].id == 'call_1'


@pytest.mark.asyncio
async def test_openai_chat_adapter_omits_tools_when_none_registered() -> None:
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={'choices': [{'message': {'role': 'assistant', 'content': 'Hi!'}}]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        llm = OpenAIChatModel(_config(), client=client)
        resp = await llm.complete(ChatRequest(messages=[user('Hello')]))

    assert 'tools' not in seen
    assert resp.message.content == 'Hi!'
    assert resp.usage.total_tokens is None


@pytest.mark.asyncio
async def test_openai_chat_adapter_rejects_payload_without_choices() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={'id': 'chatcmpl_empty', 'choices': []})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        llm = OpenAIChatModel(_config(), client=client)

        with pytest.raises(ProtocolError):
            await llm.complete(ChatRequest(messages=[user('Hello')]))


@pytest.mark.asyncio
async def test_openai_chat_adapter_maps_timeouts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout('slow', request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        llm = OpenAIChatModel(_config(), client=client)

        with pytest.raises(CallTimeoutError):
            await llm.complete(ChatRequest(messages=[user('Hello')]))


@pytest.mark.asyncio
async def test_openai_chat_adapter_raises_on_http_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={'error': 'boom'})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        llm = OpenAIChatModel(_config(), client=client)

        with pytest.raises(httpx.HTTPStatusError):
            await llm.complete(ChatRequest(messages=[user('Hello')]))


def test_from_env_requires_api_key() -> None:
    with pytest.raises(RuntimeError):
        OpenAIChatModel.from_env(settings=Settings(openai_api_key=None))


def test_from_env_reads_model_and_temperature_from_settings() -> None:
    settings = Settings(openai_api_key='sk-test', openai_model='gpt-4.1-mini', temperature=0.2)

    llm = OpenAIChatModel.from_env(settings=settings)

    assert llm._cfg.model == 'gpt-4.1-mini'
    assert llm._cfg.temperature == 0.2
    assert llm._cfg.api_key == 'sk-test'
