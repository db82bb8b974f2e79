from __future__ import annotations

import asyncio
import json
import time

import pytest

from aichain.chain import AIChain, ChainState
from aichain.config import Settings
from aichain.errors import FailureKind, RetryExhaustedError
from aichain.functions import ToolSet, bind
from aichain.llm.base import ChatRequest
from aichain.llm.mock import ScriptedChatModel
from aichain.messages import (
    AssistantMessage,
    FunctionResultMessage,
    ToolCallMessage,
    ToolResultMessage,
    system,
    user,
)

from tests.fixtures.weather_tools import AddArgs, MedianResult, build_tool_set, explode
from tests.mocks.responses import assistant_response, function_call_response, tool_call_response


def _seed() -> list:
    return [system('You are a weather assistant.'), user('What is the weather in Oslo?')]


@pytest.mark.asyncio
async def test_chain_dispatches_tool_call_then_finishes() -> None:
    # Arrange
    model = ScriptedChatModel(
        [
            tool_call_response(('call_1', 'get_weather', {'city': 'Oslo'})),
            assistant_response('It is 21.5 degrees in Oslo.'),
        ]
    )
    chain = AIChain(chat_model=model, tools=build_tool_set())

    # Act
    result = await chain.run(_seed())

    # Assert
    assert result.ok
    assert result.state == ChainState.DONE
    assert result.message == AssistantMessage(content='It is 21.5 degrees in Oslo.')
    assert result.iterations == 2
    roles = [type(m) for m in result.conversation]
    assert roles[2:] == [ToolCallMessage, ToolResultMessage, AssistantMessage]
    tool_msg = result.conversation[3]
    assert tool_msg.tool_call_id == 'call_1'
    assert json.loads(tool_msg.content) == {'city': 'Oslo', 'temperature': 21.5, 'unit': 'celsius'}


@pytest.mark.asyncio
async def test_chain_sends_tool_specs_and_full_history() -> None:
    model = ScriptedChatModel(
        [
            tool_call_response(('call_1', 'add', {'a': 1, 'b': 2})),
            assistant_response('3'),
        ]
    )
    chain = AIChain(chat_model=model, tools=build_tool_set())

    await chain.run('What is 1 + 2?')

    first: ChatRequest = model.requests[0]
    second: ChatRequest = model.requests[1]
    assert [spec.name for spec in first.tools] == ['get_weather', 'add']
    assert len(first.messages) == 1
    assert len(second.messages) == 3
    assert isinstance(second.messages[-1], ToolResultMessage)


@pytest.mark.asyncio
async def test_chain_appends_parallel_results_in_call_order() -> None:
    # Arrange: the first tool is slower than the second
    async def slow_add(args: AddArgs) -> float:
        await asyncio.sleep(0.05)
        return args.a + args.b

    async def fast_add(args: AddArgs) -> float:
        return args.a + args.b

    tools = ToolSet(
        [
            bind(AddArgs, 'Slow addition.', slow_add),
            bind(AddArgs, 'Fast addition.', fast_add),
        ]
    )
    model = ScriptedChatModel(
        [
            tool_call_response(
                ('call_a', 'slow_add', {'a': 1, 'b': 1}),
                ('call_b', 'fast_add', {'a': 2, 'b': 2}),
            ),
            assistant_response('done'),
        ]
    )

    # Act
    result = await AIChain(chat_model=model, tools=tools).run('add twice')

    # Assert
    results = [m for m in result.conversation if isinstance(m, ToolResultMessage)]
    assert [(m.tool_call_id, m.content) for m in results] == [('call_a', '2.0'), ('call_b', '4.0')]


@pytest.mark.asyncio
async def test_chain_reports_unknown_tool_to_model_and_continues() -> None:
    model = ScriptedChatModel(
        [
            tool_call_response(('call_1', 'foo', {})),
            assistant_response('Sorry, I cannot do that.'),
        ]
    )

    result = await AIChain(chat_model=model, tools=build_tool_set()).run(_seed())

    assert result.ok
    tool_msg = result.conversation[3]
    assert isinstance(tool_msg, ToolResultMessage)
    assert tool_msg.tool_call_id == 'call_1'
    error = json.loads(tool_msg.content)['error']
    assert error['kind'] == 'unknown_tool'
    assert 'foo' in error['message']
    assert result.attempts == 1


@pytest.mark.asyncio
async def test_chain_feeds_validation_errors_back_to_model() -> None:
    model = ScriptedChatModel(
        [
            tool_call_response(('call_1', 'add', {'a': 'one'})),
            tool_call_response(('call_2', 'add', {'a': 1, 'b': 2})),
            assistant_response('3'),
        ]
    )

    result = await AIChain(chat_model=model, tools=build_tool_set()).run('1 + 2?')

    assert result.ok
    first_result = json.loads(result.conversation[2].content)
    assert first_result['error']['kind'] == 'ValidationFailure'
    assert [d['path'] for d in first_result['error']['details']] == ['a', 'b']
    assert result.conversation[4].content == '3.0'


@pytest.mark.asyncio
async def test_chain_fails_when_retry_budget_is_exhausted() -> None:
    model = ScriptedChatModel([tool_call_response((f'call_{i}', 'add', '{bad json')) for i in range(5)])

    result = await AIChain(chat_model=model, tools=build_tool_set(), max_attempts=2).run('1 + 2?')

    assert result.state == ChainState.FAILED
    assert result.failure.kind == FailureKind.PARSE
    assert isinstance(result.error, RetryExhaustedError)
    assert model.call_count == 2


@pytest.mark.asyncio
async def test_chain_fails_on_unclassified_tool_error() -> None:
    tools = ToolSet([bind(AddArgs, 'Broken calculator.', explode)])
    model = ScriptedChatModel([tool_call_response(('call_1', 'explode', {'a': 1, 'b': 2}))])

    result = await AIChain(chat_model=model, tools=tools).run('1 + 2?')

    assert result.state == ChainState.FAILED
    assert result.failure.kind == FailureKind.TOOL_ERROR
    assert 'on fire' in result.failure.message
    assert model.call_count == 1
    # Partial conversation: seed + tool call, no results appended.
    assert len(result.conversation) == 2


@pytest.mark.asyncio
async def test_chain_fails_on_protocol_violation() -> None:
    model = ScriptedChatModel([{'role': 'assistant', 'content': None}])

    result = await AIChain(chat_model=model, tools=build_tool_set()).run('hi')

    assert result.failure.kind == FailureKind.PROTOCOL
    assert model.call_count == 1


@pytest.mark.asyncio
async def test_chain_stops_at_iteration_limit() -> None:
    model = ScriptedChatModel([tool_call_response((f'call_{i}', 'add', {'a': i, 'b': i})) for i in range(3)])

    result = await AIChain(chat_model=model, tools=build_tool_set(), max_iterations=3).run('keep adding')

    assert result.failure.kind == FailureKind.ITERATION_LIMIT
    assert result.iterations == 3


@pytest.mark.asyncio
async def test_chain_handles_legacy_function_calls() -> None:
    model = ScriptedChatModel(
        [
            function_call_response('add', {'a': 2, 'b': 2}),
            assistant_response('4'),
        ]
    )

    result = await AIChain(chat_model=model, tools=build_tool_set()).run('2 + 2?')

    assert result.ok
    fn_result = result.conversation[2]
    assert isinstance(fn_result, FunctionResultMessage)
    assert (fn_result.name, fn_result.content) == ('add', '4.0')


@pytest.mark.asyncio
async def test_chain_model_timeout_is_fatal() -> None:
    async def hang(request: ChatRequest) -> dict:
        await asyncio.sleep(1)
        return assistant_response('too late')

    result = await AIChain(chat_model=ScriptedChatModel(fn=hang), model_timeout=0.01).run('hi')

    assert result.failure.kind == FailureKind.TIMEOUT


@pytest.mark.asyncio
async def test_chain_tool_timeout_is_fatal() -> None:
    async def sleepy(args: AddArgs) -> float:
        await asyncio.sleep(1)
        return 0.0

    model = ScriptedChatModel([tool_call_response(('call_1', 'sleepy', {'a': 1, 'b': 1}))])
    chain = AIChain(chat_model=model, tools=[bind(AddArgs, 'Slow.', sleepy)], tool_timeout=0.01)

    result = await chain.run('hi')

    assert result.failure.kind == FailureKind.TIMEOUT
    assert model.call_count == 1


@pytest.mark.asyncio
async def test_chain_cancellation_signal_aborts_run() -> None:
    # Arrange
    cancel = asyncio.Event()
    started = asyncio.Event()

    async def slow_tool(args: AddArgs) -> float:
        started.set()
        await asyncio.sleep(5)
        return 0.0

    model = ScriptedChatModel([tool_call_response(('call_1', 'slow_tool', {'a': 1, 'b': 1}))])
    chain = AIChain(chat_model=model, tools=[bind(AddArgs, 'Slow.', slow_tool)])

    # Act
    run = asyncio.create_task(chain.run('hi', cancel=cancel))
    await started.wait()
    cancel.set()
    result = await asyncio.wait_for(run, timeout=1)

    # Assert
    assert result.failure.kind == FailureKind.CANCELLED
    assert model.call_count == 1


@pytest.mark.asyncio
async def test_chain_with_output_schema_returns_typed_value() -> None:
    model = ScriptedChatModel(['The answer is {"median": 70.5}'])

    result = await AIChain(chat_model=model, output_schema=MedianResult).run('Median?')

    assert result.ok
    assert result.value == MedianResult(median=70.5)


@pytest.mark.asyncio
async def test_chain_output_schema_single_attempt_fails_with_parse_failure() -> None:
    model = ScriptedChatModel(['no json at all'])

    result = await AIChain(chat_model=model, output_schema=MedianResult, max_attempts=1).run('Median?')

    assert result.state == ChainState.FAILED
    assert result.failure.kind == FailureKind.PARSE
    assert result.failure.diagnostics['attempts'] == 1
    assert model.call_count == 1


@pytest.mark.asyncio
async def test_chain_prepends_system_prompt() -> None:
    model = ScriptedChatModel([assistant_response('hello')])

    result = await AIChain(chat_model=model, system_prompt='Be terse.').run('hi')

    assert [m.role for m in result.conversation] == ['system', 'user', 'assistant']


def test_chain_from_settings_uses_configured_budgets() -> None:
    settings = Settings(max_iterations=7, max_attempts=2, model_timeout=5.0)

    chain = AIChain.from_settings(chat_model=ScriptedChatModel([]), settings=settings)

    assert chain._max_iterations == 7
    assert chain._max_attempts == 2
    assert chain._model_timeout == 5.0


@pytest.mark.asyncio
async def test_chain_fatal_tool_error_cancels_slow_siblings() -> None:
    # Arrange: a failing tool batched with one that would run for seconds
    finished = asyncio.Event()

    async def slow(args: AddArgs) -> float:
        await asyncio.sleep(5)
        finished.set()
        return 0.0

    tools = ToolSet([bind(AddArgs, 'Broken calculator.', explode), bind(AddArgs, 'Slow.', slow)])
    model = ScriptedChatModel(
        [
            tool_call_response(
                ('call_slow', 'slow', {'a': 1, 'b': 1}),
                ('call_boom', 'explode', {'a': 1, 'b': 1}),
            )
        ]
    )

    # Act
    started = time.monotonic()
    result = await asyncio.wait_for(AIChain(chat_model=model, tools=tools).run('go'), timeout=2)
    elapsed = time.monotonic() - started

    # Assert
    assert result.failure.kind == FailureKind.TOOL_ERROR
    assert elapsed < 1
    assert not finished.is_set()


@pytest.mark.asyncio
async def test_chain_returns_failure_for_malformed_seed() -> None:
    model = ScriptedChatModel([assistant_response('unused')])

    result = await AIChain(chat_model=model).run([{'role': 'assistant', 'content': None}])

    assert result.state == ChainState.FAILED
    assert result.failure.kind == FailureKind.PROTOCOL
    assert result.conversation == []
    assert model.call_count == 0


@pytest.mark.asyncio
async def test_chain_returns_failure_for_empty_seed() -> None:
    model = ScriptedChatModel([assistant_response('unused')])

    result = await AIChain(chat_model=model).run([])

    assert result.failure.kind == FailureKind.PROTOCOL
    assert model.call_count == 0


@pytest.mark.asyncio
async def test_chain_rejects_tool_result_without_matching_call() -> None:
    model = ScriptedChatModel([assistant_response('unused')])
    seed = [
        user('What is 1 + 2?'),
        tool_call_response(('call_1', 'add', {'a': 1, 'b': 2})),
        {'role': 'tool', 'content': '3.0', 'tool_call_id': 'call_9'},
    ]

    result = await AIChain(chat_model=model, tools=build_tool_set()).run(seed)

    assert result.failure.kind == FailureKind.PROTOCOL
    assert 'call_9' in result.failure.message
    assert model.call_count == 0


@pytest.mark.asyncio
async def test_chain_accepts_seed_with_answered_tool_call() -> None:
    model = ScriptedChatModel([assistant_response('It is 3.')])
    seed = [
        user('What is 1 + 2?'),
        tool_call_response(('call_1', 'add', {'a': 1, 'b': 2})),
        {'role': 'tool', 'content': '3.0', 'tool_call_id': 'call_1'},
    ]

    result = await AIChain(chat_model=model, tools=build_tool_set()).run(seed)

    assert result.ok
    assert len(model.requests[0].messages) == 3


@pytest.mark.asyncio
async def test_chain_classifies_builtin_timeout_from_tool() -> None:
    def deadline(args: AddArgs) -> float:
        raise TimeoutError('upstream deadline exceeded')

    model = ScriptedChatModel([tool_call_response(('call_1', 'deadline', {'a': 1, 'b': 1}))])

    result = await AIChain(chat_model=model, tools=[bind(AddArgs, 'Deadline.', deadline)]).run('hi')

    assert result.failure.kind == FailureKind.TIMEOUT


@pytest.mark.asyncio
async def test_chain_classifies_builtin_timeout_from_model() -> None:
    def fail(request: ChatRequest) -> dict:
        raise TimeoutError('gateway timeout')

    result = await AIChain(chat_model=ScriptedChatModel(fn=fail)).run('hi')

    assert result.failure.kind == FailureKind.TIMEOUT
