"""Chain / agent loop: model -> narrow -> dispatch tools -> repeat.

This is the "application brain". It is responsible for:
- submitting the conversation (and tool specs) to the chat model
- narrowing the response into a protocol message
- dispatching tool calls concurrently and appending results in call order
- turning retryable failures into corrective conversation content
- stopping on a final answer, a fatal error, or an exhausted budget
- Observability: trace + spans + timing

States: AWAITING_MODEL -> DISPATCHING_TOOLS -> AWAITING_MODEL ... -> DONE | FAILED
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, TypeVar

from pydantic import BaseModel

from aichain.config import Settings, get_settings
from aichain.errors import (
    CallTimeoutError,
    FailureKind,
    IterationLimitError,
    ParseError,
    ProtocolError,
    RetryableError,
    RetryExhaustedError,
    RunCancelledError,
    RunFailure,
    UnknownToolError,
)
from aichain.extraction import parse_structured_output
from aichain.functions import ToolBinding, ToolSet
from aichain.llm.base import ChatModel, ChatRequest
from aichain.messages import (
    AssistantMessage,
    FunctionCallMessage,
    Message,
    MessageLike,
    ResponseMessage,
    SystemMessage,
    ToolCallEntry,
    ToolCallMessage,
    ToolResultMessage,
    function_result,
    narrow,
    narrow_response,
    system,
    tool_result,
    user,
)
from aichain.repair import build_repair_prompt, build_tool_error_payload
from aichain.tracing import Span, log_event, new_trace_id

T = TypeVar('T')

DEFAULT_MAX_ITERATIONS = 5
DEFAULT_MAX_ATTEMPTS = 3


class ChainState(str, Enum):
    AWAITING_MODEL = 'awaiting_model'
    DISPATCHING_TOOLS = 'dispatching_tools'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class ChainResult:
    """Outcome of one `AIChain.run`.

    Attributes:
        state: DONE or FAILED.
        conversation: Full (DONE) or partial (FAILED) message history.
        message: Final assistant message when DONE.
        value: Validated structured output when the chain has an output schema.
        failure: Classified failure when FAILED.
        error: The exception behind `failure`, for callers that want to re-raise.
        iterations: Number of model submissions made.
        attempts: Number of retry-budget attempts consumed by model mistakes.
        trace_id: Id tagging every log event of this run.
    """

    state: ChainState
    conversation: list[Message]
    message: AssistantMessage | None = None
    value: Any = None
    failure: RunFailure | None = None
    error: BaseException | None = field(default=None, repr=False)
    iterations: int = 0
    attempts: int = 0
    trace_id: str = ''

    @property
    def ok(self) -> bool:
        return self.state == ChainState.DONE


class AIChain:
    """Runs a bounded tool-calling conversation against a chat model."""

    def __init__(
        self,
        *,
        chat_model: ChatModel,
        tools: ToolSet | Sequence[ToolBinding[Any]] | None = None,
        output_schema: type[BaseModel] | None = None,
        system_prompt: str | None = None,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        model_timeout: float | None = None,
        tool_timeout: float | None = None,
        on_retry_prompt: Callable[[RetryableError], str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError('max_iterations must be >= 1')
        if max_attempts < 1:
            raise ValueError('max_attempts must be >= 1')

        self._chat_model = chat_model
        self._tools = tools if isinstance(tools, ToolSet) else ToolSet(list(tools or []))
        self._output_schema = output_schema
        self._system_prompt = system_prompt
        self._max_iterations = max_iterations
        self._max_attempts = max_attempts
        self._model_timeout = model_timeout
        self._tool_timeout = tool_timeout
        self._on_retry_prompt = on_retry_prompt
        self._metadata = metadata or {}

    @classmethod
    def from_settings(
        cls,
        *,
        chat_model: ChatModel,
        settings: Settings | None = None,
        **kwargs: Any,
    ) -> AIChain:
        """Build a chain whose budgets and deadlines come from settings."""
        settings = settings or get_settings()
        kwargs.setdefault('max_iterations', settings.max_iterations)
        kwargs.setdefault('max_attempts', settings.max_attempts)
        kwargs.setdefault('model_timeout', settings.model_timeout)
        kwargs.setdefault('tool_timeout', settings.tool_timeout)
        return cls(chat_model=chat_model, **kwargs)

    @property
    def tools(self) -> ToolSet:
        return self._tools

    async def run(
        self,
        messages: str | Sequence[MessageLike],
        *,
        cancel: asyncio.Event | None = None,
    ) -> ChainResult:
        """Run the conversation until a final answer or a failure.

        Args:
            messages: A user prompt, or the seed conversation (system + user messages).
            cancel: Optional signal; setting it aborts outstanding calls and fails the run.

        Returns:
            ChainResult. Failures are returned, not raised.
        """
        conversation: list[Message] = []
        trace_id = new_trace_id()
        state = ChainState.AWAITING_MODEL
        iterations = 0
        attempts = 0
        source = 'model'

        try:
            conversation = self._seed(messages)
            log_event(
                'chain.start',
                trace_id=trace_id,
                tools=self._tools.names,
                seed_messages=len(conversation),
                output_schema=self._output_schema.__name__ if self._output_schema else None,
            )

            while True:
                if cancel is not None and cancel.is_set():
                    raise RunCancelledError('Run cancelled')
                if iterations >= self._max_iterations:
                    raise IterationLimitError(f'No final answer after {iterations} model call(s)')

                # -------------------------
                # AWAITING_MODEL
                # -------------------------
                source = 'model'
                iterations += 1
                response = await self._submit(conversation, trace_id=trace_id, iteration=iterations, cancel=cancel)
                conversation.append(response)

                if isinstance(response, AssistantMessage):
                    if self._output_schema is None:
                        return self._done(conversation, response, None, iterations, attempts, trace_id)
                    try:
                        value = parse_structured_output(self._output_schema, response.content)
                    except ParseError as exc:
                        attempts += 1
                        log_event('chain.output.invalid', trace_id=trace_id, attempt=attempts, error=str(exc))
                        if attempts >= self._max_attempts:
                            raise RetryExhaustedError(attempts, exc) from exc
                        conversation.append(user(self._retry_prompt(exc, attempts), clean_content=False))
                        continue
                    return self._done(conversation, response, value, iterations, attempts, trace_id)

                # -------------------------
                # DISPATCHING_TOOLS
                # -------------------------
                state = ChainState.DISPATCHING_TOOLS
                source = 'tool'
                results, last_error = await self._dispatch(response, trace_id=trace_id, cancel=cancel)
                conversation.extend(results)

                if last_error is not None:
                    attempts += 1
                    if attempts >= self._max_attempts:
                        raise RetryExhaustedError(attempts, last_error) from last_error

                state = ChainState.AWAITING_MODEL

        except asyncio.CancelledError:
            log_event(
                'chain.failed',
                trace_id=trace_id,
                kind=FailureKind.CANCELLED.value,
                state=state.value,
                iterations=iterations,
            )
            raise
        except Exception as exc:
            failure = RunFailure.from_exception(exc, source=source)
            log_event(
                'chain.failed',
                trace_id=trace_id,
                kind=failure.kind.value,
                message=failure.message,
                state=state.value,
                iterations=iterations,
            )
            return ChainResult(
                state=ChainState.FAILED,
                conversation=conversation,
                failure=failure,
                error=exc,
                iterations=iterations,
                attempts=attempts,
                trace_id=trace_id,
            )

    # ------------------------------
    # Steps
    # ------------------------------

    def _seed(self, messages: str | Sequence[MessageLike]) -> list[Message]:
        if isinstance(messages, str):
            conversation: list[Message] = [user(messages)]
        else:
            conversation = [narrow(m) for m in messages]
        if self._system_prompt and not (conversation and isinstance(conversation[0], SystemMessage)):
            conversation.insert(0, system(self._system_prompt))
        if not conversation:
            raise ProtocolError('Cannot run a chain without messages')

        # Every tool result must answer a tool call issued earlier in the history.
        call_ids: set[str] = set()
        for message in conversation:
            if isinstance(message, ToolCallMessage):
                call_ids.update(entry.id for entry in message.tool_calls)
            elif isinstance(message, ToolResultMessage) and message.tool_call_id not in call_ids:
                raise ProtocolError(f'Tool result {message.tool_call_id!r} has no matching tool call')
        return conversation

    async def _submit(
        self,
        conversation: list[Message],
        *,
        trace_id: str,
        iteration: int,
        cancel: asyncio.Event | None,
    ) -> ResponseMessage:
        request = ChatRequest(
            messages=list(conversation),
            tools=self._tools.specs,
            metadata={**self._metadata, 'trace_id': trace_id, 'iteration': iteration},
        )

        span = Span(name='llm.complete', trace_id=trace_id)
        span.attributes['message_count'] = len(conversation)
        try:
            response = await self._guard(
                self._chat_model.complete(request),
                timeout=self._model_timeout,
                cancel=cancel,
                what='model call',
            )
            span.attributes['usage'] = response.usage.__dict__
        finally:
            span.end()
            log_event('span.end', trace_id=trace_id, span=span)

        message = narrow_response(response.message)
        log_event('chain.model.response', trace_id=trace_id, iteration=iteration, kind=type(message).__name__)
        return message

    async def _dispatch(
        self,
        message: FunctionCallMessage | ToolCallMessage,
        *,
        trace_id: str,
        cancel: asyncio.Event | None,
    ) -> tuple[list[Message], RetryableError | None]:
        """Resolve every call in the message; results come back in call order."""
        if isinstance(message, FunctionCallMessage):
            calls = [(message.function_call.name, message.function_call.arguments, None)]
        else:
            calls = [(e.function.name, e.function.arguments, e) for e in message.tool_calls]

        outcomes = await self._guard(
            _gather_fail_fast(
                [self._run_call(name, arguments, entry, trace_id=trace_id) for name, arguments, entry in calls]
            ),
            timeout=None,
            cancel=cancel,
            what='tool batch',
        )

        results: list[Message] = []
        last_error: RetryableError | None = None
        for result, error in outcomes:
            results.append(result)
            if error is not None:
                last_error = error
        return results, last_error

    async def _run_call(
        self,
        name: str,
        arguments: str,
        entry: ToolCallEntry | None,
        *,
        trace_id: str,
    ) -> tuple[Message, RetryableError | None]:
        def wrap(payload: Any) -> Message:
            if entry is None:
                return function_result(payload, name)
            return tool_result(payload, entry.id, name=name)

        binding = self._tools.get(name)
        if binding is None:
            unknown = UnknownToolError(name, self._tools.names)
            log_event('chain.tool.unknown', trace_id=trace_id, tool=name)
            return wrap(build_tool_error_payload(unknown, kind='unknown_tool')), unknown

        span = Span(name=f'tool.{name}', trace_id=trace_id)
        if entry is not None:
            span.attributes['tool_call_id'] = entry.id
        try:
            result = await self._with_deadline(binding.invoke(arguments), name)
        except RetryableError as exc:
            span.attributes['error'] = str(exc)
            log_event('chain.tool.retryable', trace_id=trace_id, tool=name, error=str(exc))
            return wrap(build_tool_error_payload(exc)), exc
        finally:
            span.end()
            log_event('span.end', trace_id=trace_id, span=span)

        return wrap(result), None

    async def _with_deadline(self, awaitable: Awaitable[T], name: str) -> T:
        if self._tool_timeout is None:
            return await awaitable
        try:
            return await asyncio.wait_for(awaitable, timeout=self._tool_timeout)
        except asyncio.TimeoutError as exc:
            raise CallTimeoutError(f'Tool {name!r} exceeded {self._tool_timeout}s') from exc

    async def _guard(
        self,
        awaitable: Awaitable[T],
        *,
        timeout: float | None,
        cancel: asyncio.Event | None,
        what: str,
    ) -> T:
        """Await with an optional deadline, aborting early when `cancel` is set."""
        task = asyncio.ensure_future(awaitable)
        if timeout is None and cancel is None:
            return await task

        waiters: set[asyncio.Future[Any]] = {task}
        cancel_waiter = asyncio.ensure_future(cancel.wait()) if cancel is not None else None
        if cancel_waiter is not None:
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        if cancel is not None and cancel.is_set():
            raise RunCancelledError(f'Run cancelled during {what}')
        raise CallTimeoutError(f'{what} exceeded {timeout}s')

    def _retry_prompt(self, error: RetryableError, attempt: int) -> str:
        if self._on_retry_prompt is not None:
            return self._on_retry_prompt(error)
        schema = self._output_schema.model_json_schema() if self._output_schema is not None else None
        return build_repair_prompt(error, attempt, self._max_attempts, json_schema=schema)

    def _done(
        self,
        conversation: list[Message],
        message: AssistantMessage,
        value: Any,
        iterations: int,
        attempts: int,
        trace_id: str,
    ) -> ChainResult:
        log_event('chain.done', trace_id=trace_id, iterations=iterations, attempts=attempts)
        return ChainResult(
            state=ChainState.DONE,
            conversation=conversation,
            message=message,
            value=value,
            iterations=iterations,
            attempts=attempts,
            trace_id=trace_id,
        )


async def _gather_fail_fast(coros: list[Awaitable[T]]) -> list[T]:
    """Run awaitables concurrently and return their results in input order.

    The first exception (in input order among finished tasks) cancels the
    remaining tasks and is re-raised without waiting for them to finish.
    """
    tasks = [asyncio.ensure_future(c) for c in coros]
    try:
        pending: set[asyncio.Future[T]] = set(tasks)
        while pending:
            done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
            for task in tasks:
                if task in done and not task.cancelled() and task.exception() is not None:
                    raise task.exception()  # type: ignore[misc]
        return [task.result() for task in tasks]
    finally:
        for task in tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
