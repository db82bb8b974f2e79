"""aichain: schema-validated function calling and a bounded agent loop.

Typical setup:

    tools = ToolSet([bind(GetWeatherArgs, 'Current weather for a city', get_weather)])
    chain = AIChain(chat_model=OpenAIChatModel.from_env(), tools=tools)
    result = await chain.run('What is the weather in Oslo?')
"""

from aichain.chain import AIChain, ChainResult, ChainState
from aichain.errors import (
    AIChainError,
    CallTimeoutError,
    FailureKind,
    IterationLimitError,
    ParseError,
    ProtocolError,
    RetryableError,
    RetryExhaustedError,
    RunCancelledError,
    RunFailure,
    SchemaError,
    UnknownToolError,
    ValidationFailure,
    ValidationIssue,
)
from aichain.extraction import extract_object, find_json_text, parse_structured_output
from aichain.functions import ToolBinding, ToolSet, bind
from aichain.schemas import CallSpec, to_call_spec, validate

__version__ = '0.1.0'

__all__ = [
    'AIChain',
    'AIChainError',
    'CallSpec',
    'CallTimeoutError',
    'ChainResult',
    'ChainState',
    'FailureKind',
    'IterationLimitError',
    'ParseError',
    'ProtocolError',
    'RetryableError',
    'RetryExhaustedError',
    'RunCancelledError',
    'RunFailure',
    'SchemaError',
    'ToolBinding',
    'ToolSet',
    'UnknownToolError',
    'ValidationFailure',
    'ValidationIssue',
    '__version__',
    'bind',
    'extract_object',
    'find_json_text',
    'parse_structured_output',
    'to_call_spec',
    'validate',
]
