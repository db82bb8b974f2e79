from __future__ import annotations

from aichain.errors import ParseError, UnknownToolError, ValidationFailure, ValidationIssue
from aichain.repair import build_repair_prompt, build_tool_error_payload

from tests.fixtures.weather_tools import MedianResult


def test_build_repair_prompt_contains_error_and_attempt() -> None:
    prompt = build_repair_prompt(ParseError('No JSON value found in model output'), attempt=1, max_attempts=3)

    assert 'No JSON value found in model output' in prompt
    assert 'repair attempt #2 of 3' in prompt
    assert 'FIELD ERRORS' not in prompt
    assert 'JSON SCHEMA' not in prompt


def test_build_repair_prompt_lists_field_errors_and_schema() -> None:
    error = ValidationFailure('MedianResult', [ValidationIssue(path='median', reason='Field required')])

    prompt = build_repair_prompt(error, attempt=2, max_attempts=3, json_schema=MedianResult.model_json_schema())

    assert '- median: Field required' in prompt
    assert 'JSON SCHEMA' in prompt
    assert '"median"' in prompt


def test_build_tool_error_payload_for_validation_failure() -> None:
    error = ValidationFailure('AddArgs', [ValidationIssue(path='b', reason='Field required')])

    payload = build_tool_error_payload(error)

    assert payload == {
        'error': {
            'kind': 'ValidationFailure',
            'message': str(error),
            'details': [{'path': 'b', 'reason': 'Field required'}],
        }
    }


def test_build_tool_error_payload_uses_explicit_kind() -> None:
    payload = build_tool_error_payload(UnknownToolError('foo', ['add']), kind='unknown_tool')

    assert payload['error']['kind'] == 'unknown_tool'
    assert "Unknown tool 'foo'" in payload['error']['message']
    assert 'details' not in payload['error']
