"""Repair prompt builder.

A repair prompt is used when model output fails validation (invalid JSON, missing fields, etc.).
The repair prompt should include:
- the validation error
- the attempt number
- the shape the output must take
"""

from __future__ import annotations

import json
from typing import Any

from aichain.errors import RetryableError


def build_repair_prompt(
    error: RetryableError,
    attempt: int,
    max_attempts: int,
    json_schema: dict[str, Any] | None = None,
) -> str:
    """Construct a corrective user message after invalid structured output.

    Args:
        error: The ParseError / ValidationFailure raised for the last output.
        attempt: Number of failed attempts so far (1-based).
        max_attempts: Total attempts allowed.
        json_schema: Optional JSON Schema the output must satisfy.

    Returns:
        Prompt text instructing the model to answer again with valid JSON only.
    """
    issues = getattr(error, 'issues', None) or []
    lines = [f'- {issue.path}: {issue.reason}' for issue in issues]

    prompt = f"""
You previously produced output that could not be used.

ERROR:
{error}
"""
    if lines:
        prompt += '\nFIELD ERRORS:\n' + '\n'.join(lines) + '\n'

    prompt += f"""
ATTEMPTS:
This is repair attempt #{attempt + 1} of {max_attempts}.

INSTRUCTIONS:
- Return ONLY ONE valid JSON value
- Do not include prose or markdown fences
- Do NOT change the meaning of your answer unless required to fix the error.
"""
    if json_schema is not None:
        prompt += '\nJSON SCHEMA:\n' + json.dumps(json_schema, indent=2, sort_keys=True) + '\n'

    return prompt.strip()


def build_tool_error_payload(error: Exception, *, kind: str | None = None) -> dict[str, Any]:
    """Error payload placed in a tool result so the model can self-correct."""
    payload: dict[str, Any] = {
        'kind': kind or type(error).__name__,
        'message': str(error),
    }
    issues = getattr(error, 'issues', None)
    if issues:
        payload['details'] = [issue.to_dict() for issue in issues]
    return {'error': payload}
