"""Typed exceptions and the structured failure returned by a chain run.

Retryable errors are caused by model output and can be fixed by re-prompting.
Everything else is fatal: the chain stops submitting to the model and returns
a `RunFailure` describing what went wrong.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class AIChainError(Exception):
    """Base for all aichain errors."""


# ---------------------------------
# RETRYABLE (model-caused)
# ---------------------------------


class RetryableError(AIChainError):
    """Model output was unusable; re-prompting may fix it."""


class ParseError(RetryableError):
    """Model output was not valid or parseable structured data."""

    def __init__(self, message: str, *, issues: list[ValidationIssue] | None = None) -> None:
        super().__init__(message)
        self.issues: list[ValidationIssue] = list(issues or [])


@dataclass(frozen=True)
class ValidationIssue:
    """One failing field path and a human-readable reason."""

    path: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {'path': self.path, 'reason': self.reason}


class UnknownToolError(RetryableError):
    """The model asked for a tool that is not registered."""

    def __init__(self, name: str, available: list[str]) -> None:
        self.name = name
        self.available = list(available)
        names = ', '.join(self.available) or 'none'
        super().__init__(f'Unknown tool {name!r}. Available tools: {names}')


class ValidationFailure(RetryableError):
    """JSON was well-formed but did not match the schema."""

    def __init__(self, schema_name: str, issues: list[ValidationIssue]) -> None:
        self.schema_name = schema_name
        self.issues = list(issues)
        detail = '; '.join(f'{i.path}: {i.reason}' for i in self.issues) or 'invalid value'
        super().__init__(f'Invalid {schema_name}: {detail}')


# ---------------------------------
# FATAL
# ---------------------------------


class CallTimeoutError(AIChainError, TimeoutError):
    """A transport or tool call exceeded its deadline."""


class ProtocolError(AIChainError):
    """A message had a shape the protocol cannot represent."""

    def __init__(self, message: str, *, raw: Any = None) -> None:
        super().__init__(message)
        self.raw = raw


class SchemaError(AIChainError):
    """A schema or tool definition cannot be used for function calling."""


class RunCancelledError(AIChainError):
    """The run was cancelled through its cancellation signal."""


class IterationLimitError(AIChainError):
    """The chain reached its maximum number of model submissions."""


class RetryExhaustedError(AIChainError):
    """The retry budget ran out; wraps the last retryable error."""

    def __init__(self, attempts: int, last_error: RetryableError) -> None:
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f'Giving up after {attempts} attempt(s): {last_error}')


# ---------------------------------
# RUN FAILURE (public result shape)
# ---------------------------------


class FailureKind(str, Enum):
    """Classification of a failed run."""

    PARSE = 'parse'
    VALIDATION = 'validation'
    TIMEOUT = 'timeout'
    PROTOCOL = 'protocol'
    TOOL_ERROR = 'tool_error'
    MODEL_ERROR = 'model_error'
    CANCELLED = 'cancelled'
    ITERATION_LIMIT = 'iteration_limit'


class RunFailure(BaseModel):
    """Structured failure returned instead of raising across `AIChain.run`.

    Attributes:
        kind: Failure classification callers can branch on.
        message: Human-readable description.
        diagnostics: Optional extra data (validation issues, attempt counts).
    """

    kind: FailureKind
    message: str
    diagnostics: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException, *, source: str = 'tool') -> RunFailure:
        """Classify an exception.

        Args:
            exc: The exception that ended the run.
            source: 'tool' or 'model'; decides how unclassified errors are labelled.
        """
        diagnostics: dict[str, Any] = {'error_type': type(exc).__name__}
        cause: BaseException = exc

        if isinstance(exc, RetryExhaustedError):
            diagnostics['attempts'] = exc.attempts
            cause = exc.last_error

        issues = getattr(cause, 'issues', None)
        if issues:
            diagnostics['issues'] = [i.to_dict() for i in issues]

        if isinstance(cause, ValidationFailure):
            kind = FailureKind.VALIDATION
        elif isinstance(cause, RetryableError):
            kind = FailureKind.PARSE
        elif isinstance(cause, TimeoutError):
            kind = FailureKind.TIMEOUT
        elif isinstance(cause, ProtocolError):
            kind = FailureKind.PROTOCOL
        elif isinstance(cause, RunCancelledError):
            kind = FailureKind.CANCELLED
        elif isinstance(cause, IterationLimitError):
            kind = FailureKind.ITERATION_LIMIT
        elif source == 'model':
            kind = FailureKind.MODEL_ERROR
        else:
            kind = FailureKind.TOOL_ERROR

        return cls(kind=kind, message=str(exc), diagnostics=diagnostics)
