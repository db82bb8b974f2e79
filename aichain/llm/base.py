"""Chat model transport interface.

This module defines the narrow contract used by the chain. The transport is:
- swappable (OpenAI-compatible HTTP, local, etc.)
- mockable (deterministic tests)
- observable (metadata + usage)
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from aichain.messages import Message, RawMessage
from aichain.schemas import CallSpec


@dataclass(frozen=True)
class ChatRequest:
    """
    A request for the next assistant message.

    Attributes:
        messages: The full conversation so far, in order.
        tools: Call specs the model may request.
        metadata: Opaque dict for tracing.
    """

    messages: list[Message]
    tools: list[CallSpec] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LLMUsage:
    """Best-effort token usage summary (provider-dependent)."""

    input_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


@dataclass(frozen=True)
class ChatResponse:
    """A response from the transport.

    Attributes:
        message: The raw (not yet narrowed) response message.
        raw: Provider-specific raw payload (kept for debugging/telemetry).
        usage: Best-effort token usage
    """

    message: RawMessage
    raw: dict[str, Any] = field(default_factory=dict)
    usage: LLMUsage = LLMUsage()


class ChatModel(ABC):
    """Model inference adapter."""

    @abstractmethod
    async def complete(self, request: ChatRequest) -> ChatResponse:
        """Return the model's next message for the conversation."""
        raise NotImplementedError
