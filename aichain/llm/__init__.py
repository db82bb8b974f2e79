"""Chat model transports.

This package intentionally contains ONLY model inference adapters.

Rules:
- No tool execution here.
- No schema validation here.
- No retries/repair logic here.

Those belong in the chain.
"""

from .base import ChatModel, ChatRequest, ChatResponse, LLMUsage
from .mock import ScriptedChatModel
from .openai_chat import OpenAIChatConfig, OpenAIChatModel

__all__ = [
    'ChatModel',
    'ChatRequest',
    'ChatResponse',
    'LLMUsage',
    'OpenAIChatConfig',
    'OpenAIChatModel',
    'ScriptedChatModel',
]
