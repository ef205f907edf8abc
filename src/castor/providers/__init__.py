"""Provider adapters."""

from __future__ import annotations

from castor.registry import ProviderFamily

from .anthropic import AnthropicAdapter
from .base import ProviderAdapter, SSEStreamParser, StreamParser
from .chat_completions import (
    ChatCompletionsAdapter,
    mistral_adapter,
    publicai_adapter,
    xai_adapter,
)
from .gemini import GeminiAdapter
from .openai import OpenAIAdapter


def default_adapters() -> dict[ProviderFamily, ProviderAdapter]:
    """Return a fresh adapter for every supported provider family."""
    return {
        ProviderFamily.OPENAI: OpenAIAdapter(),
        ProviderFamily.ANTHROPIC: AnthropicAdapter(),
        ProviderFamily.GOOGLE: GeminiAdapter(),
        ProviderFamily.MISTRAL: mistral_adapter(),
        ProviderFamily.XAI: xai_adapter(),
        ProviderFamily.PUBLICAI: publicai_adapter(),
    }


__all__ = [
    "AnthropicAdapter",
    "ChatCompletionsAdapter",
    "GeminiAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
    "SSEStreamParser",
    "StreamParser",
    "default_adapters",
]
