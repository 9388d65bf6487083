from .base import (
    BaseProvider,
    GenerationRequest,
    ProviderResponse,
    ProviderType,
    StreamChunk,
)
from .claude import ClaudeProvider
from .gemini import GeminiProvider
from .openai_compat import OpenAICompatibleProvider

__all__ = [
    "BaseProvider",
    "GenerationRequest",
    "ProviderResponse",
    "ProviderType",
    "StreamChunk",
    "ClaudeProvider",
    "GeminiProvider",
    "OpenAICompatibleProvider",
]
